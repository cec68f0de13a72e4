"""Text normalization for venue names, addresses and postcodes."""
from __future__ import annotations

import re
import unicodedata
from difflib import SequenceMatcher

# Outward + inward UK postcode, optional space ("SW6 4UL", "sw64ul").
UK_POSTCODE_RE = re.compile(r"\b([A-Z]{1,2}[0-9][A-Z0-9]?) ?([0-9][A-Z]{2})\b", re.IGNORECASE)

_PARENTHETICAL_SUFFIX_RE = re.compile(r"\s*\([^)]*\)\s*$")
_WHITESPACE_RE = re.compile(r"\s+")

NAME_STOPWORDS = {
    "the", "and", "pub", "restaurant", "bar", "hotel", "inn",
    "tavern", "club", "cafe", "coffee", "shop",
}


def collapse_whitespace(value: str | None) -> str:
    return _WHITESPACE_RE.sub(" ", str(value or "")).strip()


def strip_parenthetical_suffix(name: str | None) -> str:
    """'The Railway (Back Room)' -> 'The Railway'. Applied repeatedly for nested suffixes."""
    text = collapse_whitespace(name)
    while True:
        stripped = _PARENTHETICAL_SUFFIX_RE.sub("", text)
        if stripped == text or not stripped:
            return text
        text = stripped


def clean_venue_name(name: str | None) -> str:
    """Display form stored on created venues."""
    return strip_parenthetical_suffix(name)


def normalize_name(name: str | None) -> str:
    """Matching key: suffix stripped, case-folded, whitespace collapsed."""
    return strip_parenthetical_suffix(name).casefold()


def normalize_address(address: str | None) -> str:
    return collapse_whitespace(address).casefold()


def normalize_postcode(postcode: str | None) -> str:
    return re.sub(r"\s+", "", str(postcode or "")).upper()


def extract_postcode(address: str | None) -> str | None:
    """Return the last UK-style postcode found in an address, formatted 'OUT IN'."""
    matches = UK_POSTCODE_RE.findall(str(address or ""))
    if not matches:
        return None
    outward, inward = matches[-1]
    return f"{outward.upper()} {inward.upper()}"


def slugify(value: str | None) -> str:
    text = unicodedata.normalize("NFKD", str(value or ""))
    text = "".join(ch for ch in text if not unicodedata.combining(ch)).lower()
    text = re.sub(r"[^a-z0-9]+", "-", text).strip("-")
    return text or "venue"


def _comparable_name(name: str | None) -> str:
    text = normalize_name(name)
    text = re.sub(r"[^\w\s]", " ", text)
    tokens = [t for t in text.split() if t not in NAME_STOPWORDS]
    return " ".join(tokens)


def string_similarity(a: str | None, b: str | None) -> float:
    left = collapse_whitespace(a).casefold()
    right = collapse_whitespace(b).casefold()
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return SequenceMatcher(None, left, right).ratio()


def name_similarity(a: str | None, b: str | None) -> float:
    """Similarity of venue names after dropping generic words ("The", "Pub", "Inn", ...)."""
    left = _comparable_name(a)
    right = _comparable_name(b)
    if not left or not right:
        # Names made entirely of stopwords still compare on their raw form.
        return string_similarity(normalize_name(a), normalize_name(b))
    if left == right:
        return 1.0
    return SequenceMatcher(None, left, right).ratio()
