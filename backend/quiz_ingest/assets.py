"""Best-effort image download. A failed download never fails ingestion."""
from __future__ import annotations

import hashlib
import logging
import mimetypes
from pathlib import Path
from typing import Protocol
from urllib.parse import urlparse

import httpx

from quiz_ingest.config import settings
from quiz_ingest.errors import PartialEnrichmentError

logger = logging.getLogger(__name__)

MAX_ASSET_BYTES = 10_000_000


class AssetStore(Protocol):
    async def download(self, url: str, *, force: bool = False) -> str: ...


class HttpAssetStore:
    """Downloads into ``ASSET_DIR`` under a content-addressed file name.

    Returns the local reference (relative path). A URL fetched before is
    answered from the on-disk url index unless ``force`` is set. Raises
    ``PartialEnrichmentError(field="image")`` on any failure so callers can
    drop the image and carry on.
    """

    def __init__(
        self,
        root: str | Path | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.root = Path(root or settings.ASSET_DIR)
        self.timeout = timeout or settings.ASSET_TIMEOUT_S
        self._transport = transport

    @staticmethod
    def _extension(url: str, content_type: str | None) -> str:
        suffix = Path(urlparse(url).path).suffix.lower()
        if suffix in {".jpg", ".jpeg", ".png", ".gif", ".webp", ".avif"}:
            return suffix
        guessed = mimetypes.guess_extension((content_type or "").split(";")[0].strip())
        return guessed or ".bin"

    def _url_index(self, url: str) -> Path:
        return self.root / "by-url" / hashlib.sha256(url.encode("utf-8")).hexdigest()

    def cached_ref(self, url: str) -> str | None:
        index = self._url_index(url)
        if not index.exists():
            return None
        ref = index.read_text(encoding="utf-8").strip()
        return ref if ref and (self.root / ref).exists() else None

    async def download(self, url: str, *, force: bool = False) -> str:
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise PartialEnrichmentError(f"not an http(s) url: {url}", field="image")
        if not force:
            cached = self.cached_ref(url)
            if cached:
                return cached
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=True, transport=self._transport
            ) as client:
                resp = await client.get(url)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise PartialEnrichmentError(f"download failed: {exc}", field="image") from exc

        body = resp.content
        if not body or len(body) > MAX_ASSET_BYTES:
            raise PartialEnrichmentError(f"unusable asset size {len(body)}", field="image")

        digest = hashlib.sha256(body).hexdigest()
        name = f"{digest[:2]}/{digest}{self._extension(url, resp.headers.get('content-type'))}"
        target = self.root / name
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if not target.exists():
                target.write_bytes(body)
            index = self._url_index(url)
            index.parent.mkdir(parents=True, exist_ok=True)
            index.write_text(name, encoding="utf-8")
        except OSError as exc:
            raise PartialEnrichmentError(f"cannot store asset: {exc}", field="image") from exc
        logger.debug("Stored asset", extra={"url": url, "ref": name, "bytes": len(body)})
        return name
