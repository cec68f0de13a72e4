"""Typed values crossing the Extractor boundary.

Extractors return ``RawListing``/``RawDetail`` as published by the source.
``Extractor.normalize`` turns them into a ``NormalizedListing`` once; nothing
downstream re-parses raw text.
"""
from __future__ import annotations

from datetime import time
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from quiz_ingest.core.text import collapse_whitespace
from quiz_ingest.models.event import Frequency


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


class RawListing(BaseModel):
    """One record from a source's index feed."""

    ref: str = Field(description="Source-local reference passed back to fetch_detail")
    name: str
    address: str = ""
    time_text: Optional[str] = None
    fee_text: Optional[str] = None
    source_url: Optional[str] = None
    title: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    place_id: Optional[str] = None
    postcode: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "time_text", "fee_text", "source_url", "title", "place_id",
        "postcode", "phone", "website", "description", "image_url",
        mode="before",
    )
    @classmethod
    def blank_strings_are_missing(cls, v: Any) -> Any:
        return _blank_to_none(v)


class RawDetail(BaseModel):
    """Detail-page payload; any field set here wins over the index listing."""

    description: Optional[str] = None
    time_text: Optional[str] = None
    fee_text: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    image_url: Optional[str] = None
    performer_name: Optional[str] = None
    performer_image_url: Optional[str] = None
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "description", "time_text", "fee_text", "phone", "website",
        "image_url", "performer_name", "performer_image_url",
        mode="before",
    )
    @classmethod
    def blank_strings_are_missing(cls, v: Any) -> Any:
        return _blank_to_none(v)


class VenueInput(BaseModel):
    name: str
    address: str
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    place_id: Optional[str] = None
    postcode: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    city: Optional[str] = None
    country_code: Optional[str] = None
    country_name: Optional[str] = None

    @field_validator("name", "address")
    @classmethod
    def required_text(cls, v: str) -> str:
        cleaned = collapse_whitespace(v)
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned

    @field_validator(
        "place_id", "postcode", "phone", "website", "city", "country_name", mode="before"
    )
    @classmethod
    def blank_strings_are_missing(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("country_code", mode="before")
    @classmethod
    def upper_country_code(cls, v: Any) -> Any:
        v = _blank_to_none(v)
        return v.upper() if isinstance(v, str) else v

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


class PerformerInput(BaseModel):
    name: str
    profile_image_url: Optional[str] = None

    @field_validator("name")
    @classmethod
    def required_text(cls, v: str) -> str:
        cleaned = collapse_whitespace(v)
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned


class EventInput(BaseModel):
    name: Optional[str] = None
    day_of_week: int = Field(ge=1, le=7)
    start_time: time
    frequency: Frequency = Frequency.WEEKLY
    entry_fee_cents: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None
    hero_image_url: Optional[str] = None
    performer_id: Optional[int] = None

    @field_validator("description", "hero_image_url", "name", mode="before")
    @classmethod
    def blank_strings_are_missing(cls, v: Any) -> Any:
        return _blank_to_none(v)


class NormalizedListing(BaseModel):
    """Everything the DetailProcessor needs for one listing, already typed.

    ``image_url`` and ``performer`` are optional enrichments: they are
    attached best-effort and dropped on a partial-enrichment failure.
    """

    source_url: Optional[str] = None
    venue: VenueInput
    event: EventInput
    image_url: Optional[str] = None
    performer: Optional[PerformerInput] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def without_enrichment(self, field: str | None = None) -> "NormalizedListing":
        """Copy with the named enrichment removed; ``None`` removes all of them."""
        event_update: dict[str, Any] = {}
        update: dict[str, Any] = {}
        if field in (None, "image"):
            event_update["hero_image_url"] = None
            update["image_url"] = None
        if field in (None, "performer"):
            event_update["performer_id"] = None
            update["performer"] = None
        update["event"] = self.event.model_copy(update=event_update)
        return self.model_copy(update=update)
