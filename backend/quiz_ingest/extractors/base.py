"""Extractor capability: one adapter per source.

An extractor knows how to list a source's venues (``fetch_index``), fetch the
detail page for one of them (``fetch_detail``) and turn both into a typed
``NormalizedListing`` (``normalize``). Everything after ``normalize`` is
source-agnostic.
"""
from __future__ import annotations

import abc
import logging
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from quiz_ingest.core.parsing import parse_fee_cents, parse_frequency, parse_time_text
from quiz_ingest.core.text import clean_venue_name, extract_postcode
from quiz_ingest.errors import TransientFetchError, ValidationError
from quiz_ingest.schemas.listing import (
    EventInput,
    NormalizedListing,
    PerformerInput,
    RawDetail,
    RawListing,
    VenueInput,
)

logger = logging.getLogger(__name__)

USER_AGENT = "QuizIngest/1.0 (+venue directory aggregation)"


class Extractor(abc.ABC):
    """Base adapter. Subclasses implement the two fetch methods."""

    source_name: str = ""
    default_country_code: str | None = None

    @abc.abstractmethod
    async def fetch_index(self) -> list[RawListing]:
        """All listings currently published by the source."""

    @abc.abstractmethod
    async def fetch_detail(self, ref: str) -> RawDetail:
        """Detail payload for one listing. Raise TransientFetchError on network failure."""

    def normalize(self, listing: RawListing, detail: RawDetail | None = None) -> NormalizedListing:
        detail = detail or RawDetail()
        context = {"source": self.source_name, "ref": listing.ref, "name": listing.name}
        time_text = detail.time_text or listing.time_text
        try:
            schedule = parse_time_text(time_text)
        except ValidationError as exc:
            exc.context.update(context, time_text=time_text)
            raise
        fee_text = detail.fee_text or listing.fee_text
        frequency = parse_frequency(" ".join(filter(None, [listing.title, time_text])))

        try:
            venue = VenueInput(
                name=listing.name,
                address=listing.address,
                latitude=listing.latitude,
                longitude=listing.longitude,
                place_id=listing.place_id,
                postcode=listing.postcode or extract_postcode(listing.address),
                phone=detail.phone or listing.phone,
                website=detail.website or listing.website,
                city=listing.extra.get("city"),
                country_code=listing.extra.get("country_code") or self.default_country_code,
                country_name=listing.extra.get("country"),
            )
            event = EventInput(
                name=listing.title or clean_venue_name(listing.name),
                day_of_week=schedule.day_of_week,
                start_time=schedule.start_time,
                frequency=frequency,
                entry_fee_cents=parse_fee_cents(fee_text),
                description=detail.description or listing.description,
            )
            performer = (
                PerformerInput(name=detail.performer_name, profile_image_url=detail.performer_image_url)
                if detail.performer_name
                else None
            )
        except PydanticValidationError as exc:
            raise ValidationError(str(exc), context=context) from exc

        metadata: dict[str, Any] = {
            "ref": listing.ref,
            "time_text": time_text,
            "fee_text": fee_text,
        }
        return NormalizedListing(
            source_url=listing.source_url,
            venue=venue,
            event=event,
            image_url=detail.image_url or listing.image_url,
            performer=performer,
            metadata=metadata,
        )


class JsonFeedExtractor(Extractor):
    """Sources that publish their directory as a JSON array of listing objects.

    Each object carries the ``RawListing`` field names. When ``detail_url_template``
    is set, ``fetch_detail`` GETs ``template.format(ref=ref)`` and parses the body
    as ``RawDetail``; otherwise the index entry is all there is.
    """

    def __init__(
        self,
        source_name: str,
        index_url: str,
        *,
        detail_url_template: str | None = None,
        default_country_code: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.source_name = source_name
        self.index_url = index_url
        self.detail_url_template = detail_url_template
        self.default_country_code = default_country_code
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
        )

    async def _get_json(self, url: str) -> Any:
        async with self._client() as client:
            try:
                resp = await client.get(url)
                resp.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status >= 500 or status == 429:
                    raise TransientFetchError(f"HTTP {status} for {url}", context={"url": url}) from exc
                raise ValidationError(f"HTTP {status} for {url}", reason="http_client_error", context={"url": url}) from exc
            except httpx.TransportError as exc:
                raise TransientFetchError(f"{type(exc).__name__} for {url}", context={"url": url}) from exc
        try:
            return resp.json()
        except ValueError as exc:
            raise ValidationError(f"non-JSON body from {url}", reason="invalid_json", context={"url": url}) from exc

    async def fetch_index(self) -> list[RawListing]:
        payload = await self._get_json(self.index_url)
        items = payload.get("items", []) if isinstance(payload, dict) else payload
        listings: list[RawListing] = []
        for item in items or []:
            try:
                listings.append(RawListing.model_validate(item))
            except PydanticValidationError as exc:
                logger.warning(
                    "Dropping malformed index entry",
                    extra={"source": self.source_name, "error": str(exc)},
                )
        return listings

    async def fetch_detail(self, ref: str) -> RawDetail:
        if not self.detail_url_template:
            return RawDetail()
        payload = await self._get_json(self.detail_url_template.format(ref=ref))
        try:
            return RawDetail.model_validate(payload or {})
        except PydanticValidationError as exc:
            raise ValidationError(str(exc), context={"source": self.source_name, "ref": ref}) from exc
