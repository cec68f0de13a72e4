"""Geocoding collaborator: address/coordinates -> structured locale."""
from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from quiz_ingest.config import settings
from quiz_ingest.errors import TransientFetchError
from quiz_ingest.schemas.geocode import GeocodeResult

logger = logging.getLogger(__name__)


class Geocoder(Protocol):
    async def lookup(
        self, *, address: str | None = None, coords: tuple[float, float] | None = None
    ) -> GeocodeResult | None: ...


def _component(components: list[dict[str, Any]], kind: str, *, short: bool = False) -> str | None:
    for comp in components:
        if kind in comp.get("types", []):
            return comp.get("short_name" if short else "long_name")
    return None


def parse_google_result(result: dict[str, Any]) -> GeocodeResult:
    components = result.get("address_components") or []
    location = (result.get("geometry") or {}).get("location") or {}
    city = (
        _component(components, "locality")
        or _component(components, "postal_town")
        or _component(components, "administrative_area_level_2")
    )
    return GeocodeResult(
        latitude=location.get("lat"),
        longitude=location.get("lng"),
        city=city,
        country=_component(components, "country"),
        country_code=_component(components, "country", short=True),
        postcode=_component(components, "postal_code"),
        place_id=result.get("place_id"),
        formatted_address=result.get("formatted_address"),
    )


class GoogleGeocoder:
    """Google Geocoding API (forward by address, reverse by coordinates)."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.GEOCODER_API_KEY
        self.base_url = base_url or settings.GEOCODER_BASE_URL
        self.timeout = timeout or settings.GEOCODER_TIMEOUT_S
        self._transport = transport

    async def lookup(
        self, *, address: str | None = None, coords: tuple[float, float] | None = None
    ) -> GeocodeResult | None:
        if not self.api_key:
            logger.warning("Geocoder API key not configured; skipping lookup")
            return None
        params: dict[str, str] = {"key": self.api_key}
        if coords is not None:
            params["latlng"] = f"{coords[0]},{coords[1]}"
        elif address:
            params["address"] = address
        else:
            return None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                resp = await client.get(self.base_url, params=params)
                resp.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status_code = exc.response.status_code
                if status_code >= 500 or status_code == 429:
                    raise TransientFetchError(
                        f"geocoder HTTP {status_code}", reason="geocoder_unavailable"
                    ) from exc
                logger.error("Geocoder rejected request", extra={"status_code": status_code, "address": address})
                return None
            except httpx.TransportError as exc:
                raise TransientFetchError(f"geocoder request failed: {exc}", reason="geocoder_unavailable") from exc

        try:
            payload = resp.json()
        except ValueError:
            logger.error("Geocoder returned a non-JSON body", extra={"address": address, "coords": coords})
            return None
        if not isinstance(payload, dict):
            logger.error("Geocoder returned an unexpected payload", extra={"address": address, "coords": coords})
            return None
        status = payload.get("status")
        if status == "ZERO_RESULTS":
            return None
        if status in {"OVER_QUERY_LIMIT", "UNKNOWN_ERROR"}:
            raise TransientFetchError(f"geocoder status {status}", reason="geocoder_unavailable")
        if status != "OK":
            logger.error("Geocoder returned %s", status, extra={"address": address, "coords": coords})
            return None
        results = payload.get("results") or []
        return parse_google_result(results[0]) if results else None
