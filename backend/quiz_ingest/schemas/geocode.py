from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class GeocodeResult(BaseModel):
    """Structured geocoder answer; every field may be missing."""

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    city: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    postcode: Optional[str] = None
    place_id: Optional[str] = None
    formatted_address: Optional[str] = None
