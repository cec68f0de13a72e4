"""Venue entity resolution: find-or-create a canonical Venue for a listing.

Cascade, first match wins (soft-deleted venues never match):

1. exact external place id
2. geo-proximity within ``match_radius_m`` (same city when the city is known)
3. normalized name contained in stored name + matching postcode
4. address fallback (exact name/address, then name prefix + address substring)
5. create (geocoding the locale when needed)

Runs inside the caller's transaction. Inserts happen in SAVEPOINTs so a
unique-constraint race with another worker falls back to re-fetching the row
the other worker created.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from sqlalchemy import String, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from quiz_ingest.core.geo import bounding_box, haversine_m
from quiz_ingest.core.text import (
    clean_venue_name,
    extract_postcode,
    normalize_address,
    normalize_name,
    normalize_postcode,
    slugify,
)
from quiz_ingest.db import insert_or_conflict
from quiz_ingest.errors import ConflictError, FatalDataError
from quiz_ingest.geocoder import Geocoder
from quiz_ingest.metrics import VENUE_RESOLUTIONS_TOTAL
from quiz_ingest.models.location import City, Country, Venue
from quiz_ingest.schemas.geocode import GeocodeResult
from quiz_ingest.schemas.listing import VenueInput
from quiz_ingest.schemas.options import ResolveOptions

logger = logging.getLogger(__name__)

MAX_SLUG_ATTEMPTS = 25

ENRICHABLE_FIELDS = ("postcode", "phone", "website")


class ResolveStatus(str, enum.Enum):
    FOUND = "found"
    CREATED = "created"
    ERROR = "error"


@dataclass(slots=True)
class ResolveResult:
    status: ResolveStatus
    venue: Venue | None = None
    strategy: str | None = None
    reason: str | None = None

    @classmethod
    def found(cls, venue: Venue, strategy: str) -> "ResolveResult":
        return cls(ResolveStatus.FOUND, venue, strategy)

    @classmethod
    def created(cls, venue: Venue) -> "ResolveResult":
        return cls(ResolveStatus.CREATED, venue, "create")

    @classmethod
    def error(cls, reason: str) -> "ResolveResult":
        return cls(ResolveStatus.ERROR, None, None, reason)

    @property
    def ok(self) -> bool:
        return self.status != ResolveStatus.ERROR


def _active():
    return Venue.deleted_at.is_(None)


# ── Country / City ──


async def find_or_create_country(session: AsyncSession, code: str, name: str | None = None) -> Country:
    code = code.strip().upper()
    stmt = select(Country).where(Country.code == code)
    country = (await session.execute(stmt)).scalar_one_or_none()
    if country is not None:
        return country
    country = Country(code=code, name=(name or code).strip())
    try:
        await insert_or_conflict(session, country)
    except ConflictError:
        country = (await session.execute(stmt)).scalar_one()
    return country


async def find_city(session: AsyncSession, name: str, country_id: int) -> City | None:
    stmt = (
        select(City)
        .where(City.country_id == country_id, func.lower(City.name) == normalize_name(name))
        .order_by(City.id)
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def find_or_create_city(
    session: AsyncSession,
    name: str,
    country: Country,
    *,
    latitude: float | None = None,
    longitude: float | None = None,
) -> City:
    """Keyed by case-folded name + country; slug gets the country code on cross-country clashes."""
    city = await find_city(session, name, country.id)
    if city is not None:
        return city
    display = clean_venue_name(name)
    for slug in (slugify(display), slugify(f"{display} {country.code}")):
        city = City(
            name=display,
            slug=slug,
            country_id=country.id,
            latitude=latitude,
            longitude=longitude,
        )
        try:
            await insert_or_conflict(session, city)
            return city
        except ConflictError:
            raced = await find_city(session, name, country.id)
            if raced is not None:
                return raced
    raise FatalDataError(f"cannot allocate city slug for {display!r}", reason="city_slug_conflict")


# ── Resolver ──


class VenueResolver:
    def __init__(self, geocoder: Geocoder | None = None):
        self.geocoder = geocoder

    async def resolve(
        self,
        session: AsyncSession,
        data: VenueInput,
        options: ResolveOptions | None = None,
    ) -> ResolveResult:
        options = options or ResolveOptions()
        try:
            result = await self._resolve(session, data, options)
        except FatalDataError as exc:
            VENUE_RESOLUTIONS_TOTAL.labels(strategy="create", status=ResolveStatus.ERROR.value).inc()
            logger.error(
                "Venue resolution failed",
                extra={"venue_name": data.name, "address": data.address, "reason": exc.reason},
            )
            return ResolveResult.error(exc.reason)
        VENUE_RESOLUTIONS_TOTAL.labels(strategy=result.strategy, status=result.status.value).inc()
        logger.debug(
            "Venue resolved",
            extra={
                "venue_id": result.venue.id if result.venue else None,
                "status": result.status.value,
                "strategy": result.strategy,
            },
        )
        return result

    async def _resolve(self, session: AsyncSession, data: VenueInput, options: ResolveOptions) -> ResolveResult:
        match = await self.find_existing(session, data, options)
        if match is not None:
            venue, strategy = match
            await self.enrich(session, venue, data)
            return ResolveResult.found(venue, strategy)
        return await self._create(session, data, options)

    async def find_existing(
        self, session: AsyncSession, data: VenueInput, options: ResolveOptions
    ) -> tuple[Venue, str] | None:
        if data.place_id:
            venue = await self.match_by_place_id(session, data.place_id)
            if venue is not None:
                return venue, "place_id"

        if data.has_coordinates:
            city_id = await self._known_city_id(session, data)
            venue = await self.match_by_proximity(
                session, data.latitude, data.longitude, options.match_radius_m, city_id=city_id
            )
            if venue is not None:
                return venue, "proximity"

        postcode = data.postcode or extract_postcode(data.address)
        if postcode:
            venue = await self.match_by_name_and_postcode(session, data.name, postcode)
            if venue is not None:
                return venue, "name_postcode"

        venue = await self.match_by_address(session, data.name, data.address)
        if venue is not None:
            return venue, "address"
        return None

    async def match_by_place_id(self, session: AsyncSession, place_id: str) -> Venue | None:
        stmt = select(Venue).where(Venue.place_id == place_id, _active())
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _known_city_id(self, session: AsyncSession, data: VenueInput) -> int | None:
        if not data.city or not data.country_code:
            return None
        country = (
            await session.execute(select(Country).where(Country.code == data.country_code))
        ).scalar_one_or_none()
        if country is None:
            return None
        city = await find_city(session, data.city, country.id)
        return city.id if city else None

    async def match_by_proximity(
        self,
        session: AsyncSession,
        lat: float,
        lng: float,
        radius_m: float,
        *,
        city_id: int | None = None,
    ) -> Venue | None:
        """Closest active venue within ``radius_m``; bounding box in SQL, haversine in Python."""
        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_m)
        stmt = select(Venue).where(
            _active(),
            Venue.latitude.between(min_lat, max_lat),
            Venue.longitude.between(min_lng, max_lng),
        )
        if city_id is not None:
            stmt = stmt.where(Venue.city_id == city_id)
        candidates = (await session.execute(stmt)).scalars().all()

        best: tuple[float, int, Venue] | None = None
        for venue in candidates:
            distance = haversine_m(lat, lng, venue.latitude, venue.longitude)
            if distance > radius_m:
                continue
            key = (distance, venue.id, venue)
            if best is None or key[:2] < best[:2]:
                best = key
        return best[2] if best else None

    async def match_by_name_and_postcode(self, session: AsyncSession, name: str, postcode: str) -> Venue | None:
        wanted_name = normalize_name(name)
        wanted_postcode = normalize_postcode(postcode)
        if not wanted_name or not wanted_postcode:
            return None
        stored_postcode = func.upper(func.replace(Venue.postcode, " ", ""), type_=String)
        stmt = (
            select(Venue)
            .where(_active(), Venue.postcode.is_not(None), stored_postcode.contains(wanted_postcode, autoescape=True))
            .order_by(Venue.id)
        )
        for venue in (await session.execute(stmt)).scalars():
            if wanted_name in normalize_name(venue.name):
                return venue
        return None

    async def match_by_address(self, session: AsyncSession, name: str, address: str) -> Venue | None:
        cleaned = clean_venue_name(name)
        exact = (
            select(Venue)
            .where(_active(), Venue.name.in_(list(dict.fromkeys([name, cleaned]))), Venue.address == address)
            .order_by(Venue.id)
            .limit(1)
        )
        venue = (await session.execute(exact)).scalar_one_or_none()
        if venue is not None:
            return venue

        wanted_name = normalize_name(name)
        wanted_address = normalize_address(address)
        if not wanted_name or not wanted_address:
            return None
        fuzzy = (
            select(Venue)
            .where(
                _active(),
                func.lower(Venue.name, type_=String).startswith(wanted_name, autoescape=True),
                func.lower(Venue.address, type_=String).contains(wanted_address, autoescape=True),
            )
            .order_by(Venue.id)
            .limit(1)
        )
        return (await session.execute(fuzzy)).scalar_one_or_none()

    async def enrich(self, session: AsyncSession, venue: Venue, data: VenueInput) -> bool:
        """Fill fields the stored venue lacks. Never overwrites an existing value."""
        changed = False
        postcode = data.postcode or extract_postcode(data.address)
        incoming = {"postcode": postcode, "phone": data.phone, "website": data.website}
        for field_name in ENRICHABLE_FIELDS:
            if getattr(venue, field_name) is None and incoming[field_name]:
                setattr(venue, field_name, incoming[field_name])
                changed = True
        if venue.coordinates is None and data.has_coordinates:
            venue.latitude = data.latitude
            venue.longitude = data.longitude
            changed = True
        if venue.place_id is None and data.place_id:
            holder = (
                await session.execute(select(Venue.id).where(Venue.place_id == data.place_id))
            ).scalar_one_or_none()
            if holder is None:
                venue.place_id = data.place_id
                changed = True
        if changed:
            await session.flush()
        return changed

    # ── Creation ──

    async def _geocode(self, data: VenueInput, options: ResolveOptions) -> GeocodeResult | None:
        if self.geocoder is None or not options.geocode:
            return None
        if data.has_coordinates:
            if data.city and data.country_code:
                return None
            return await self.geocoder.lookup(coords=(data.latitude, data.longitude))
        query = ", ".join(filter(None, [data.address, data.city]))
        return await self.geocoder.lookup(address=query)

    async def _create(self, session: AsyncSession, data: VenueInput, options: ResolveOptions) -> ResolveResult:
        geo = await self._geocode(data, options) or GeocodeResult()

        if geo.place_id:
            venue = await self.match_by_place_id(session, geo.place_id)
            if venue is not None:
                await self.enrich(session, venue, data)
                return ResolveResult.found(venue, "geocoded_place_id")

        lat = data.latitude if data.has_coordinates else geo.latitude
        lng = data.longitude if data.has_coordinates else geo.longitude
        if not data.has_coordinates and lat is not None and lng is not None:
            venue = await self.match_by_proximity(session, lat, lng, options.match_radius_m)
            if venue is not None:
                await self.enrich(session, venue, data)
                return ResolveResult.found(venue, "geocoded_proximity")

        city_name = data.city or geo.city
        country_code = data.country_code or geo.country_code
        if not city_name or not country_code:
            raise FatalDataError(
                f"no city for venue {data.name!r}",
                reason="missing_city",
                context={"address": data.address, "latitude": lat, "longitude": lng},
            )
        country = await find_or_create_country(session, country_code, data.country_name or geo.country)
        city = await find_or_create_city(session, city_name, country)

        place_id = data.place_id or geo.place_id
        if place_id:
            holder = (
                await session.execute(select(Venue).where(Venue.place_id == place_id))
            ).scalar_one_or_none()
            if holder is not None:
                # Only a merged-away venue can still hold it at this point.
                place_id = None

        fields = dict(
            name=clean_venue_name(data.name),
            address=data.address,
            postcode=data.postcode or geo.postcode or extract_postcode(data.address),
            latitude=lat,
            longitude=lng,
            place_id=place_id,
            phone=data.phone,
            website=data.website,
            city_id=city.id,
        )
        return await self._insert_with_unique_slug(session, data, fields, city, options)

    async def _insert_with_unique_slug(
        self,
        session: AsyncSession,
        data: VenueInput,
        fields: dict,
        city: City,
        options: ResolveOptions,
    ) -> ResolveResult:
        base = slugify(f"{fields['name']} {city.name}")
        for attempt in range(1, MAX_SLUG_ATTEMPTS + 1):
            slug = base if attempt == 1 else f"{base}-{attempt}"
            venue = Venue(slug=slug, **fields)
            try:
                await insert_or_conflict(session, venue)
                logger.info("Created venue", extra={"venue_id": venue.id, "slug": slug})
                return ResolveResult.created(venue)
            except ConflictError:
                pass

            if fields["place_id"]:
                raced = await self.match_by_place_id(session, fields["place_id"])
                if raced is not None:
                    await self.enrich(session, raced, data)
                    return ResolveResult.found(raced, "conflict_refetch")

            existing = (await session.execute(select(Venue).where(Venue.slug == slug))).scalar_one_or_none()
            if existing is not None and not existing.is_deleted and self._same_establishment(existing, fields, options):
                await self.enrich(session, existing, data)
                logger.info("Slug conflict resolved to existing venue", extra={"venue_id": existing.id, "slug": slug})
                return ResolveResult.found(existing, "conflict_refetch")
        raise FatalDataError(f"no free slug for {base!r}", reason="slug_exhausted")

    @staticmethod
    def _same_establishment(existing: Venue, fields: dict, options: ResolveOptions) -> bool:
        if existing.place_id and fields["place_id"] and existing.place_id == fields["place_id"]:
            return True
        if existing.coordinates and fields["latitude"] is not None and fields["longitude"] is not None:
            distance = haversine_m(existing.latitude, existing.longitude, fields["latitude"], fields["longitude"])
            if distance <= options.match_radius_m:
                return True
        if existing.postcode and fields["postcode"]:
            return normalize_postcode(existing.postcode) == normalize_postcode(fields["postcode"]) and (
                normalize_name(existing.name) == normalize_name(fields["name"])
            )
        return normalize_name(existing.name) == normalize_name(fields["name"]) and (
            normalize_address(existing.address) == normalize_address(fields["address"])
        )
