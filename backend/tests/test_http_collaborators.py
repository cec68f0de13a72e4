import asyncio

import httpx
import pytest

from quiz_ingest.assets import HttpAssetStore
from quiz_ingest.errors import PartialEnrichmentError, TransientFetchError, ValidationError
from quiz_ingest.extractors import get_extractor, register_extractor, unregister_extractor
from quiz_ingest.extractors.base import JsonFeedExtractor
from quiz_ingest.geocoder import GoogleGeocoder
from quiz_ingest.models.source import Source
from quiz_ingest.schemas.listing import RawDetail, RawListing

INDEX_URL = "https://feed.example/quizzes.json"


def _feed(handler) -> JsonFeedExtractor:
    return JsonFeedExtractor(
        "inquizition",
        INDEX_URL,
        detail_url_template="https://feed.example/quizzes/{ref}.json",
        default_country_code="GB",
        transport=httpx.MockTransport(handler),
    )


def test_fetch_index_accepts_items_envelope_and_drops_malformed_entries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["user-agent"].startswith("QuizIngest/")
        return httpx.Response(200, json={"items": [{"ref": "1", "name": "The Crown"}, {"name": "no ref"}]})

    listings = asyncio.run(_feed(handler).fetch_index())
    assert [listing.ref for listing in listings] == ["1"]


def test_server_errors_are_transient_client_errors_are_not() -> None:
    def unavailable(request):
        return httpx.Response(503)

    def missing(request):
        return httpx.Response(404)

    with pytest.raises(TransientFetchError):
        asyncio.run(_feed(unavailable).fetch_index())
    with pytest.raises(ValidationError) as exc:
        asyncio.run(_feed(missing).fetch_detail("x"))
    assert exc.value.reason == "http_client_error"


def test_non_json_body_is_a_validation_error() -> None:
    def maintenance(request):
        return httpx.Response(200, text="<html>down for maintenance</html>", headers={"content-type": "text/html"})

    with pytest.raises(ValidationError) as index_exc:
        asyncio.run(_feed(maintenance).fetch_index())
    with pytest.raises(ValidationError) as detail_exc:
        asyncio.run(_feed(maintenance).fetch_detail("x"))
    assert index_exc.value.reason == "invalid_json"
    assert detail_exc.value.reason == "invalid_json"
    assert detail_exc.value.context["url"] == "https://feed.example/quizzes/x.json"


def test_network_failure_is_transient() -> None:
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientFetchError):
        asyncio.run(_feed(handler).fetch_detail("x"))


def test_fetch_detail_uses_template() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"fee_text": "£3", "performer_name": "Jo"})

    detail = asyncio.run(_feed(handler).fetch_detail("42"))
    assert seen == ["https://feed.example/quizzes/42.json"]
    assert detail.performer_name == "Jo"


def test_normalize_builds_typed_inputs_with_default_country() -> None:
    extractor = _feed(lambda request: httpx.Response(200, json=[]))
    listing = RawListing(
        ref="1",
        name="The Railway (Back Room)",
        address="12 High St, SW6 4UL",
        time_text="Every Wednesday at 8pm, fortnightly",
        fee_text="£2.50",
        extra={"city": "London"},
    )
    normalized = extractor.normalize(listing, RawDetail(fee_text="Free"))
    assert normalized.venue.country_code == "GB"
    assert normalized.venue.postcode == "SW6 4UL"
    assert normalized.event.day_of_week == 3
    assert normalized.event.entry_fee_cents is None
    assert normalized.event.frequency.value == "biweekly"
    assert normalized.metadata == {"ref": "1", "time_text": "Every Wednesday at 8pm, fortnightly", "fee_text": "Free"}


def test_normalize_rejects_listing_without_address() -> None:
    extractor = _feed(lambda request: httpx.Response(200, json=[]))
    listing = RawListing(ref="1", name="The Crown", time_text="Friday 8pm")
    with pytest.raises(ValidationError) as exc:
        extractor.normalize(listing)
    assert exc.value.context["ref"] == "1"


def test_registry_prefers_registered_adapter() -> None:
    source = Source(name="custom", base_url="https://custom.example/feed.json", extractor_json={"default_country_code": "IE"})
    default = get_extractor(source)
    assert isinstance(default, JsonFeedExtractor)
    assert default.default_country_code == "IE"

    sentinel = _feed(lambda request: httpx.Response(200, json=[]))
    register_extractor("custom", lambda src: sentinel)
    try:
        assert get_extractor(source) is sentinel
    finally:
        unregister_extractor("custom")


GOOGLE_OK = {
    "status": "OK",
    "results": [
        {
            "place_id": "gp-1",
            "formatted_address": "28 Great George St, Leeds LS1 3DL, UK",
            "geometry": {"location": {"lat": 53.8, "lng": -1.55}},
            "address_components": [
                {"long_name": "Leeds", "short_name": "Leeds", "types": ["postal_town"]},
                {"long_name": "United Kingdom", "short_name": "GB", "types": ["country", "political"]},
                {"long_name": "LS1 3DL", "short_name": "LS1 3DL", "types": ["postal_code"]},
            ],
        }
    ],
}


def test_google_geocoder_parses_first_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["address"] == "28 Great George St"
        return httpx.Response(200, json=GOOGLE_OK)

    geocoder = GoogleGeocoder("key", transport=httpx.MockTransport(handler))
    result = asyncio.run(geocoder.lookup(address="28 Great George St"))
    assert result.city == "Leeds"
    assert result.country_code == "GB"
    assert result.postcode == "LS1 3DL"
    assert result.place_id == "gp-1"
    assert (result.latitude, result.longitude) == (53.8, -1.55)


def test_google_geocoder_reverse_lookup_and_statuses() -> None:
    statuses = iter(["ZERO_RESULTS", "OVER_QUERY_LIMIT"])

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["latlng"] == "51.5,-0.12"
        return httpx.Response(200, json={"status": next(statuses), "results": []})

    geocoder = GoogleGeocoder("key", transport=httpx.MockTransport(handler))
    assert asyncio.run(geocoder.lookup(coords=(51.5, -0.12))) is None
    with pytest.raises(TransientFetchError):
        asyncio.run(geocoder.lookup(coords=(51.5, -0.12)))


def test_google_geocoder_retries_only_server_side_failures() -> None:
    responses = iter(
        [
            httpx.Response(403, json={"error_message": "bad key"}),
            httpx.Response(400),
            httpx.Response(200, text="<html>oops</html>"),
            httpx.Response(429),
            httpx.Response(502),
        ]
    )
    geocoder = GoogleGeocoder("key", transport=httpx.MockTransport(lambda request: next(responses)))

    assert asyncio.run(geocoder.lookup(address="1 King St")) is None
    assert asyncio.run(geocoder.lookup(address="1 King St")) is None
    assert asyncio.run(geocoder.lookup(address="1 King St")) is None
    for _ in range(2):
        with pytest.raises(TransientFetchError):
            asyncio.run(geocoder.lookup(address="1 King St"))


def test_google_geocoder_without_key_does_nothing() -> None:
    def handler(request):
        raise AssertionError("no request expected")

    geocoder = GoogleGeocoder("", transport=httpx.MockTransport(handler))
    assert asyncio.run(geocoder.lookup(address="anywhere")) is None


def test_asset_store_downloads_once_and_caches(tmp_path) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(200, content=b"\x89PNG fake", headers={"content-type": "image/png"})

    store = HttpAssetStore(tmp_path, transport=httpx.MockTransport(handler))
    first = asyncio.run(store.download("https://cdn.example/hero.png"))
    second = asyncio.run(store.download("https://cdn.example/hero.png"))
    forced = asyncio.run(store.download("https://cdn.example/hero.png", force=True))

    assert first == second == forced
    assert first.endswith(".png")
    assert (tmp_path / first).read_bytes() == b"\x89PNG fake"
    assert len(calls) == 2


def test_asset_store_failures_are_partial_enrichment(tmp_path) -> None:
    store = HttpAssetStore(tmp_path, transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    with pytest.raises(PartialEnrichmentError) as exc:
        asyncio.run(store.download("https://cdn.example/missing.jpg"))
    assert exc.value.field == "image"
    with pytest.raises(PartialEnrichmentError):
        asyncio.run(store.download("file:///etc/passwd"))
