from quiz_ingest.core.geo import bounding_box, haversine_m, proximity_score, valid_coordinates
from quiz_ingest.core.text import (
    clean_venue_name,
    extract_postcode,
    name_similarity,
    normalize_name,
    normalize_postcode,
    slugify,
)


def test_clean_venue_name_strips_parenthetical_suffixes() -> None:
    assert clean_venue_name("The Railway (Back Room)") == "The Railway"
    assert clean_venue_name("The Crown (Upstairs) (Quiz)") == "The Crown"
    assert clean_venue_name("(Pop-up)") == "(Pop-up)"


def test_normalize_name_is_casefolded_and_collapsed() -> None:
    assert normalize_name("  The   RAILWAY (Back Room) ") == "the railway"


def test_extract_postcode_takes_last_match_and_formats() -> None:
    assert extract_postcode("12 High St, sw64ul") == "SW6 4UL"
    assert extract_postcode("1 EC1A 1BB Road, London N1 9GU") == "N1 9GU"
    assert extract_postcode("12 High St") is None


def test_normalize_postcode() -> None:
    assert normalize_postcode("sw6 4ul") == "SW64UL"


def test_slugify() -> None:
    assert slugify("Café Rouge, London") == "cafe-rouge-london"
    assert slugify("!!!") == "venue"


def test_name_similarity_ignores_generic_words() -> None:
    assert name_similarity("The Red Lion", "Red Lion Pub") == 1.0
    assert name_similarity("The Red Lion", "The Anchor") < 0.5


def test_haversine_known_distance() -> None:
    # One degree of latitude is roughly 111 km.
    assert 110_000 < haversine_m(51.0, 0.0, 52.0, 0.0) < 112_500


def test_bounding_box_contains_radius() -> None:
    min_lat, max_lat, min_lng, max_lng = bounding_box(51.5, -0.12, 100)
    assert min_lat < 51.5 < max_lat
    assert min_lng < -0.12 < max_lng
    assert haversine_m(51.5, -0.12, max_lat, -0.12) >= 99.0


def test_proximity_score_decays_linearly() -> None:
    assert proximity_score(50) == 1.0
    assert proximity_score(550) == 0.5
    assert proximity_score(5000) == 0.0


def test_valid_coordinates() -> None:
    assert valid_coordinates(51.5, -0.1)
    assert not valid_coordinates(None, -0.1)
    assert not valid_coordinates(91, 0)
    assert not valid_coordinates(float("nan"), 0)
