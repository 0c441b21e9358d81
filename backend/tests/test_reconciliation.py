from datetime import datetime, timedelta, timezone

from app.providers.base import PlaceProvider
from app.services.reconciliation import (
    ReconciliationEngine,
    name_similarity,
    normalize_name,
    popularity_score,
    slug_from_name_and_coords,
)

from conftest import make_record

FETCHED = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _osm(**overrides):
    return make_record(PlaceProvider.OPENSTREETMAP, "node:1", fetched_at=FETCHED, **overrides)


def _foursquare(**overrides):
    fields = {"name": "Chess Corner Café", "lat": 13.7565, "confidence": 0.8, "fetched_at": FETCHED}
    fields.update(overrides)
    return make_record(PlaceProvider.FOURSQUARE, "fsq-1", **fields)


def test_name_normalization():
    assert normalize_name("Tom & Jerry's Bar") == "tom and jerry s bar"
    assert normalize_name("Main St. Pub") == "main street pub"
    assert name_similarity("Chess Corner Cafe", "Chess Corner Café") > 0.9
    assert name_similarity("Chess Corner Cafe", "") == 0.0


def test_slug_is_derived_from_name_and_coordinates():
    assert slug_from_name_and_coords("Chess Corner Cafe", 13.7563, 100.5018) == "chess-corner-cafe-am425jq"


def test_nearby_similar_records_merge_with_priority_primary():
    engine = ReconciliationEngine()
    osm = _osm(website="https://chess.example", phone="+66 2 000 0000")
    foursquare = _foursquare(rating=4.3, rating_count=120, categories=("coffee",))

    places = engine.merge({"openstreetmap": [osm], "foursquare": [foursquare]})

    assert len(places) == 1
    place = places[0]
    assert place.primary_source == "foursquare"
    assert place.name == "Chess Corner Café"
    assert place.aggregated_from == ["foursquare", "openstreetmap"]
    assert place.website == "https://chess.example"
    assert place.phone == "+66 2 000 0000"
    assert place.rating == 4.3
    assert place.categories == ["coffee", "community"]
    assert place.confidence == 0.8
    assert sorted(place.source_keys) == [("foursquare", "fsq-1"), ("openstreetmap", "node:1")]


def test_primary_values_are_not_overwritten_by_backfill():
    engine = ReconciliationEngine()
    places = engine.merge(
        {
            "openstreetmap": [_osm(address="OSM address")],
            "foursquare": [_foursquare(address="Foursquare address")],
        }
    )
    assert places[0].address == "Foursquare address"


def test_merge_is_idempotent_and_order_independent():
    engine = ReconciliationEngine()
    osm = _osm()
    foursquare = _foursquare()
    far = make_record(PlaceProvider.OPENSTREETMAP, "node:2", name="Riverside Climbing", lat=13.80, fetched_at=FETCHED)

    first = engine.merge({"openstreetmap": [osm, far], "foursquare": [foursquare]})
    second = engine.merge({"foursquare": [foursquare], "openstreetmap": [far, osm]})
    duplicated = engine.merge({"openstreetmap": [osm, far, osm], "foursquare": [foursquare, foursquare]})

    assert first == second == duplicated
    assert [place.slug for place in first] == sorted(place.slug for place in first)


def test_distant_or_dissimilar_records_stay_separate():
    engine = ReconciliationEngine()
    same_name_far = _foursquare(name="Chess Corner Cafe", lat=13.7663)
    other_name_near = make_record(PlaceProvider.GOOGLE_PLACES, "g-1", name="Noodle House", fetched_at=FETCHED)

    places = engine.merge(
        {
            "openstreetmap": [_osm()],
            "foursquare": [same_name_far],
            "google_places": [other_name_near],
        }
    )

    assert len(places) == 3


def test_non_persistable_sources_and_expiry():
    engine = ReconciliationEngine()
    google_only = make_record(PlaceProvider.GOOGLE_PLACES, "g-1", name="Noodle House", fetched_at=FETCHED)
    ttls = {"google_places": timedelta(days=1), "openstreetmap": timedelta(days=30)}

    def expiry(provider, fetched_at):
        return fetched_at + ttls[provider]

    merged = engine.merge({"google_places": [google_only], "openstreetmap": [_osm()]}, expiry=expiry)
    places = {place.name: place for place in merged}

    assert places["Noodle House"].can_persist is False
    assert places["Chess Corner Cafe"].can_persist is True
    assert places["Noodle House"].cache_expires_at == FETCHED + timedelta(days=1)
    assert places["Chess Corner Cafe"].cache_expires_at == FETCHED + timedelta(days=30)


def test_popularity_score_rewards_ratings_and_confidence():
    plain = popularity_score([_osm()])
    rated = popularity_score([_osm(rating=4.5, rating_count=99)])
    assert plain == 0.6
    assert rated == round(4.5 * 2 + 0.6, 3)
