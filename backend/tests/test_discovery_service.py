import asyncio
import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.config import settings
from app.errors import DiscoveryUnavailable, ValidationError
from app.providers.base import PlaceProvider, ProviderResponseError
from app.services.classifier import ActivityClassifier, ClassificationService
from app.services.discovery_service import (
    DiscoveryQuery,
    DiscoveryService,
    derive_traits,
    place_rank_score,
)
from app.services.geo import Bounds, Point
from app.services.place_repository import get_place
from app.services.reconciliation import ReconciliationEngine
from app.services.tile_cache import TileCache
from app.services.tiles import tile_key
from app.telemetry import DiscoveryTrace, reset_current_trace, set_current_trace

from conftest import FakeAdapter, make_record, store_places

VIEWPORT = Bounds.from_corners(13.74, 100.49, 13.77, 100.52)


def _chess(**overrides):
    return make_record(PlaceProvider.OPENSTREETMAP, "node:1", tags=("board games",), **overrides)


def _gym(**overrides):
    fields = {"name": "Iron Gym", "lat": 13.76, "lng": 100.51, "categories": ("fitness",), "price_level": 2}
    fields.update(overrides)
    return make_record(PlaceProvider.OPENSTREETMAP, "node:2", **fields)


def _noodles():
    return make_record(PlaceProvider.FOURSQUARE, "fsq-9", name="Noodle House", lat=13.75, lng=100.50, rating=4.4)


def _service(adapters, classification_service=None, **overrides) -> DiscoveryService:
    config = settings.model_copy(
        update={"provider_timeout_seconds": 0.2, "query_timeout_seconds": 2.0, **overrides}
    )
    return DiscoveryService(
        tile_cache=TileCache.from_settings(config),
        adapters=adapters,
        engine=ReconciliationEngine(),
        classification_service=classification_service,
        config=config,
    )


def _discover(service, db, **query):
    query.setdefault("bounds", VIEWPORT)
    return asyncio.run(service.discover(db, DiscoveryQuery(**query)))


def test_healthy_providers_are_merged_and_persisted(db_session):
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess(), _gym()])
    foursquare = FakeAdapter(PlaceProvider.FOURSQUARE, [_noodles()])
    service = _service([osm, foursquare])

    response = _discover(service, db_session)

    assert {item.name for item in response.items} == {"Chess Corner Cafe", "Iron Gym", "Noodle House"}
    assert all(item.id is not None for item in response.items)
    assert response.provider_counts == {"foursquare": 1, "openstreetmap": 2}
    assert response.degraded is False
    assert response.fallback_source is None
    assert response.cache.hit is False
    assert response.source_breakdown == {"foursquare": 1, "openstreetmap": 2}
    assert [view.provider for view in response.attribution] == ["foursquare", "openstreetmap"]


def test_one_slow_provider_degrades_instead_of_failing(db_session):
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess()])
    foursquare = FakeAdapter(PlaceProvider.FOURSQUARE, [_noodles()])
    google = FakeAdapter(PlaceProvider.GOOGLE_PLACES, [make_record(PlaceProvider.GOOGLE_PLACES, "g-1")], delay=2.0)
    service = _service([osm, foursquare, google], provider_timeout_seconds=0.05)

    response = _discover(service, db_session)

    assert response.items
    assert response.degraded is True
    assert response.provider_counts["google_places"] == 0
    assert response.provider_counts["openstreetmap"] == 1
    assert response.fallback_source == "partial_providers"
    assert response.fallback_error == "google_places: timeout"


def test_repeated_query_is_served_from_cache(db_session):
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess()])
    service = _service([osm])

    first = _discover(service, db_session)
    second = _discover(service, db_session, bounds=Bounds.from_corners(13.745, 100.495, 13.765, 100.515))

    assert first.cache.key == second.cache.key
    assert second.cache.hit is True
    assert osm.calls == 1
    assert [item.slug for item in second.items] == [item.slug for item in first.items]


def test_bypass_cache_refetches_and_rewrites(db_session):
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess()])
    service = _service([osm])
    _discover(service, db_session)

    osm.records = [_chess(), _gym()]
    refreshed = _discover(service, db_session, bypass_cache=True)
    cached = _discover(service, db_session)

    assert osm.calls == 2
    assert refreshed.cache.hit is False
    assert len(refreshed.items) == 2
    assert cached.cache.hit is True
    assert len(cached.items) == 2


def test_concurrent_queries_share_one_upstream_call(db_session):
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess()], delay=0.05)
    service = _service([osm])

    async def scenario():
        return await asyncio.gather(
            *(service.discover(db_session, DiscoveryQuery(bounds=VIEWPORT)) for _ in range(5))
        )

    responses = asyncio.run(scenario())

    assert osm.calls == 1
    assert all(len(response.items) == 1 for response in responses)


def test_stale_cache_covers_a_failing_provider(db_session):
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, error=ProviderResponseError("boom", "openstreetmap"))
    service = _service([osm])
    key = tile_key(VIEWPORT, [], settings.tile_size_degrees)
    service.tile_cache.put(key, "openstreetmap", [_chess()], datetime.now(timezone.utc) - timedelta(days=45))

    response = _discover(service, db_session)

    assert [item.name for item in response.items] == ["Chess Corner Cafe"]
    assert response.degraded is True
    assert response.fallback_source == "stale_cache"
    assert response.provider_counts == {"openstreetmap": 0}


def test_stored_places_cover_total_provider_failure(db_session):
    store_places(db_session, _chess(), _gym())
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, error=ProviderResponseError("boom", "openstreetmap"))
    service = _service([osm])

    response = _discover(service, db_session)

    assert {item.name for item in response.items} == {"Chess Corner Cafe", "Iron Gym"}
    assert response.fallback_source == "database"
    assert response.degraded is True


def test_nearby_namesakes_keep_separate_identities(db_session):
    north = make_record(PlaceProvider.OPENSTREETMAP, "node:10", name="Starbucks", lat=13.7504, lng=100.5018)
    south = make_record(PlaceProvider.OPENSTREETMAP, "node:11", name="Starbucks", lat=13.7496, lng=100.5018)
    service = _service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [north, south])])

    first = _discover(service, db_session)
    second = _discover(service, db_session)

    assert len(first.items) == 2
    assert len({item.id for item in first.items}) == 2
    assert len({item.slug for item in first.items}) == 2
    for item in first.items:
        assert get_place(db_session, item.id).lat == item.lat
        assert get_place(db_session, item.slug).lat == item.lat
    assert {(item.id, item.lat) for item in second.items} == {(item.id, item.lat) for item in first.items}


def _backstop_service(adapters):
    return _service(adapters, provider_timeout_seconds=5.0, query_timeout_seconds=0.1)


def test_backstop_timeout_serves_stale_cache(db_session):
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, [_gym()], delay=2.0)
    service = _backstop_service([osm])
    key = tile_key(VIEWPORT, [], settings.tile_size_degrees)
    service.tile_cache.put(key, "openstreetmap", [_chess()], datetime.now(timezone.utc) - timedelta(days=45))

    response = _discover(service, db_session)

    assert [item.name for item in response.items] == ["Chess Corner Cafe"]
    assert response.fallback_source == "stale_cache"
    assert response.fallback_error == "timeout"
    assert response.degraded is True
    assert response.provider_counts == {"openstreetmap": 0}


def test_backstop_timeout_serves_stored_places(db_session):
    store_places(db_session, _chess(), _gym())
    service = _backstop_service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [_noodles()], delay=2.0)])

    response = _discover(service, db_session)

    assert {item.name for item in response.items} == {"Chess Corner Cafe", "Iron Gym"}
    assert response.fallback_source == "database"
    assert response.fallback_error == "timeout"


def test_backstop_timeout_without_fallback_data_is_unavailable(db_session):
    service = _backstop_service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess()], delay=2.0)])

    with pytest.raises(DiscoveryUnavailable):
        _discover(service, db_session)


def test_database_work_runs_off_the_event_loop(db_session, monkeypatch):
    service = _service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess()])])
    worker_threads = []
    build_items = service._build_items
    store = service._store

    def recording_build_items(*args):
        worker_threads.append(threading.get_ident())
        return build_items(*args)

    def recording_store(*args):
        worker_threads.append(threading.get_ident())
        return store(*args)

    monkeypatch.setattr(service, "_build_items", recording_build_items)
    monkeypatch.setattr(service, "_store", recording_store)

    async def scenario():
        response = await service.discover(db_session, DiscoveryQuery(bounds=VIEWPORT))
        return response, threading.get_ident()

    response, loop_thread = asyncio.run(scenario())

    assert len(response.items) == 1
    assert len(worker_threads) == 2
    assert loop_thread not in worker_threads


def test_total_failure_without_fallback_data_is_unavailable(db_session):
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, error=ProviderResponseError("boom", "openstreetmap"))
    foursquare = FakeAdapter(PlaceProvider.FOURSQUARE, delay=2.0)
    service = _service([osm, foursquare], provider_timeout_seconds=0.05)

    with pytest.raises(DiscoveryUnavailable):
        _discover(service, db_session)


def test_empty_area_is_not_an_error(db_session):
    service = _service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [])])

    response = _discover(service, db_session)

    assert response.items == []
    assert response.degraded is False


def test_google_only_places_are_served_but_not_stored(db_session):
    google = FakeAdapter(PlaceProvider.GOOGLE_PLACES, [make_record(PlaceProvider.GOOGLE_PLACES, "g-1", name="Strike Bowl")])
    service = _service([google])

    response = _discover(service, db_session)

    assert [item.name for item in response.items] == ["Strike Bowl"]
    assert response.items[0].id is None
    assert response.items[0].slug.startswith("strike-bowl-")


@pytest.mark.parametrize(
    "query",
    [
        {"bounds": Bounds(sw=Point(13.8, 100.5), ne=Point(13.7, 100.6))},
        {"bounds": Bounds(sw=Point(-95.0, 100.5), ne=Point(13.7, 100.6))},
        {"bounds": None},
        {"bounds": None, "lat": 13.75, "lng": 200.0},
    ],
)
def test_invalid_areas_are_rejected(db_session, query):
    service = _service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess()])])
    with pytest.raises(ValidationError):
        asyncio.run(service.discover(db_session, DiscoveryQuery(**query)))


def test_invalid_scalar_filters_are_rejected():
    with pytest.raises(ValidationError):
        DiscoveryQuery(bounds=VIEWPORT, capacity_key="stadium")
    with pytest.raises(ValidationError):
        DiscoveryQuery(bounds=VIEWPORT, time_window="brunch")


def test_radius_query_uses_center(db_session):
    service = _service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess(), _gym()])])

    response = _discover(service, db_session, bounds=None, lat=13.7563, lng=100.5018, radius=500)

    assert response.radius_meters == 500
    assert response.items[0].name == "Chess Corner Cafe"
    assert response.items[0].distance_m == 0.0


def test_filters_facets_and_support(db_session):
    service = _service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess(), _gym()])])

    everything = _discover(service, db_session)
    by_category = _discover(service, db_session, taxonomy_categories=["Fitness"])
    by_price = _discover(service, db_session, price_levels=["2"])
    by_capacity = _discover(service, db_session, capacity_key="large")
    unmatched = _discover(service, db_session, tags=["karaoke"])

    assert everything.filter_support["taxonomy_categories"] is True
    assert everything.filter_support["price_levels"] is True
    assert everything.filter_support["capacity_key"] is False
    assert everything.filter_support["activity_types"] is False
    assert [(facet.value, facet.count) for facet in everything.facets["taxonomy_categories"]] == [
        ("community", 1),
        ("fitness", 1),
    ]
    assert [item.name for item in by_category.items] == ["Iron Gym"]
    assert [item.name for item in by_price.items] == ["Iron Gym"]
    assert len(by_capacity.items) == 2
    assert unmatched.items == []


def test_activity_filter_uses_inline_classification(db_session):
    classifier = ClassificationService(ActivityClassifier(settings.classification_ttl_seconds))
    service = _service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess(), _gym()])], classifier)

    response = _discover(service, db_session, activity_types=["chess"])

    assert [item.name for item in response.items] == ["Chess Corner Cafe"]
    item = response.items[0]
    assert item.activity_types == ["Chess", "Board Games"]
    assert item.needs_verification is True
    assert item.venue_id is not None
    assert item.score == item.activity_scores["Chess"]
    assert response.filter_support["activity_types"] is True


def test_trace_records_stage_timings(db_session):
    service = _service([FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess()])])
    trace = DiscoveryTrace(path="/api/discover")

    async def scenario():
        token = set_current_trace(trace)
        try:
            return await service.discover(db_session, DiscoveryQuery(bounds=VIEWPORT))
        finally:
            reset_current_trace(token)

    response = asyncio.run(scenario())

    assert response.request_id == str(trace.request_id)
    assert trace.discovery_active is True
    assert trace.item_count == 1
    assert {"cache", "providers", "reconcile", "ranking"} <= set(trace.stage_times_ms)


def test_refresh_and_warm_tiles(db_session):
    osm = FakeAdapter(PlaceProvider.OPENSTREETMAP, [_chess()])
    service = _service([osm], warm_tile_count=3)

    refreshed = asyncio.run(service.refresh_tiles(db_session, settings.refresh_tiles[:1]))
    warmed = asyncio.run(service.warm_around(db_session, 13.7563, 100.5018))

    assert refreshed[0].tile == "bangkok-west"
    assert refreshed[0].place_count == 1
    assert refreshed[0].cache_hit is False
    assert [result.tile for result in warmed] == ["warm-0", "warm-1", "warm-2"]
    assert warmed[0].place_count == 1
    assert osm.calls == 4


def test_rank_score_and_traits():
    near = place_rank_score(distance_m=0, rating=4.5, confidence=0.8, provider_count=2, fresh=True)
    far = place_rank_score(distance_m=5000, rating=4.5, confidence=0.8, provider_count=2, fresh=True)
    assert near > far

    engine = ReconciliationEngine()
    (place,) = engine.merge(
        {
            "openstreetmap": [_chess(website="https://chess.example")],
            "foursquare": [make_record(PlaceProvider.FOURSQUARE, "fsq-1", rating=4.2, rating_count=30)],
        }
    )
    assert derive_traits(place, ["Chess"]) == ["community_verified", "multi_source", "well_reviewed", "has_website"]
