from __future__ import annotations

import asyncio
import logging
import math
import uuid
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import RefreshTile, Settings, settings
from ..database import run_sync
from ..errors import DiscoveryError, DiscoveryUnavailable, ValidationError
from ..models import Place
from ..providers.base import NormalizedRecord, PlaceAdapter, provider_priority
from ..providers.categories import expand_category_aliases
from ..schemas import (
    AttributionView,
    BoundsView,
    CacheMeta,
    DiscoveryItem,
    DiscoveryResponse,
    FacetCount,
    PointView,
    RefreshTileResult,
    VoteTotalsView,
)
from ..telemetry import DiscoveryTrace, get_current_trace, timed_stage
from ..telemetry.metrics import MetricRecord, MetricsRecorder
from .activities import category_match, filter_activity_names, keyword_match, to_activity_name
from .classifier import ClassificationService
from .geo import Bounds, Point, bounds_from_radius, clamp_limit, clamp_radius, haversine_meters
from .place_repository import (
    as_utc,
    places_by_source_keys,
    places_in_bounds,
    records_from_places,
    upsert_places,
)
from .reconciliation import ReconciledPlace, ReconciliationEngine
from .tile_cache import TileCache, TileSnapshot
from .tiles import neighbor_tiles, tile_bounds, tile_key
from .votes import VoteTotals, activity_score, vote_totals_for_venues

logger = logging.getLogger(__name__)

CAPACITY_KEYS = ("any", "couple", "small", "medium", "large")
TIME_WINDOWS = ("any", "open_now", "morning", "afternoon", "evening", "late")
LIST_DIMENSIONS = ("activity_types", "tags", "traits", "taxonomy_categories", "price_levels")
SCALAR_DIMENSIONS = ("capacity_key", "time_window")
FILTER_DIMENSIONS = LIST_DIMENSIONS + SCALAR_DIMENSIONS

FALLBACK_STALE_CACHE = "stale_cache"
FALLBACK_DATABASE = "database"
FALLBACK_PARTIAL_PROVIDERS = "partial_providers"


def normalize_filter_values(values: Iterable[str] | None) -> list[str]:
    return sorted({value.strip().lower() for value in values or () if value and value.strip()})


@dataclass
class DiscoveryQuery:
    lat: float | None = None
    lng: float | None = None
    bounds: Bounds | None = None
    radius: float | None = None
    limit: int | None = None
    categories: list[str] = field(default_factory=list)
    activity_types: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    traits: list[str] = field(default_factory=list)
    taxonomy_categories: list[str] = field(default_factory=list)
    price_levels: list[str] = field(default_factory=list)
    capacity_key: str = "any"
    time_window: str = "any"
    bypass_cache: bool = False

    def __post_init__(self) -> None:
        for name in ("categories", *LIST_DIMENSIONS):
            setattr(self, name, normalize_filter_values(getattr(self, name)))
        self.capacity_key = (self.capacity_key or "any").strip().lower()
        self.time_window = (self.time_window or "any").strip().lower()
        if self.capacity_key not in CAPACITY_KEYS:
            raise ValidationError(f"capacity must be one of: {', '.join(CAPACITY_KEYS)}")
        if self.time_window not in TIME_WINDOWS:
            raise ValidationError(f"time_window must be one of: {', '.join(TIME_WINDOWS)}")

    def active_filters(self) -> dict[str, list[str] | str]:
        active: dict[str, list[str] | str] = {name: getattr(self, name) for name in LIST_DIMENSIONS if getattr(self, name)}
        for name in SCALAR_DIMENSIONS:
            if getattr(self, name) != "any":
                active[name] = getattr(self, name)
        return active


@dataclass
class ResolvedArea:
    center: Point
    bounds: Bounds
    radius_meters: float


@dataclass
class FetchOutcome:
    records_by_provider: dict[str, list[NormalizedRecord]] = field(default_factory=dict)
    provider_counts: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    fetched: list[str] = field(default_factory=list)
    used_stale: bool = False
    fallback_source: str | None = None
    fallback_error: str | None = None

    @property
    def degraded(self) -> bool:
        return bool(self.errors) or self.fallback_source is not None


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"
    return str(exc) or exc.__class__.__name__


def place_rank_score(
    *,
    distance_m: float,
    rating: float | None,
    confidence: float,
    provider_count: int,
    fresh: bool,
) -> float:
    proximity = 1.0 / (1.0 + max(0.0, distance_m) / 2000.0)
    rating_part = max(0.0, min(5.0, rating or 0.0)) / 5.0
    multi_provider = 0.05 * max(0, provider_count - 1)
    score = (
        0.45 * proximity
        + 0.2 * rating_part
        + 0.15 * max(0.0, min(1.0, confidence))
        + (0.1 if fresh else 0.0)
        + multi_provider
    )
    return round(score, 4)


def derive_traits(place: ReconciledPlace, verified: list[str]) -> list[str]:
    traits: list[str] = []
    if verified:
        traits.append("community_verified")
    if len(place.aggregated_from) > 1:
        traits.append("multi_source")
    if place.rating is not None and (place.rating_count or 0) >= 10:
        traits.append("well_reviewed")
    if place.website:
        traits.append("has_website")
    if place.phone:
        traits.append("has_phone")
    return traits


def item_dimension_values(item: DiscoveryItem, dimension: str) -> list[str]:
    if dimension == "activity_types":
        return [value.lower() for value in item.activity_types]
    if dimension == "price_levels":
        return [str(item.price_level)] if item.price_level is not None else []
    if dimension in SCALAR_DIMENSIONS:
        value = getattr(item, dimension)
        return [value] if value else []
    return [value.lower() for value in getattr(item, dimension)]


def compute_filter_support(items: list[DiscoveryItem]) -> dict[str, bool]:
    return {
        dimension: any(item_dimension_values(item, dimension) for item in items)
        for dimension in FILTER_DIMENSIONS
    }


def compute_facets(items: list[DiscoveryItem]) -> dict[str, list[FacetCount]]:
    facets: dict[str, list[FacetCount]] = {}
    for dimension in FILTER_DIMENSIONS:
        counts = Counter(value for item in items for value in set(item_dimension_values(item, dimension)))
        facets[dimension] = [
            FacetCount(value=value, count=count)
            for value, count in sorted(counts.items(), key=lambda pair: (-pair[1], pair[0]))
        ]
    return facets


def _wanted_values(query: DiscoveryQuery, dimension: str) -> set[str]:
    if dimension == "activity_types":
        names = (to_activity_name(value) for value in query.activity_types)
        return {name.lower() for name in names if name}
    if dimension in SCALAR_DIMENSIONS:
        value = getattr(query, dimension)
        return set() if value == "any" else {value}
    return set(getattr(query, dimension))


def apply_filters(items: list[DiscoveryItem], query: DiscoveryQuery, support: dict[str, bool]) -> list[DiscoveryItem]:
    """Keep items matching every active filter whose dimension has data in this result set."""
    active = {
        dimension: _wanted_values(query, dimension)
        for dimension in FILTER_DIMENSIONS
        if support.get(dimension)
    }
    active = {dimension: wanted for dimension, wanted in active.items() if wanted}
    if not active:
        return items
    return [
        item
        for item in items
        if all(wanted & set(item_dimension_values(item, dimension)) for dimension, wanted in active.items())
    ]


def unique_attributions(places: list[ReconciledPlace]) -> list[AttributionView]:
    seen: set[tuple[str, str, str]] = set()
    views: list[AttributionView] = []
    for place in places:
        for attribution in place.attributions:
            key = attribution.key()
            if key in seen:
                continue
            seen.add(key)
            views.append(AttributionView(**attribution.as_dict()))
    return sorted(views, key=lambda view: (provider_priority(view.provider), view.text, view.url or ""))


class DiscoveryService:
    def __init__(
        self,
        tile_cache: TileCache,
        adapters: list[PlaceAdapter],
        engine: ReconciliationEngine,
        classification_service: ClassificationService | None = None,
        metrics: MetricsRecorder | None = None,
        config: Settings = settings,
    ) -> None:
        self.tile_cache = tile_cache
        self.adapters = sorted(adapters, key=lambda adapter: provider_priority(adapter.provider))
        self.engine = engine
        self.classification_service = classification_service
        self.metrics = metrics
        self.config = config

    @property
    def provider_names(self) -> list[str]:
        return [adapter.name for adapter in self.adapters]

    def resolve_area(self, query: DiscoveryQuery) -> ResolvedArea:
        radius = clamp_radius(
            query.radius,
            minimum=self.config.min_radius_meters,
            maximum=self.config.max_radius_meters,
            default=self.config.default_radius_meters,
        )
        if query.lat is not None and query.lng is not None:
            center = Point(query.lat, query.lng)
            if not (math.isfinite(center.lat) and math.isfinite(center.lng)):
                raise ValidationError("lat/lng must be finite numbers")
            if not (-90.0 <= center.lat <= 90.0 and -180.0 <= center.lng <= 180.0):
                raise ValidationError("lat/lng out of range")
            if query.bounds is not None:
                query.bounds.validate()
                return ResolvedArea(center=center, bounds=query.bounds, radius_meters=radius)
            return ResolvedArea(center=center, bounds=bounds_from_radius(center.lat, center.lng, radius), radius_meters=radius)
        if query.bounds is not None:
            query.bounds.validate()
            radius = min(self.config.max_radius_meters, query.bounds.diagonal_meters / 2.0)
            return ResolvedArea(center=query.bounds.center, bounds=query.bounds, radius_meters=round(radius, 1))
        raise ValidationError("Provide a center via lat/lng or a viewport via sw/ne bounds")

    async def _load_provider(
        self,
        key: str,
        adapter: PlaceAdapter,
        fetch_bounds: Bounds,
        categories: list[str],
        limit: int,
    ) -> list[NormalizedRecord]:
        async def loader() -> list[NormalizedRecord]:
            return await asyncio.wait_for(
                adapter.fetch(fetch_bounds, categories, limit=limit),
                timeout=self.config.provider_timeout_seconds,
            )

        return await self.tile_cache.fetch(key, adapter.name, loader)

    async def _fetch_providers(
        self,
        key: str,
        snapshot: TileSnapshot,
        to_fetch: list[str],
        categories: list[str],
        limit: int,
        outcome: FetchOutcome,
        trace: DiscoveryTrace | None,
    ) -> None:
        adapters = [adapter for adapter in self.adapters if adapter.name in to_fetch]
        fetch_bounds = tile_bounds(key)
        with timed_stage("providers", trace):
            results = await asyncio.gather(
                *(self._load_provider(key, adapter, fetch_bounds, categories, limit) for adapter in adapters),
                return_exceptions=True,
            )

        for adapter, result in zip(adapters, results):
            outcome.fetched.append(adapter.name)
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                error = describe_error(result)
                logger.warning("Provider %s failed for tile %s: %s", adapter.name, key, error)
                outcome.errors[adapter.name] = error
                outcome.provider_counts[adapter.name] = 0
                # Serve whatever the cache still holds for this provider, fresh or not.
                stale = snapshot.stale_records_by_provider.get(adapter.name) or snapshot.records_by_provider.get(adapter.name)
                if stale:
                    outcome.records_by_provider[adapter.name] = list(stale)
                    outcome.used_stale = True
                continue
            outcome.records_by_provider[adapter.name] = list(result)
            outcome.provider_counts[adapter.name] = len(result)

    def _database_records(self, db: Session, bounds: Bounds) -> dict[str, list[NormalizedRecord]]:
        try:
            return records_from_places(places_in_bounds(db, bounds, self.config.refresh_limit))
        except SQLAlchemyError:
            logger.exception("Failed to load stored places for fallback")
            db.rollback()
            return {}

    async def _backstop_fallback(
        self,
        db: Session,
        key: str,
        bounds: Bounds,
        to_fetch: list[str],
        outcome: FetchOutcome,
    ) -> None:
        outcome.fallback_error = "timeout"
        for provider in to_fetch:
            outcome.provider_counts[provider] = 0
        stale = {provider: list(entry.records) for provider, entry in self.tile_cache.stale(key).items() if entry.records}
        if stale:
            outcome.records_by_provider = stale
            outcome.fallback_source = FALLBACK_STALE_CACHE
            return
        outcome.records_by_provider = await run_sync(db, self._database_records, db, bounds)
        outcome.fallback_source = FALLBACK_DATABASE

    def _merge(self, records_by_provider: dict[str, list[NormalizedRecord]], trace: DiscoveryTrace | None) -> list[ReconciledPlace]:
        with timed_stage("reconcile", trace):
            return self.engine.merge(records_by_provider, expiry=self.tile_cache.expires_at)

    def _persist(self, db: Session, merged: list[ReconciledPlace]) -> None:
        expiries = {
            source.source_key: self.tile_cache.expires_at(source.provider.value, source.fetched_at)
            for place in merged
            for source in place.sources
        }
        try:
            upsert_places(db, merged, expiries)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to persist reconciled places; serving computed result")

    async def _classify(self, db: Session, place_ids: list[uuid.UUID], trace: DiscoveryTrace | None) -> None:
        if self.classification_service is None or not place_ids:
            return
        with timed_stage("classify", trace):
            try:
                await self.classification_service.classify_places(db, place_ids, self.config.classify_batch_limit)
            except (DiscoveryError, SQLAlchemyError):
                await run_sync(db, db.rollback)
                logger.exception("Inline venue classification failed")

    def _stored_places(self, db: Session, merged: list[ReconciledPlace]) -> dict[tuple[str, str], Place]:
        """Map each merged place's identity to its stored row, if any."""
        keys = [key for place in merged for key in place.source_keys]
        try:
            by_key = places_by_source_keys(db, keys)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to resolve stored places")
            return {}
        stored: dict[tuple[str, str], Place] = {}
        for place in merged:
            for key in place.source_keys:
                if key in by_key:
                    stored[place.identity] = by_key[key]
                    break
        return stored

    def _store(
        self, db: Session, merged: list[ReconciledPlace], persist: bool
    ) -> tuple[dict[tuple[str, str], Place], list[uuid.UUID]]:
        if persist:
            self._persist(db, merged)
        stored = self._stored_places(db, merged)
        return stored, [row.id for row in stored.values()]

    def _build_items(
        self,
        db: Session,
        merged: list[ReconciledPlace],
        stored: dict[tuple[str, str], Place],
        area: ResolvedArea,
        query: DiscoveryQuery,
        now: datetime,
    ) -> list[tuple[DiscoveryItem, ReconciledPlace]]:
        venues = {identity: row.venue for identity, row in stored.items() if row.venue is not None}
        totals = vote_totals_for_venues(db, [venue.id for venue in venues.values()])
        requested_activities = filter_activity_names(query.activity_types)

        items: list[tuple[DiscoveryItem, ReconciledPlace]] = []
        for place in merged:
            if not area.bounds.contains(place.lat, place.lng):
                continue
            row = stored.get(place.identity)
            venue = venues.get(place.identity)
            verified = filter_activity_names(venue.verified_activities) if venue else []
            ai_tags = filter_activity_names(venue.ai_activity_tags) if venue else []
            confidences = dict(venue.ai_confidence_scores or {}) if venue else {}
            venue_totals = totals.get(venue.id, {}) if venue else {}
            activity_types = verified + [tag for tag in ai_tags if tag not in verified]
            distance = haversine_meters(area.center.lat, area.center.lng, place.lat, place.lng)
            texts = [place.name, *place.tags, place.description or ""]

            activity_scores = {
                activity: activity_score(
                    confidences.get(activity),
                    venue_totals.get(activity, VoteTotals()).yes,
                    venue_totals.get(activity, VoteTotals()).no,
                    category_match(activity, place.categories),
                    keyword_match(activity, texts),
                )
                for activity in requested_activities
            }
            if requested_activities:
                score = max(activity_scores.values())
            else:
                expires = as_utc(place.cache_expires_at)
                score = place_rank_score(
                    distance_m=distance,
                    rating=place.rating,
                    confidence=place.confidence,
                    provider_count=len(place.aggregated_from),
                    fresh=expires is None or expires > now,
                )

            item = DiscoveryItem(
                id=str(row.id) if row is not None else None,
                venue_id=str(venue.id) if venue is not None else None,
                slug=row.slug if row is not None else place.slug,
                name=place.name,
                lat=place.lat,
                lng=place.lng,
                distance_m=round(distance, 1),
                categories=place.categories,
                tags=place.tags,
                traits=derive_traits(place, verified),
                taxonomy_categories=place.categories,
                price_level=place.price_level,
                address=place.address,
                locality=place.locality,
                website=place.website,
                phone=place.phone,
                rating=place.rating,
                rating_count=place.rating_count,
                popularity_score=place.popularity_score,
                primary_source=place.primary_source,
                aggregated_from=place.aggregated_from,
                activity_types=activity_types,
                activity_scores=activity_scores,
                verified_activities=verified,
                needs_verification=bool(venue.needs_verification) if venue else False,
                vote_totals={
                    activity: VoteTotalsView(yes=value.yes, no=value.no)
                    for activity, value in sorted(venue_totals.items())
                },
                score=score,
                cache_expires_at=place.cache_expires_at,
            )
            items.append((item, place))
        return items

    async def discover(self, db: Session, query: DiscoveryQuery) -> DiscoveryResponse:
        started = perf_counter()
        trace = get_current_trace()
        area = self.resolve_area(query)
        limit = clamp_limit(query.limit, maximum=self.config.max_limit, default=self.config.default_limit)
        categories = expand_category_aliases(query.categories)
        key = tile_key(area.bounds, categories, self.config.tile_size_degrees)
        if trace is not None:
            trace.mark_discovery(key)

        now = datetime.now(timezone.utc)
        providers = self.provider_names
        with timed_stage("cache", trace):
            snapshot = self.tile_cache.get(key, providers, now=now)
        to_fetch = list(providers) if query.bypass_cache else snapshot.providers_needing_fetch()

        outcome = FetchOutcome(
            records_by_provider={provider: list(records) for provider, records in snapshot.records_by_provider.items()},
            provider_counts={provider: len(snapshot.records_by_provider.get(provider, [])) for provider in providers},
        )
        merged: list[ReconciledPlace] = []
        if to_fetch:
            for provider in to_fetch:
                outcome.records_by_provider.pop(provider, None)

            async def fetch_and_merge() -> list[ReconciledPlace]:
                await self._fetch_providers(key, snapshot, to_fetch, categories, self.config.refresh_limit, outcome, trace)
                return self._merge(outcome.records_by_provider, trace)

            try:
                merged = await asyncio.wait_for(fetch_and_merge(), timeout=self.config.query_timeout_seconds)
            except asyncio.TimeoutError:
                logger.warning("Discovery backstop timeout for tile %s", key)
                await self._backstop_fallback(db, key, area.bounds, to_fetch, outcome)
                merged = self._merge(outcome.records_by_provider, trace)
        else:
            merged = self._merge(outcome.records_by_provider, trace)

        if outcome.errors and outcome.fallback_source is None:
            outcome.fallback_error = "; ".join(f"{provider}: {error}" for provider, error in sorted(outcome.errors.items()))
            outcome.fallback_source = FALLBACK_STALE_CACHE if outcome.used_stale else FALLBACK_PARTIAL_PROVIDERS
            if not merged and not any(outcome.provider_counts.get(name, 0) for name in providers):
                fallback_records = await run_sync(db, self._database_records, db, area.bounds)
                if fallback_records:
                    outcome.records_by_provider = fallback_records
                    outcome.fallback_source = FALLBACK_DATABASE
                    merged = self._merge(fallback_records, trace)

        all_failed = bool(to_fetch) and set(outcome.errors) >= set(to_fetch) and not snapshot.records_by_provider
        if not merged and (all_failed or (outcome.fallback_error == "timeout")):
            raise DiscoveryUnavailable("No provider, cache, or stored data is available for this area")

        persist = bool(outcome.fetched) and outcome.fallback_source != FALLBACK_DATABASE
        stored, place_ids = await run_sync(db, self._store, db, merged, persist)
        await self._classify(db, place_ids, trace)

        with timed_stage("ranking", trace):
            built = await run_sync(db, self._build_items, db, merged, stored, area, query, now)
            all_items = [item for item, _ in built]
            support = compute_filter_support(all_items)
            facets = compute_facets(all_items)
            items = apply_filters(all_items, query, support)
            items.sort(key=lambda item: (-item.score, item.distance_m, item.slug))
            items = items[:limit]

        cache_hit = not outcome.fetched and snapshot.is_hit
        origins = {id(item): place for item, place in built}
        source_breakdown = Counter(provider for item in items for provider in item.aggregated_from)
        latency_ms = round((perf_counter() - started) * 1000.0, 3)
        response = DiscoveryResponse(
            items=items,
            facets=facets,
            filter_support=support,
            source_breakdown=dict(sorted(source_breakdown.items(), key=lambda pair: provider_priority(pair[0]))),
            provider_counts={provider: outcome.provider_counts.get(provider, 0) for provider in providers},
            attribution=unique_attributions([origins[id(item)] for item in items]),
            cache=CacheMeta(key=key, hit=cache_hit),
            degraded=outcome.degraded,
            fallback_source=outcome.fallback_source,
            fallback_error=outcome.fallback_error,
            center=PointView(lat=area.center.lat, lng=area.center.lng),
            bounds=BoundsView(
                sw=PointView(lat=area.bounds.sw.lat, lng=area.bounds.sw.lng),
                ne=PointView(lat=area.bounds.ne.lat, lng=area.bounds.ne.lng),
            ),
            radius_meters=area.radius_meters,
            latency_ms=latency_ms,
            request_id=str(trace.request_id) if trace is not None else None,
        )

        if trace is not None:
            trace.set_result_summary(len(items), cache_hit, response.degraded)
        self._record_metric(query, response, trace)
        return response

    def _record_metric(self, query: DiscoveryQuery, response: DiscoveryResponse, trace: DiscoveryTrace | None) -> None:
        if self.metrics is None:
            return
        payload: dict[str, Any] = {
            "bounds": response.bounds.model_dump(),
            "radius_meters": response.radius_meters,
            "categories": query.categories,
            "filters": query.active_filters(),
            "bypass_cache": query.bypass_cache,
        }
        self.metrics.record(
            MetricRecord(
                query=payload,
                cache_hit=response.cache.hit,
                latency_ms=response.latency_ms,
                provider_counts=response.provider_counts,
                degraded=response.degraded,
                item_count=len(response.items),
                tile_key=response.cache.key,
                stage_times_ms=dict(trace.stage_times_ms) if trace is not None else {},
                request_id=trace.request_id if trace is not None else uuid.uuid4(),
            )
        )

    async def refresh_tiles(self, db: Session, tiles: list[RefreshTile]) -> list[RefreshTileResult]:
        """Force-refresh each named tile, one at a time."""
        results: list[RefreshTileResult] = []
        for tile in tiles:
            started = perf_counter()
            query = DiscoveryQuery(
                bounds=Bounds.from_corners(tile.sw_lat, tile.sw_lng, tile.ne_lat, tile.ne_lng),
                limit=self.config.max_limit,
                bypass_cache=True,
            )
            try:
                response = await self.discover(db, query)
            except DiscoveryError as exc:
                logger.warning("Tile refresh failed for %s: %s", tile.name, exc.message)
                results.append(
                    RefreshTileResult(
                        tile=tile.name,
                        cache_hit=False,
                        place_count=0,
                        latency_ms=round((perf_counter() - started) * 1000.0, 3),
                        degraded=True,
                        error=exc.message,
                    )
                )
                continue
            results.append(
                RefreshTileResult(
                    tile=tile.name,
                    tile_key=response.cache.key,
                    cache_hit=response.cache.hit,
                    place_count=len(response.items),
                    latency_ms=response.latency_ms,
                    degraded=response.degraded,
                    error=response.fallback_error,
                )
            )
        return results

    async def warm_around(self, db: Session, lat: float, lng: float, count: int | None = None) -> list[RefreshTileResult]:
        center = Point(lat, lng)
        if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
            raise ValidationError("lat/lng out of range")
        wanted = max(1, min(count or self.config.warm_tile_count, self.config.max_warm_tile_count))
        cells = neighbor_tiles(center, wanted, self.config.tile_size_degrees)
        tiles = [
            RefreshTile(
                name=f"warm-{index}",
                sw_lat=cell.sw.lat,
                sw_lng=cell.sw.lng,
                ne_lat=cell.ne.lat,
                ne_lng=cell.ne.lng,
            )
            for index, cell in enumerate(cells)
        ]
        return await self.refresh_tiles(db, tiles)
