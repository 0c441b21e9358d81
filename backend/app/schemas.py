from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class AttributionView(BaseModel):
    provider: str
    text: str
    url: str | None = None
    license: str | None = None


class PointView(BaseModel):
    lat: float
    lng: float


class BoundsView(BaseModel):
    sw: PointView
    ne: PointView


class VoteTotalsView(BaseModel):
    yes: int = 0
    no: int = 0


class DiscoveryItem(BaseModel):
    id: str | None = None
    venue_id: str | None = None
    slug: str
    name: str
    lat: float
    lng: float
    distance_m: float
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    traits: list[str] = Field(default_factory=list)
    taxonomy_categories: list[str] = Field(default_factory=list)
    price_level: int | None = None
    capacity_key: str | None = None
    time_window: str | None = None
    address: str | None = None
    locality: str | None = None
    website: str | None = None
    phone: str | None = None
    rating: float | None = None
    rating_count: int | None = None
    popularity_score: float = 0.0
    primary_source: str
    aggregated_from: list[str] = Field(default_factory=list)
    activity_types: list[str] = Field(default_factory=list)
    activity_scores: dict[str, float] = Field(default_factory=dict)
    verified_activities: list[str] = Field(default_factory=list)
    needs_verification: bool = False
    vote_totals: dict[str, VoteTotalsView] = Field(default_factory=dict)
    score: float
    cache_expires_at: datetime | None = None


class FacetCount(BaseModel):
    value: str
    count: int


class CacheMeta(BaseModel):
    key: str
    hit: bool


class DiscoveryResponse(BaseModel):
    items: list[DiscoveryItem]
    facets: dict[str, list[FacetCount]]
    filter_support: dict[str, bool]
    source_breakdown: dict[str, int]
    provider_counts: dict[str, int]
    attribution: list[AttributionView]
    cache: CacheMeta
    degraded: bool = False
    fallback_source: str | None = None
    fallback_error: str | None = None
    center: PointView
    bounds: BoundsView
    radius_meters: float
    latency_ms: float
    request_id: str | None = None


class PlaceSourceView(BaseModel):
    provider: str
    provider_place_id: str
    name: str
    categories: list[str] = Field(default_factory=list)
    lat: float
    lng: float
    address: str | None = None
    confidence: float
    fetched_at: datetime
    expires_at: datetime | None = None
    attribution: dict[str, Any] = Field(default_factory=dict)


class VenueStateView(BaseModel):
    venue_id: str
    ai_activity_tags: list[str] = Field(default_factory=list)
    ai_confidence_scores: dict[str, float] = Field(default_factory=dict)
    verified_activities: list[str] = Field(default_factory=list)
    needs_verification: bool = False
    last_ai_update: datetime | None = None


class PlaceDetailResponse(BaseModel):
    id: str
    slug: str
    name: str
    lat: float
    lng: float
    categories: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    address: str | None = None
    locality: str | None = None
    region: str | None = None
    country: str | None = None
    postcode: str | None = None
    website: str | None = None
    phone: str | None = None
    rating: float | None = None
    rating_count: int | None = None
    price_level: int | None = None
    description: str | None = None
    aggregated_from: list[str] = Field(default_factory=list)
    primary_source: str
    popularity_score: float
    cached_at: datetime | None = None
    cache_expires_at: datetime | None = None
    sources: list[PlaceSourceView] = Field(default_factory=list)
    venue: VenueStateView | None = None


class ClassifyRequest(BaseModel):
    venue_id: str = Field(min_length=1)
    force: bool = False


class ClassifyResponse(BaseModel):
    venue_id: str
    place_id: str
    activity_tags: list[str]
    confidence_scores: dict[str, float]
    classified_at: datetime | None = None
    refreshed: bool
    needs_verification: bool
    verified_activities: list[str] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)


class VoteRequest(BaseModel):
    venue_id: str = Field(min_length=1)
    activity_name: str = Field(min_length=1)
    vote: bool | int | str


class VerificationView(BaseModel):
    verified_activities: list[str] = Field(default_factory=list)
    needs_verification: bool = False


class VoteResponse(BaseModel):
    venue_id: str
    activity_name: str
    vote: bool
    totals: VoteTotalsView
    verification: VerificationView


class VenueActivityMatch(BaseModel):
    venue_id: str
    place_id: str
    venue_name: str
    lat: float
    lng: float
    activity: str
    ai_confidence: float | None = None
    user_yes_votes: int = 0
    user_no_votes: int = 0
    category_match: bool = False
    keyword_match: bool = False
    verified: bool = False
    needs_verification: bool = False
    score: float


class VenueSearchResponse(BaseModel):
    activity: str
    results: list[VenueActivityMatch]


class ActivitySummaryEntry(BaseModel):
    activity: str
    verified_count: int
    likely_count: int
    possible_count: int
    needs_review_count: int
    average_confidence: float | None = None


class ActivitySummaryResponse(BaseModel):
    activities: list[ActivitySummaryEntry]


class RefreshTileResult(BaseModel):
    tile: str
    tile_key: str | None = None
    cache_hit: bool
    place_count: int
    latency_ms: float
    degraded: bool = False
    error: str | None = None


class RefreshResponse(BaseModel):
    tiles: list[RefreshTileResult]
    evicted: int = 0


class HealthResponse(BaseModel):
    status: str


class HealthMetricsResponse(BaseModel):
    sample_size: int
    cache_hit_rate: float
    degraded_rate: float
    avg_cache_time_ms: float
    avg_providers_time_ms: float
    avg_reconcile_time_ms: float
    avg_classify_time_ms: float
    avg_ranking_time_ms: float
    avg_total_time_ms: float
