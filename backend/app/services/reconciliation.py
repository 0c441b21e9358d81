from __future__ import annotations

import difflib
import math
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime

from ..providers.base import Attribution, NormalizedRecord, provider_priority
from .geo import haversine_meters

ExpiryResolver = Callable[[str, datetime], datetime | None]

BACKFILL_FIELDS = (
    "address",
    "locality",
    "region",
    "country",
    "postcode",
    "website",
    "phone",
    "rating",
    "rating_count",
    "price_level",
    "description",
)
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def normalize_name(value: str) -> str:
    lowered = value.lower().replace("&", "and")
    lowered = re.sub(r"\bst\b\.?", "street", lowered)
    lowered = re.sub(r"\brd\b\.?", "road", lowered)
    lowered = re.sub(r"[^a-z0-9\s]", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def name_similarity(a: str, b: str) -> float:
    left = normalize_name(a)
    right = normalize_name(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    sequence_ratio = difflib.SequenceMatcher(a=left, b=right).ratio()
    left_tokens = set(left.split())
    right_tokens = set(right.split())
    token_overlap = len(left_tokens & right_tokens) / max(len(left_tokens), len(right_tokens), 1)
    return max(sequence_ratio, token_overlap)


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower())
    return re.sub(r"-{2,}", "-", slug).strip("-")


def slug_from_name_and_coords(name: str, lat: float, lng: float) -> str:
    lat_part = _base36(round(abs(lat) * 1000))
    lng_part = _base36(round(abs(lng) * 1000))
    return f"{slugify(name)}-{lat_part}{lng_part}".strip("-")


def popularity_score(sources: list[NormalizedRecord]) -> float:
    ratings = [source.rating for source in sources if source.rating is not None]
    rating_counts = [source.rating_count for source in sources if source.rating_count is not None]
    rating = sum(ratings) / len(ratings) if ratings else 0.0
    rating_count = max(rating_counts) if rating_counts else 0
    score = rating * math.log10(rating_count + 1) + sum(source.confidence for source in sources)
    return round(score, 3)


@dataclass
class ReconciledPlace:
    slug: str
    name: str
    lat: float
    lng: float
    primary_source: str
    aggregated_from: list[str]
    sources: list[NormalizedRecord]
    categories: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
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
    popularity_score: float = 0.0
    confidence: float = 0.0
    cached_at: datetime | None = None
    cache_expires_at: datetime | None = None

    @property
    def source_keys(self) -> list[tuple[str, str]]:
        return [source.source_key for source in self.sources]

    @property
    def identity(self) -> tuple[str, str]:
        """Source key of the primary record; unique per merge, unlike ``slug``."""
        return self.sources[0].source_key

    @property
    def can_persist(self) -> bool:
        return any(source.can_persist for source in self.sources)

    @property
    def attributions(self) -> list[Attribution]:
        return [source.attribution for source in self.sources]


def _ordering_key(record: NormalizedRecord) -> tuple[int, str, str, float, float]:
    return (provider_priority(record.provider), record.provider_place_id, record.name, record.lat, record.lng)


class ReconciliationEngine:
    """Merges per-provider records into canonical places.

    Records join a cluster when they sit within ``distance_meters`` of the
    cluster's primary record and their normalized names are at least
    ``name_similarity`` alike, or when they repeat a ``(provider, id)`` pair.
    """

    def __init__(self, distance_meters: float = 75.0, name_similarity: float = 0.85) -> None:
        self.distance_meters = distance_meters
        self.name_similarity = name_similarity

    def is_same_place(self, anchor: NormalizedRecord, candidate: NormalizedRecord) -> bool:
        if anchor.source_key == candidate.source_key:
            return True
        distance = haversine_meters(anchor.lat, anchor.lng, candidate.lat, candidate.lng)
        if distance > self.distance_meters:
            return False
        return name_similarity(anchor.name, candidate.name) >= self.name_similarity

    def merge(
        self,
        records_by_provider: Mapping[str, list[NormalizedRecord]],
        expiry: ExpiryResolver | None = None,
    ) -> list[ReconciledPlace]:
        records = sorted(
            (record for records in records_by_provider.values() for record in records),
            key=_ordering_key,
        )

        clusters: list[list[NormalizedRecord]] = []
        seen_keys: set[tuple[str, str]] = set()
        for record in records:
            if record.source_key in seen_keys:
                continue
            seen_keys.add(record.source_key)
            for cluster in clusters:
                if self.is_same_place(cluster[0], record):
                    cluster.append(record)
                    break
            else:
                clusters.append([record])

        places = [self._build_place(cluster, expiry) for cluster in clusters]
        return sorted(places, key=lambda place: (place.slug, place.primary_source))

    def _build_place(self, cluster: list[NormalizedRecord], expiry: ExpiryResolver | None) -> ReconciledPlace:
        primary = cluster[0]
        place = ReconciledPlace(
            slug=slug_from_name_and_coords(primary.name, primary.lat, primary.lng),
            name=primary.name,
            lat=primary.lat,
            lng=primary.lng,
            primary_source=primary.provider.value,
            aggregated_from=[],
            sources=list(cluster),
        )

        for record in cluster:
            if record.provider.value not in place.aggregated_from:
                place.aggregated_from.append(record.provider.value)
            for name in BACKFILL_FIELDS:
                if getattr(place, name) is None and getattr(record, name) is not None:
                    setattr(place, name, getattr(record, name))

        place.categories = sorted({category for record in cluster for category in record.categories})
        place.tags = sorted({tag for record in cluster for tag in record.tags})
        place.popularity_score = popularity_score(cluster)
        place.confidence = max(record.confidence for record in cluster)
        place.cached_at = max(record.fetched_at for record in cluster)
        if expiry is not None:
            expirations = [expiry(record.provider.value, record.fetched_at) for record in cluster]
            finite = [value for value in expirations if value is not None]
            place.cache_expires_at = min(finite) if finite else None
        return place
