from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..services.geo import Bounds
from .base import (
    Attribution,
    NormalizedRecord,
    PlaceAdapter,
    PlaceProvider,
    ProviderError,
    ProviderRateLimitError,
    ProviderResponseError,
    coerce_float,
    coerce_price_level,
    coerce_text,
    has_valid_location,
)
from .categories import GOOGLE_PLACE_TYPES, expand_category_aliases, normalize_categories

GOOGLE_NEARBY_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
GOOGLE_ATTRIBUTION_TEXT = "Google Places"
GOOGLE_ATTRIBUTION_URL = "https://developers.google.com/maps/documentation/places/web-service/policies"
GOOGLE_CONFIDENCE = 0.7
MIN_RADIUS_METERS = 200
MAX_RADIUS_METERS = 5000
METERS_PER_DEGREE = 111_000
CLOSED_STATUSES = {"CLOSED_TEMPORARILY", "CLOSED_PERMANENTLY"}
OK_STATUSES = {"OK", "ZERO_RESULTS"}


def nearby_params(bounds: Bounds, categories: list[str], api_key: str) -> dict[str, str]:
    place_types: list[str] = []
    for category in categories:
        for place_type in GOOGLE_PLACE_TYPES.get(category, ()):
            if place_type not in place_types:
                place_types.append(place_type)
    if not place_types:
        place_types.append("point_of_interest")

    center = bounds.center
    span_degrees = (abs(bounds.ne.lat - bounds.sw.lat) + abs(bounds.ne.lng - bounds.sw.lng)) / 2
    radius = min(MAX_RADIUS_METERS, max(MIN_RADIUS_METERS, span_degrees * METERS_PER_DEGREE))
    params = {
        "key": api_key,
        "location": f"{center.lat:.6f},{center.lng:.6f}",
        "radius": str(round(radius)),
        "type": place_types[0],
    }
    if len(place_types) > 1:
        params["keyword"] = " ".join(place_types[1:])
    return params


def normalize_result(
    result: dict[str, Any],
    requested_categories: list[str],
    fetched_at: datetime,
) -> NormalizedRecord | None:
    if result.get("permanently_closed") or result.get("business_status") in CLOSED_STATUSES:
        return None
    place_id = coerce_text(result.get("place_id"))
    name = coerce_text(result.get("name"))
    location = (result.get("geometry") or {}).get("location") or {}
    lat = coerce_float(location.get("lat"))
    lng = coerce_float(location.get("lng"))
    if not place_id or not name or not has_valid_location(lat, lng):
        return None

    raw_types = [str(value) for value in result.get("types") or []]
    categories = normalize_categories(raw_types) or requested_categories or ["activity"]
    rating_count = result.get("user_ratings_total")
    return NormalizedRecord(
        provider=PlaceProvider.GOOGLE_PLACES,
        provider_place_id=place_id,
        name=name,
        lat=lat,
        lng=lng,
        categories=tuple(categories),
        tags=tuple(value.replace("_", " ") for value in raw_types if value not in {"point_of_interest", "establishment"}),
        address=coerce_text(result.get("vicinity") or result.get("formatted_address")),
        rating=coerce_float(result.get("rating")),
        rating_count=int(rating_count) if isinstance(rating_count, int) else None,
        # Google price levels run 0..4; zero means free and carries no tier.
        price_level=coerce_price_level(result.get("price_level")),
        attribution=Attribution(
            provider=PlaceProvider.GOOGLE_PLACES.value,
            text=GOOGLE_ATTRIBUTION_TEXT,
            url=GOOGLE_ATTRIBUTION_URL,
        ),
        confidence=GOOGLE_CONFIDENCE,
        can_persist=False,
        fetched_at=fetched_at,
    )


class GooglePlacesAdapter(PlaceAdapter):
    provider = PlaceProvider.GOOGLE_PLACES

    def __init__(self, api_key: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key

    async def fetch(self, bounds: Bounds, categories: list[str], *, limit: int = 60) -> list[NormalizedRecord]:
        requested = expand_category_aliases(categories)
        payload = await self._send("GET", GOOGLE_NEARBY_SEARCH_URL, params=nearby_params(bounds, requested, self.api_key))
        if not isinstance(payload, dict):
            raise ProviderResponseError("Google Places payload must be an object", self.name)

        status = payload.get("status", "OK")
        if status == "OVER_QUERY_LIMIT":
            raise ProviderRateLimitError("Google Places quota exceeded", self.name, {"status": status})
        if status not in OK_STATUSES:
            raise ProviderError(f"Google Places returned status {status}", self.name, {"status": status})

        fetched_at = datetime.now(timezone.utc)
        records: list[NormalizedRecord] = []
        for result in payload.get("results") or []:
            if not isinstance(result, dict):
                continue
            record = normalize_result(result, requested, fetched_at)
            if record is not None:
                records.append(record)
        return records[:limit]
