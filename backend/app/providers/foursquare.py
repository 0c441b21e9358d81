from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from ..services.geo import Bounds
from .base import (
    Attribution,
    NormalizedRecord,
    PlaceAdapter,
    PlaceProvider,
    ProviderResponseError,
    coerce_float,
    coerce_price_level,
    coerce_text,
    has_valid_location,
)
from .categories import FOURSQUARE_CATEGORY_IDS, categories_from_foursquare, expand_category_aliases, merge_categories

FOURSQUARE_SEARCH_URL = "https://api.foursquare.com/v3/places/search"
FOURSQUARE_ATTRIBUTION_TEXT = "Data from Foursquare Places"
FOURSQUARE_ATTRIBUTION_URL = "https://location.foursquare.com/developer/places-api"
FOURSQUARE_CONFIDENCE = 0.8
MAX_FOURSQUARE_RESULTS = 50
MIN_RADIUS_METERS = 200
MAX_RADIUS_METERS = 5000


def search_params(bounds: Bounds, categories: list[str], limit: int) -> dict[str, str]:
    center = bounds.center
    radius = min(MAX_RADIUS_METERS, max(MIN_RADIUS_METERS, bounds.diagonal_meters / 2))
    params = {
        "ll": f"{center.lat:.6f},{center.lng:.6f}",
        "radius": str(round(radius)),
        "limit": str(min(limit, MAX_FOURSQUARE_RESULTS)),
        "sort": "DISTANCE",
    }
    category_ids: list[str] = []
    for category in categories:
        for category_id in FOURSQUARE_CATEGORY_IDS.get(category, ()):
            if category_id not in category_ids:
                category_ids.append(category_id)
    if category_ids:
        params["categories"] = ",".join(category_ids)
    return params


def normalize_result(
    result: dict[str, Any],
    requested_categories: list[str],
    fetched_at: datetime,
) -> NormalizedRecord | None:
    fsq_id = coerce_text(result.get("fsq_id"))
    name = coerce_text(result.get("name"))
    main = (result.get("geocodes") or {}).get("main") or {}
    lat = coerce_float(main.get("latitude"))
    lng = coerce_float(main.get("longitude"))
    if not fsq_id or not name or not has_valid_location(lat, lng):
        return None

    raw_categories = [item for item in result.get("categories") or [] if isinstance(item, dict)]
    categories = categories_from_foursquare(raw_categories) or requested_categories or ["activity"]
    tags = merge_categories([str(item.get("name") or "") for item in raw_categories])
    location = result.get("location") or {}
    rating = coerce_float(result.get("rating"))
    return NormalizedRecord(
        provider=PlaceProvider.FOURSQUARE,
        provider_place_id=fsq_id,
        name=name,
        lat=lat,
        lng=lng,
        categories=tuple(categories),
        tags=tuple(tags),
        address=coerce_text(location.get("address") or location.get("formatted_address")),
        locality=coerce_text(location.get("locality")),
        region=coerce_text(location.get("region")),
        country=coerce_text(location.get("country")),
        postcode=coerce_text(location.get("postcode")),
        website=coerce_text(result.get("website")),
        phone=coerce_text(result.get("tel")),
        # Foursquare rates on a 10 point scale.
        rating=round(rating / 2, 2) if rating is not None else None,
        price_level=coerce_price_level(result.get("price")),
        description=coerce_text(result.get("description")),
        attribution=Attribution(
            provider=PlaceProvider.FOURSQUARE.value,
            text=FOURSQUARE_ATTRIBUTION_TEXT,
            url=FOURSQUARE_ATTRIBUTION_URL,
        ),
        confidence=FOURSQUARE_CONFIDENCE,
        fetched_at=fetched_at,
    )


class FoursquareAdapter(PlaceAdapter):
    provider = PlaceProvider.FOURSQUARE

    def __init__(self, api_key: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key

    async def fetch(self, bounds: Bounds, categories: list[str], *, limit: int = 50) -> list[NormalizedRecord]:
        requested = expand_category_aliases(categories)
        payload = await self._send(
            "GET",
            FOURSQUARE_SEARCH_URL,
            params=search_params(bounds, requested, limit),
            headers={"Accept": "application/json", "Authorization": self.api_key},
        )
        if not isinstance(payload, dict):
            raise ProviderResponseError("Foursquare payload must be an object", self.name)

        fetched_at = datetime.now(timezone.utc)
        records: list[NormalizedRecord] = []
        for result in payload.get("results") or []:
            if not isinstance(result, dict):
                continue
            record = normalize_result(result, requested, fetched_at)
            if record is not None:
                records.append(record)
        return records
