from __future__ import annotations

import re
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
    has_valid_location,
)
from .categories import OSM_CATEGORY_TAGS, categories_from_osm_tags, expand_category_aliases

OSM_ATTRIBUTION_TEXT = "© OpenStreetMap contributors"
OSM_ATTRIBUTION_URL = "https://www.openstreetmap.org/copyright"
OSM_LICENSE = "ODbL"
OSM_CONFIDENCE = 0.6
MAX_OVERPASS_RESULTS = 300
TAG_KEYS = ("sport", "cuisine", "club", "amenity", "leisure", "tourism")
_TAG_SPLIT = re.compile(r"[;,]")


def _selector(bbox: str, condition: str) -> str:
    return f"  node({bbox}){condition};\n  way({bbox}){condition};\n  relation({bbox}){condition};"


def build_overpass_query(bounds: Bounds, categories: list[str], limit: int) -> str:
    bbox = f"{bounds.sw.lat},{bounds.sw.lng},{bounds.ne.lat},{bounds.ne.lng}"
    fragments: list[str] = []
    for category in categories:
        for key, values in OSM_CATEGORY_TAGS.get(category, []):
            for value in values:
                fragments.append(_selector(bbox, f'["{key}"="{value}"]'))
    if not fragments:
        fragments.append(_selector(bbox, '["leisure"]'))
    body = "\n".join(fragments)
    return f"[out:json][timeout:25];\n(\n{body}\n);\nout center {min(limit, MAX_OVERPASS_RESULTS)};\n"


def describe_address(tags: dict[str, str]) -> dict[str, str | None]:
    parts = [tags.get(key) for key in ("addr:housenumber", "addr:street", "addr:neighbourhood", "addr:suburb")]
    street = " ".join(part for part in parts if part).strip()
    return {
        "address": street or tags.get("addr:place") or tags.get("addr:full"),
        "locality": tags.get("addr:city") or tags.get("addr:town") or tags.get("addr:village"),
        "region": tags.get("addr:state") or tags.get("addr:province"),
        "country": tags.get("addr:country"),
        "postcode": tags.get("addr:postcode") or tags.get("postal_code"),
    }


def infer_tags(tags: dict[str, str]) -> list[str]:
    values: list[str] = []
    for key in TAG_KEYS:
        raw = tags.get(key)
        if not raw:
            continue
        for part in _TAG_SPLIT.split(raw):
            cleaned = part.strip().lower()
            if cleaned and cleaned not in values:
                values.append(cleaned)
    return values


def normalize_element(
    element: dict[str, Any],
    requested_categories: list[str],
    fetched_at: datetime,
) -> NormalizedRecord | None:
    center = element.get("center") or {}
    lat = coerce_float(element.get("lat", center.get("lat")))
    lng = coerce_float(element.get("lon", center.get("lon")))
    if not has_valid_location(lat, lng):
        return None

    tags = element.get("tags") or {}
    name = tags.get("name") or tags.get("name:en") or tags.get("alt_name") or "Unnamed place"
    categories = categories_from_osm_tags(tags) or requested_categories or ["activity"]
    address = describe_address(tags)
    return NormalizedRecord(
        provider=PlaceProvider.OPENSTREETMAP,
        provider_place_id=f"{element.get('type')}:{element.get('id')}",
        name=name,
        lat=lat,
        lng=lng,
        categories=tuple(categories),
        tags=tuple(infer_tags(tags)),
        address=address["address"],
        locality=address["locality"],
        region=address["region"],
        country=address["country"],
        postcode=address["postcode"],
        website=tags.get("website") or tags.get("contact:website"),
        phone=tags.get("phone") or tags.get("contact:phone"),
        description=tags.get("description"),
        attribution=Attribution(
            provider=PlaceProvider.OPENSTREETMAP.value,
            text=OSM_ATTRIBUTION_TEXT,
            url=OSM_ATTRIBUTION_URL,
            license=OSM_LICENSE,
        ),
        confidence=OSM_CONFIDENCE,
        fetched_at=fetched_at,
    )


class OverpassAdapter(PlaceAdapter):
    provider = PlaceProvider.OPENSTREETMAP

    def __init__(self, endpoint: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.endpoint = endpoint

    async def fetch(self, bounds: Bounds, categories: list[str], *, limit: int = 200) -> list[NormalizedRecord]:
        requested = expand_category_aliases(categories)
        query = build_overpass_query(bounds, requested, limit)
        payload = await self._send("POST", self.endpoint, data={"data": query})
        if not isinstance(payload, dict):
            raise ProviderResponseError("Overpass payload must be an object", self.name)

        fetched_at = datetime.now(timezone.utc)
        seen: set[str] = set()
        records: list[NormalizedRecord] = []
        for element in payload.get("elements") or []:
            element_key = f"{element.get('type')}:{element.get('id')}"
            if element_key in seen:
                continue
            seen.add(element_key)
            record = normalize_element(element, requested, fetched_at)
            if record is not None:
                records.append(record)
        return records
