from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db, run_sync
from ..dependencies import get_discovery_service, require_cron_secret
from ..errors import PersistenceError
from ..models import Place
from ..schemas import (
    DiscoveryResponse,
    PlaceDetailResponse,
    PlaceSourceView,
    RefreshResponse,
    VenueStateView,
)
from ..services.discovery_service import DiscoveryQuery, DiscoveryService
from ..services.geo import Bounds, parse_lat_lng
from ..services.place_repository import evict_dead_places, get_place

router = APIRouter(tags=["discovery"])


def _split_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_bounds(sw: str | None, ne: str | None) -> Bounds | None:
    if sw is None and ne is None:
        return None
    if sw is None or ne is None:
        raise HTTPException(status_code=422, detail="Bounds require both `sw` and `ne` as 'lat,lng'")
    south_west = parse_lat_lng(sw, label="sw")
    north_east = parse_lat_lng(ne, label="ne")
    return Bounds.from_corners(south_west.lat, south_west.lng, north_east.lat, north_east.lng)


def place_detail(place: Place) -> PlaceDetailResponse:
    venue = place.venue
    return PlaceDetailResponse(
        id=str(place.id),
        slug=place.slug,
        name=place.name,
        lat=place.lat,
        lng=place.lng,
        categories=list(place.categories or []),
        tags=list(place.tags or []),
        address=place.address,
        locality=place.locality,
        region=place.region,
        country=place.country,
        postcode=place.postcode,
        website=place.website,
        phone=place.phone,
        rating=place.rating,
        rating_count=place.rating_count,
        price_level=place.price_level,
        description=place.description,
        aggregated_from=list(place.aggregated_from or []),
        primary_source=place.primary_source,
        popularity_score=place.popularity_score,
        cached_at=place.cached_at,
        cache_expires_at=place.cache_expires_at,
        sources=[
            PlaceSourceView(
                provider=source.provider,
                provider_place_id=source.provider_place_id,
                name=source.name,
                categories=list(source.categories or []),
                lat=source.lat,
                lng=source.lng,
                address=source.address,
                confidence=source.confidence,
                fetched_at=source.fetched_at,
                expires_at=source.expires_at,
                attribution=dict(source.attribution or {}),
            )
            for source in place.sources
        ],
        venue=(
            VenueStateView(
                venue_id=str(venue.id),
                ai_activity_tags=list(venue.ai_activity_tags or []),
                ai_confidence_scores=dict(venue.ai_confidence_scores or {}),
                verified_activities=list(venue.verified_activities or []),
                needs_verification=venue.needs_verification,
                last_ai_update=venue.last_ai_update,
            )
            if venue is not None
            else None
        ),
    )


@router.get("/discover", response_model=DiscoveryResponse)
async def discover(
    sw: str | None = Query(default=None),
    ne: str | None = Query(default=None),
    lat: float | None = Query(default=None),
    lng: float | None = Query(default=None),
    radius: float | None = Query(default=None),
    limit: int | None = Query(default=None),
    categories: str | None = Query(default=None),
    activity_types: str | None = Query(default=None),
    tags: str | None = Query(default=None),
    traits: str | None = Query(default=None),
    taxonomy_categories: str | None = Query(default=None),
    price_levels: str | None = Query(default=None),
    capacity: str = Query(default="any"),
    time_window: str = Query(default="any"),
    refresh: bool = Query(default=False),
    db: Session = Depends(get_db),
    service: DiscoveryService = Depends(get_discovery_service),
) -> DiscoveryResponse:
    if (lat is None) != (lng is None):
        raise HTTPException(status_code=422, detail="Provide both `lat` and `lng`")
    query = DiscoveryQuery(
        lat=lat,
        lng=lng,
        bounds=_parse_bounds(sw, ne),
        radius=radius,
        limit=limit,
        categories=_split_list(categories),
        activity_types=_split_list(activity_types),
        tags=_split_list(tags),
        traits=_split_list(traits),
        taxonomy_categories=_split_list(taxonomy_categories),
        price_levels=_split_list(price_levels),
        capacity_key=capacity,
        time_window=time_window,
        bypass_cache=refresh,
    )
    return await service.discover(db, query)


@router.get("/places/{id_or_slug}", response_model=PlaceDetailResponse)
def place(id_or_slug: str, db: Session = Depends(get_db)) -> PlaceDetailResponse:
    return place_detail(get_place(db, id_or_slug))


def _evict(db: Session) -> int:
    try:
        evicted = evict_dead_places(db)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Failed to evict expired places") from exc
    return evicted


@router.post("/refresh", response_model=RefreshResponse, dependencies=[Depends(require_cron_secret)])
async def refresh(
    lat: float | None = Query(default=None),
    lng: float | None = Query(default=None),
    count: int | None = Query(default=None, ge=1),
    db: Session = Depends(get_db),
    service: DiscoveryService = Depends(get_discovery_service),
) -> RefreshResponse:
    if (lat is None) != (lng is None):
        raise HTTPException(status_code=422, detail="Provide both `lat` and `lng` to warm around a center")
    if lat is not None and lng is not None:
        tiles = await service.warm_around(db, lat, lng, count)
    else:
        tiles = await service.refresh_tiles(db, list(settings.refresh_tiles))

    evicted = await run_sync(db, _evict, db)
    return RefreshResponse(tiles=tiles, evicted=evicted)
