from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, selectinload

from ..errors import NotFound
from ..models import Place, PlaceSource, Venue
from ..providers.base import Attribution, NormalizedRecord, PlaceProvider
from .geo import Bounds
from .reconciliation import ReconciledPlace

logger = logging.getLogger(__name__)

CANONICAL_FIELDS = (
    "name",
    "lat",
    "lng",
    "categories",
    "tags",
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
    "aggregated_from",
    "primary_source",
    "popularity_score",
)


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_uuid(value: str | uuid.UUID) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _existing_sources(db: Session, places: Iterable[ReconciledPlace]) -> dict[tuple[str, str], PlaceSource]:
    provider_ids = sorted({source.provider_place_id for place in places for source in place.sources})
    if not provider_ids:
        return {}
    rows = db.scalars(select(PlaceSource).where(PlaceSource.provider_place_id.in_(provider_ids))).all()
    return {(row.provider, row.provider_place_id): row for row in rows}


def _unique_slug(db: Session, slug: str, taken: set[str]) -> str:
    candidate = slug
    suffix = 2
    while candidate in taken or db.scalar(select(Place.id).where(Place.slug == candidate)) is not None:
        candidate = f"{slug}-{suffix}"
        suffix += 1
    return candidate


def _source_row(record: NormalizedRecord, expires_at: datetime | None) -> PlaceSource:
    return PlaceSource(
        provider=record.provider.value,
        provider_place_id=record.provider_place_id,
        name=record.name,
        categories=list(record.categories),
        lat=record.lat,
        lng=record.lng,
        address=record.address,
        attribution=record.attribution.as_dict(),
        confidence=record.confidence,
        fetched_at=record.fetched_at,
        expires_at=expires_at,
    )


def upsert_places(
    db: Session,
    reconciled: list[ReconciledPlace],
    expires_at: dict[tuple[str, str], datetime | None] | None = None,
    now: datetime | None = None,
) -> dict[tuple[str, str], Place]:
    """Persist reconciled places, keeping identities stable and superseding their source rows.

    Returns persisted rows keyed by each place's ``identity``. Places built only from
    sources that may not be stored are skipped. Venue classification state is
    never touched here. The caller owns the transaction.
    """
    current = now or datetime.now(timezone.utc)
    expiries = expires_at or {}
    persistable = [place for place in reconciled if place.can_persist]
    existing_sources = _existing_sources(db, persistable)
    claimed: set[uuid.UUID] = set()
    taken_slugs: set[str] = set()
    persisted: dict[tuple[str, str], Place] = {}

    for candidate in persistable:
        place: Place | None = None
        for key in candidate.source_keys:
            row = existing_sources.get(key)
            if row is not None and row.place_id not in claimed:
                place = db.get(Place, row.place_id)
                break
        if place is None:
            by_slug = db.scalar(select(Place).where(Place.slug == candidate.slug))
            if by_slug is not None and by_slug.id not in claimed:
                place = by_slug
        if place is None:
            place = Place(id=uuid.uuid4(), slug=_unique_slug(db, candidate.slug, taken_slugs))
            db.add(place)

        claimed.add(place.id)
        taken_slugs.add(place.slug)
        for name in CANONICAL_FIELDS:
            setattr(place, name, getattr(candidate, name))
        place.cached_at = candidate.cached_at or current
        place.cache_expires_at = candidate.cache_expires_at

        records = [record for record in candidate.sources if record.can_persist]
        refreshed_providers = {record.provider.value for record in records}
        new_keys = [record.source_key for record in records]
        # Superseded sources: this place's rows for refreshed providers plus any row now claimed by these keys.
        db.execute(
            delete(PlaceSource).where(
                PlaceSource.place_id == place.id,
                PlaceSource.provider.in_(refreshed_providers),
            )
        )
        for key in new_keys:
            previous = existing_sources.get(key)
            if previous is not None and previous.place_id != place.id:
                db.execute(delete(PlaceSource).where(PlaceSource.id == previous.id))
        db.flush()
        db.expire(place, ["sources"])

        for record in records:
            row = _source_row(record, expiries.get(record.source_key))
            row.place_id = place.id
            db.add(row)
        persisted[candidate.identity] = place

    db.flush()
    return persisted


def places_in_bounds(db: Session, bounds: Bounds, limit: int) -> list[Place]:
    stmt = (
        select(Place)
        .where(
            Place.lat >= bounds.sw.lat,
            Place.lat <= bounds.ne.lat,
            Place.lng >= bounds.sw.lng,
            Place.lng <= bounds.ne.lng,
        )
        .options(selectinload(Place.sources), selectinload(Place.venue))
        .order_by(Place.popularity_score.desc(), Place.slug)
        .limit(limit)
    )
    return list(db.scalars(stmt).all())


def records_from_places(places: Iterable[Place]) -> dict[str, list[NormalizedRecord]]:
    """Rebuild provider records from stored sources so stored places can be reconciled again."""
    records_by_provider: dict[str, list[NormalizedRecord]] = {}
    for place in places:
        for source in place.sources:
            attribution = source.attribution or {}
            record = NormalizedRecord(
                provider=PlaceProvider(source.provider),
                provider_place_id=source.provider_place_id,
                name=source.name,
                lat=source.lat,
                lng=source.lng,
                categories=tuple(source.categories or place.categories or ()),
                tags=tuple(place.tags or ()),
                address=source.address,
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
                attribution=Attribution(
                    provider=str(attribution.get("provider") or source.provider),
                    text=str(attribution.get("text") or source.provider),
                    url=attribution.get("url"),
                    license=attribution.get("license"),
                ),
                confidence=source.confidence,
                fetched_at=as_utc(source.fetched_at) or datetime.now(timezone.utc),
            )
            records_by_provider.setdefault(source.provider, []).append(record)
    return records_by_provider


def get_place(db: Session, id_or_slug: str) -> Place:
    options = (selectinload(Place.sources), selectinload(Place.venue))
    identifier = parse_uuid(id_or_slug)
    place = None
    if identifier is not None:
        place = db.scalar(select(Place).where(Place.id == identifier).options(*options))
    if place is None:
        place = db.scalar(select(Place).where(Place.slug == id_or_slug).options(*options))
    if place is None:
        raise NotFound(f"Place {id_or_slug} not found")
    return place


def places_by_source_keys(db: Session, keys: Iterable[tuple[str, str]]) -> dict[tuple[str, str], Place]:
    wanted = set(keys)
    if not wanted:
        return {}
    stmt = (
        select(PlaceSource)
        .where(PlaceSource.provider_place_id.in_(sorted({provider_id for _, provider_id in wanted})))
        .options(selectinload(PlaceSource.place).selectinload(Place.venue))
    )
    return {
        (row.provider, row.provider_place_id): row.place
        for row in db.scalars(stmt).all()
        if (row.provider, row.provider_place_id) in wanted
    }


def evict_dead_places(db: Session, now: datetime | None = None) -> int:
    """Delete places whose sources have all expired, unless community or classifier state hangs off them.

    Places that keep such state are flagged for recheck by clearing ``cache_expires_at``.
    """
    current = now or datetime.now(timezone.utc)
    evicted = 0
    places = db.scalars(select(Place).options(selectinload(Place.sources), selectinload(Place.venue))).all()
    for place in places:
        live = [
            source
            for source in place.sources
            if source.expires_at is None or as_utc(source.expires_at) > current
        ]
        if live:
            continue
        venue = place.venue
        if venue is not None and (venue.votes or venue.ai_activity_tags):
            place.cache_expires_at = None
            continue
        db.delete(place)
        evicted += 1
    db.flush()
    if evicted:
        logger.info("Evicted %d places without live sources", evicted)
    return evicted


def ensure_venue(db: Session, place: Place) -> Venue:
    if place.venue is not None:
        return place.venue
    venue = Venue(place=place, name=place.name, raw_description=place.description)
    db.add(venue)
    db.flush()
    return venue


def resolve_venue(db: Session, venue_or_place_id: str) -> Venue:
    """Look up a venue by its own id, or lazily attach one to the place with that id."""
    identifier = parse_uuid(venue_or_place_id)
    if identifier is None:
        raise NotFound(f"Venue {venue_or_place_id} not found")
    venue = db.get(Venue, identifier)
    if venue is not None:
        return venue
    place = db.get(Place, identifier)
    if place is None:
        raise NotFound(f"Venue {venue_or_place_id} not found")
    return ensure_venue(db, place)
