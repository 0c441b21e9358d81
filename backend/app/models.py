import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class Place(Base):
    __tablename__ = "places"
    __table_args__ = (
        CheckConstraint("price_level IS NULL OR (price_level >= 1 AND price_level <= 4)", name="ck_place_price_level"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    lng: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    locality: Mapped[str | None] = mapped_column(Text, nullable=True)
    region: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)
    postcode: Mapped[str | None] = mapped_column(String(32), nullable=True)
    website: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    rating: Mapped[float | None] = mapped_column(Float, nullable=True)
    rating_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_level: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    aggregated_from: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    primary_source: Mapped[str] = mapped_column(String(32), nullable=False)
    popularity_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    cached_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    cache_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    sources: Mapped[list["PlaceSource"]] = relationship(
        back_populates="place",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PlaceSource.provider",
    )
    venue: Mapped["Venue | None"] = relationship(
        back_populates="place",
        cascade="all, delete-orphan",
        passive_deletes=True,
        uselist=False,
    )


class PlaceSource(Base):
    __tablename__ = "place_sources"
    __table_args__ = (
        UniqueConstraint("provider", "provider_place_id", name="uq_place_source_provider_id"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_place_source_confidence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    place_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("places.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_place_id: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    categories: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    attribution: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    place: Mapped[Place] = relationship(back_populates="sources")


class Venue(Base):
    __tablename__ = "venues"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    place_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("places.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    raw_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_reviews: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    ai_activity_tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    ai_confidence_scores: Mapped[dict[str, float]] = mapped_column(JSON, nullable=False, default=dict)
    verified_activities: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    needs_verification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_ai_update: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    place: Mapped[Place] = relationship(back_populates="venue")
    votes: Mapped[list["VenueActivityVote"]] = relationship(
        back_populates="venue",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class VenueActivityVote(Base):
    __tablename__ = "venue_activity_votes"
    __table_args__ = (UniqueConstraint("venue_id", "user_id", "activity_name", name="uq_venue_activity_vote"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    venue_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("venues.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    activity_name: Mapped[str] = mapped_column(String(64), nullable=False)
    vote: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    venue: Mapped[Venue] = relationship(back_populates="votes")


class DiscoveryMetric(Base):
    __tablename__ = "discovery_metrics"

    request_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    query: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    tile_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cache_hit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    degraded: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    latency_ms: Mapped[float] = mapped_column(Float, nullable=False)
    provider_counts: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cache_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    providers_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    reconcile_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    classify_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    ranking_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
