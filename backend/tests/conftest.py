import os

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["TELEMETRY_ENABLED"] = "false"
os.environ["ENABLE_MODEL_CLASSIFIER"] = "false"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["FOURSQUARE_API_KEY"] = ""
os.environ["GOOGLE_PLACES_API_KEY"] = ""

import asyncio
from datetime import datetime, timezone

import pytest

from app import models  # noqa: F401
from app.database import Base, SessionLocal, engine
from app.providers.base import Attribution, NormalizedRecord, PlaceAdapter, PlaceProvider
from app.services.place_repository import upsert_places
from app.services.reconciliation import ReconciliationEngine


def make_record(
    provider: PlaceProvider = PlaceProvider.OPENSTREETMAP,
    provider_place_id: str = "node:1",
    name: str = "Chess Corner Cafe",
    lat: float = 13.7563,
    lng: float = 100.5018,
    **overrides,
) -> NormalizedRecord:
    fields = {
        "provider": provider,
        "provider_place_id": provider_place_id,
        "name": name,
        "lat": lat,
        "lng": lng,
        "attribution": Attribution(provider=provider.value, text=f"{provider.value} data"),
        "confidence": 0.6,
        "categories": ("community",),
        "can_persist": provider is not PlaceProvider.GOOGLE_PLACES,
        "fetched_at": datetime.now(timezone.utc),
    }
    fields.update(overrides)
    return NormalizedRecord(**fields)


def store_places(db, *records: NormalizedRecord):
    reconciled = ReconciliationEngine().merge({"all": list(records)})
    persisted = upsert_places(db, reconciled)
    db.commit()
    return [persisted[place.identity] for place in reconciled if place.identity in persisted]


class FakeAdapter(PlaceAdapter):
    def __init__(
        self,
        provider: PlaceProvider,
        records: list[NormalizedRecord] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        super().__init__()
        self.provider = provider
        self.records = records or []
        self.delay = delay
        self.error = error
        self.calls = 0

    async def fetch(self, bounds, categories, *, limit=50):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.records)


@pytest.fixture()
def db_session():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def record_factory():
    return make_record


@pytest.fixture()
def fake_adapter():
    return FakeAdapter
