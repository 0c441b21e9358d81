from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from ..config import Settings
from ..providers.base import NormalizedRecord, PlaceProvider, ProviderError

logger = logging.getLogger(__name__)

RecordLoader = Callable[[], Awaitable[list[NormalizedRecord]]]


class Freshness(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    MISSING = "missing"


@dataclass(frozen=True)
class TileEntry:
    records: tuple[NormalizedRecord, ...]
    fetched_at: datetime


@dataclass
class TileSnapshot:
    tile_key: str
    records_by_provider: dict[str, list[NormalizedRecord]] = field(default_factory=dict)
    stale_records_by_provider: dict[str, list[NormalizedRecord]] = field(default_factory=dict)
    freshness: dict[str, Freshness] = field(default_factory=dict)
    fetched_at: dict[str, datetime] = field(default_factory=dict)

    @property
    def places(self) -> list[NormalizedRecord]:
        return [record for records in self.records_by_provider.values() for record in records]

    def providers_needing_fetch(self) -> list[str]:
        return [provider for provider, state in self.freshness.items() if state is not Freshness.FRESH]

    @property
    def is_hit(self) -> bool:
        return bool(self.freshness) and not self.providers_needing_fetch()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TileCache:
    """Process-local tile cache with per-provider freshness and coalesced upstream loads.

    State lives in this object only; deployments with several workers each hold
    their own copy, so cross-instance deduplication of upstream calls needs a
    shared store in front of the providers.
    """

    def __init__(self, ttl_seconds: dict[str, int | None], max_entries: int = 512) -> None:
        self._ttls = dict(ttl_seconds)
        self.max_entries = max_entries
        self._entries: OrderedDict[str, dict[str, TileEntry]] = OrderedDict()
        self._inflight: dict[tuple[str, str], asyncio.Future] = {}
        self._lock = threading.Lock()
        self.upstream_calls = 0

    @classmethod
    def from_settings(cls, config: Settings) -> TileCache:
        ttls: dict[str, int | None] = {PlaceProvider.MANUAL.value: None}
        for provider in (PlaceProvider.FOURSQUARE, PlaceProvider.GOOGLE_PLACES, PlaceProvider.OPENSTREETMAP):
            ttls[provider.value] = config.provider_ttl_seconds(provider.value)
        return cls(ttls, max_entries=config.tile_cache_max_entries)

    def ttl_for(self, provider: str) -> timedelta | None:
        seconds = self._ttls.get(provider)
        if seconds is None:
            return None
        return timedelta(seconds=seconds)

    def expires_at(self, provider: str, fetched_at: datetime) -> datetime | None:
        ttl = self.ttl_for(provider)
        if ttl is None:
            return None
        return _as_utc(fetched_at) + ttl

    def _freshness(self, provider: str, entry: TileEntry | None, now: datetime) -> Freshness:
        if entry is None:
            return Freshness.MISSING
        ttl = self.ttl_for(provider)
        if ttl is None or now - _as_utc(entry.fetched_at) < ttl:
            return Freshness.FRESH
        return Freshness.STALE

    def get(self, tile_key: str, providers: list[str], now: datetime | None = None) -> TileSnapshot:
        current = now or datetime.now(timezone.utc)
        snapshot = TileSnapshot(tile_key=tile_key)
        with self._lock:
            entries = dict(self._entries.get(tile_key, {}))
            if tile_key in self._entries:
                self._entries.move_to_end(tile_key)

        for provider in providers:
            entry = entries.get(provider)
            state = self._freshness(provider, entry, current)
            snapshot.freshness[provider] = state
            if entry is None:
                continue
            snapshot.fetched_at[provider] = entry.fetched_at
            if state is Freshness.FRESH:
                snapshot.records_by_provider[provider] = list(entry.records)
            else:
                snapshot.stale_records_by_provider[provider] = list(entry.records)
        return snapshot

    def put(self, tile_key: str, provider: str, records: list[NormalizedRecord], fetched_at: datetime) -> None:
        entry = TileEntry(records=tuple(records), fetched_at=_as_utc(fetched_at))
        with self._lock:
            tile = self._entries.setdefault(tile_key, {})
            tile[provider] = entry
            self._entries.move_to_end(tile_key)
            while len(self._entries) > self.max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                logger.debug("Evicted tile %s from cache", evicted_key)

    def stale(self, tile_key: str) -> dict[str, TileEntry]:
        with self._lock:
            return dict(self._entries.get(tile_key, {}))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    async def fetch(self, tile_key: str, provider: str, loader: RecordLoader) -> list[NormalizedRecord]:
        """Run ``loader`` once per ``(tile, provider)`` no matter how many callers ask concurrently.

        The first caller owns the upstream call and writes the result through to
        the cache. Later callers await the same future and see the same records
        or the same exception.
        """
        key = (tile_key, provider)
        with self._lock:
            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = asyncio.get_running_loop().create_future()
                self._inflight[key] = future
                self.upstream_calls += 1

        if not owner:
            return list(await asyncio.shield(future))

        try:
            records = await loader()
        except asyncio.CancelledError:
            self._fail(future, ProviderError(f"{provider} fetch was cancelled", provider))
            raise
        except Exception as exc:
            self._fail(future, exc)
            raise
        else:
            self.put(tile_key, provider, records, datetime.now(timezone.utc))
            if not future.done():
                future.set_result(tuple(records))
            return list(records)
        finally:
            with self._lock:
                self._inflight.pop(key, None)

    @staticmethod
    def _fail(future: asyncio.Future, exc: BaseException) -> None:
        if future.done():
            return
        future.set_exception(exc)
        # Waiters re-raise it; mark it retrieved so an unshared failure is not logged twice.
        future.exception()
