from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import Integer, cast, func, select
from sqlalchemy.orm import Session

from ..database import SessionLocal
from ..models import DiscoveryMetric

logger = logging.getLogger(__name__)

STAGE_COLUMNS = {
    "cache": "cache_time_ms",
    "providers": "providers_time_ms",
    "reconcile": "reconcile_time_ms",
    "classify": "classify_time_ms",
    "ranking": "ranking_time_ms",
}


@dataclass
class MetricRecord:
    query: dict[str, Any]
    cache_hit: bool
    latency_ms: float
    provider_counts: dict[str, int]
    degraded: bool = False
    item_count: int = 0
    tile_key: str | None = None
    stage_times_ms: dict[str, float] = field(default_factory=dict)
    request_id: UUID = field(default_factory=uuid4)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_row(self) -> DiscoveryMetric:
        row = DiscoveryMetric(
            request_id=self.request_id,
            query=self.query,
            tile_key=self.tile_key,
            cache_hit=self.cache_hit,
            degraded=self.degraded,
            latency_ms=round(self.latency_ms, 3),
            provider_counts=dict(self.provider_counts),
            item_count=self.item_count,
            timestamp=self.timestamp,
        )
        for stage, column in STAGE_COLUMNS.items():
            value = self.stage_times_ms.get(stage)
            setattr(row, column, round(value, 3) if value is not None else None)
        return row


def persist_metric(metric: MetricRecord, session_factory: Callable[[], Session] = SessionLocal) -> bool:
    try:
        with session_factory() as session:
            session.merge(metric.to_row())
            session.commit()
    except Exception:
        logger.exception("Failed to persist discovery metric", extra={"request_id": str(metric.request_id)})
        return False
    return True


class MetricsRecorder:
    """Fire-and-forget metrics sink.

    ``record`` schedules the write on a worker thread and returns immediately;
    the request path never awaits it and write failures are only logged.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, enabled: bool = True) -> None:
        self._session_factory = session_factory
        self.enabled = enabled
        self._tasks: set[asyncio.Task] = set()

    def record(self, metric: MetricRecord) -> asyncio.Task | None:
        if not self.enabled:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            persist_metric(metric, self._session_factory)
            return None

        task = loop.create_task(asyncio.to_thread(persist_metric, metric, self._session_factory))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def _to_float(value: float | None) -> float:
    if value is None:
        return 0.0
    return round(float(value), 3)


def fetch_average_latency_metrics(db: Session) -> dict[str, float | int]:
    stmt = select(
        func.count(DiscoveryMetric.request_id).label("sample_size"),
        func.avg(cast(DiscoveryMetric.cache_hit, Integer)).label("cache_hit_rate"),
        func.avg(cast(DiscoveryMetric.degraded, Integer)).label("degraded_rate"),
        func.avg(DiscoveryMetric.cache_time_ms).label("avg_cache_time_ms"),
        func.avg(DiscoveryMetric.providers_time_ms).label("avg_providers_time_ms"),
        func.avg(DiscoveryMetric.reconcile_time_ms).label("avg_reconcile_time_ms"),
        func.avg(DiscoveryMetric.classify_time_ms).label("avg_classify_time_ms"),
        func.avg(DiscoveryMetric.ranking_time_ms).label("avg_ranking_time_ms"),
        func.avg(DiscoveryMetric.latency_ms).label("avg_total_time_ms"),
    )
    keys = (
        "cache_hit_rate",
        "degraded_rate",
        "avg_cache_time_ms",
        "avg_providers_time_ms",
        "avg_reconcile_time_ms",
        "avg_classify_time_ms",
        "avg_ranking_time_ms",
        "avg_total_time_ms",
    )
    try:
        row = db.execute(stmt).one()
    except Exception:
        logger.exception("Failed to read discovery metrics")
        return {"sample_size": 0, **{key: 0.0 for key in keys}}

    return {"sample_size": int(row.sample_size or 0), **{key: _to_float(getattr(row, key)) for key in keys}}
