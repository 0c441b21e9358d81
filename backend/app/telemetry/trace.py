from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from uuid import UUID, uuid4

_TRACE_CONTEXT: ContextVar["DiscoveryTrace | None"] = ContextVar("discovery_trace", default=None)

STAGES = ("cache", "providers", "reconcile", "classify", "ranking")


def _round_or_none(value: float | None) -> float | None:
    if value is None:
        return None
    return round(value, 3)


@dataclass
class DiscoveryTrace:
    request_id: UUID = field(default_factory=uuid4)
    path: str = ""
    method: str = "GET"
    request_start_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    tile_key: str | None = None
    stage_times_ms: dict[str, float] = field(default_factory=dict)
    total_time_ms: float | None = None
    item_count: int | None = None
    cache_hit: bool | None = None
    degraded: bool | None = None
    discovery_active: bool = False
    _request_perf_counter_start: float = field(default_factory=perf_counter, repr=False)

    def mark_discovery(self, tile_key: str) -> None:
        self.tile_key = tile_key
        self.discovery_active = True

    def record_stage_time(self, stage: str, duration_ms: float) -> None:
        if stage not in STAGES:
            return
        self.stage_times_ms[stage] = self.stage_times_ms.get(stage, 0.0) + duration_ms

    def stage_time(self, stage: str) -> float | None:
        return self.stage_times_ms.get(stage)

    def set_result_summary(self, item_count: int, cache_hit: bool, degraded: bool) -> None:
        self.item_count = item_count
        self.cache_hit = cache_hit
        self.degraded = degraded

    def finalize(self) -> None:
        if self.total_time_ms is None:
            self.total_time_ms = (perf_counter() - self._request_perf_counter_start) * 1000.0
        if self.discovery_active and self.item_count is None:
            self.item_count = 0

    def to_header_value(self) -> str:
        payload: dict[str, object] = {"request_id": str(self.request_id)}
        for stage in STAGES:
            payload[f"{stage}_time_ms"] = _round_or_none(self.stage_times_ms.get(stage))
        payload.update(
            {
                "total_time_ms": _round_or_none(self.total_time_ms),
                "item_count": self.item_count,
                "cache_hit": self.cache_hit,
                "degraded": self.degraded,
            }
        )
        return json.dumps(payload, separators=(",", ":"))

    def missing_required_stages(self) -> list[str]:
        if not self.discovery_active:
            return []
        # A cache hit legitimately skips the upstream stages.
        required = ("cache", "ranking") if self.cache_hit else STAGES
        return [stage for stage in required if stage not in self.stage_times_ms]


def get_current_trace() -> DiscoveryTrace | None:
    return _TRACE_CONTEXT.get()


def set_current_trace(trace: DiscoveryTrace) -> Token:
    return _TRACE_CONTEXT.set(trace)


def reset_current_trace(token: Token) -> None:
    _TRACE_CONTEXT.reset(token)


@contextmanager
def timed_stage(stage: str, trace: DiscoveryTrace | None = None) -> Iterator[None]:
    """Add the block's wall time to ``stage`` on ``trace``, or on the request's trace when none is given."""
    target = trace or get_current_trace()
    started = perf_counter()
    try:
        yield
    finally:
        if target is not None:
            target.record_stage_time(stage, (perf_counter() - started) * 1000.0)
