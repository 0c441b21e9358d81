from __future__ import annotations

import hmac
from functools import lru_cache

from fastapi import Depends, Header, Query, Request

from .config import settings
from .errors import Unauthorized
from .providers.base import PlaceAdapter
from .providers.registry import build_adapters
from .services.classifier import ClassificationService, get_classification_service
from .services.discovery_service import DiscoveryService
from .services.rate_limit import RateLimiter
from .services.reconciliation import ReconciliationEngine
from .services.tile_cache import TileCache
from .telemetry.metrics import MetricsRecorder


@lru_cache(maxsize=1)
def get_tile_cache() -> TileCache:
    return TileCache.from_settings(settings)


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    return RateLimiter()


@lru_cache(maxsize=1)
def get_adapters() -> tuple[PlaceAdapter, ...]:
    return tuple(build_adapters(settings))


@lru_cache(maxsize=1)
def get_metrics_recorder() -> MetricsRecorder:
    return MetricsRecorder(enabled=settings.telemetry_enabled)


def get_discovery_service(
    tile_cache: TileCache = Depends(get_tile_cache),
    adapters: tuple[PlaceAdapter, ...] = Depends(get_adapters),
    classification_service: ClassificationService = Depends(get_classification_service),
    metrics: MetricsRecorder = Depends(get_metrics_recorder),
) -> DiscoveryService:
    return DiscoveryService(
        tile_cache=tile_cache,
        adapters=list(adapters),
        engine=ReconciliationEngine(settings.dedupe_distance_meters, settings.dedupe_name_similarity),
        classification_service=classification_service,
        metrics=metrics,
    )


def get_current_user(x_user_id: str | None = Header(default=None)) -> str | None:
    """Resolve the caller from the identity header set by the upstream auth gateway."""
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()[:128]


def require_user(user_id: str | None = Depends(get_current_user)) -> str:
    if user_id is None:
        raise Unauthorized("Authentication required")
    return user_id


def require_cron_secret(
    x_cron_secret: str | None = Header(default=None),
    cron_secret: str | None = Query(default=None),
) -> None:
    expected = settings.cron_secret
    provided = x_cron_secret or cron_secret or ""
    if not expected:
        raise Unauthorized("Scheduled jobs are disabled: CRON_SECRET is not configured")
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        raise Unauthorized("Invalid cron secret")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"
