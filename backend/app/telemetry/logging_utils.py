from __future__ import annotations

import logging

from .trace import STAGES, DiscoveryTrace

PERF_LEVEL_NUM = 25
PERF_LEVEL_NAME = "PERF"
PERF_LOGGER_NAME = "discovery.perf"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

logger = logging.getLogger(__name__)


def resolve_log_level(value: str | None, fallback: int = logging.INFO) -> int:
    if not value:
        return fallback
    name = value.strip().upper()
    if name == PERF_LEVEL_NAME:
        return PERF_LEVEL_NUM
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else fallback


def configure_logging(app_level: str, perf_level: str) -> None:
    """Register the PERF level between INFO and WARNING and apply both thresholds.

    The perf logger has its own threshold so per-request stage timings can be
    silenced without touching application logs.
    """
    logging.addLevelName(PERF_LEVEL_NUM, PERF_LEVEL_NAME)
    level = resolve_log_level(app_level)

    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
    else:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    get_perf_logger().setLevel(resolve_log_level(perf_level, fallback=PERF_LEVEL_NUM))


def get_perf_logger() -> logging.Logger:
    return logging.getLogger(PERF_LOGGER_NAME)


def _format_ms(value: float | None) -> str:
    return "-" if value is None else f"{value:.1f}"


def log_trace(trace: DiscoveryTrace, status_code: int) -> None:
    """Emit one PERF line per discovery request, warning first when stage timings are missing."""
    if not trace.discovery_active:
        return

    missing = trace.missing_required_stages()
    if missing and status_code < 400:
        logger.warning(
            "Discovery trace missing stage timing(s): %s",
            ", ".join(missing),
            extra={"request_id": str(trace.request_id)},
        )

    stages = " ".join(f"{stage}_ms={_format_ms(trace.stage_time(stage))}" for stage in STAGES)
    get_perf_logger().log(
        PERF_LEVEL_NUM,
        "discovery_trace request_id=%s status=%s tile=%s %s total_ms=%s items=%s cache_hit=%s degraded=%s",
        trace.request_id,
        status_code,
        trace.tile_key,
        stages,
        _format_ms(trace.total_time_ms),
        trace.item_count,
        trace.cache_hit,
        trace.degraded,
    )
