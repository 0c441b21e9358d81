"""Per-request discovery traces, stage timing and metrics."""

from .trace import (
    STAGES,
    DiscoveryTrace,
    get_current_trace,
    reset_current_trace,
    set_current_trace,
    timed_stage,
)

__all__ = [
    "STAGES",
    "DiscoveryTrace",
    "get_current_trace",
    "reset_current_trace",
    "set_current_trace",
    "timed_stage",
]
