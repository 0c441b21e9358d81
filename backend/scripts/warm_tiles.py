"""Warm the tile cache and place store from the command line.

Without a center the configured refresh tiles are refreshed; with ``--lat`` and
``--lng`` the tile holding that point and its nearest neighbours are warmed.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.config import settings
from app.database import SessionLocal
from app.dependencies import get_adapters, get_metrics_recorder, get_tile_cache
from app.services.classifier import get_classification_service
from app.services.discovery_service import DiscoveryService
from app.services.place_repository import evict_dead_places
from app.services.reconciliation import ReconciliationEngine
from app.telemetry.logging_utils import configure_logging


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Warm discovery tiles.")
    parser.add_argument("--lat", type=float, default=None)
    parser.add_argument("--lng", type=float, default=None)
    parser.add_argument("--count", type=int, default=settings.warm_tile_count)
    parser.add_argument("--evict", action="store_true", help="Evict places whose sources have all expired.")
    args = parser.parse_args(argv)
    if (args.lat is None) != (args.lng is None):
        parser.error("--lat and --lng must be given together")
    return args


async def run(args: argparse.Namespace) -> int:
    service = DiscoveryService(
        tile_cache=get_tile_cache(),
        adapters=list(get_adapters()),
        engine=ReconciliationEngine(settings.dedupe_distance_meters, settings.dedupe_name_similarity),
        classification_service=get_classification_service(),
        metrics=get_metrics_recorder(),
    )
    with SessionLocal() as db:
        if args.lat is not None:
            results = await service.warm_around(db, args.lat, args.lng, args.count)
        else:
            results = await service.refresh_tiles(db, list(settings.refresh_tiles))
        if args.evict:
            evicted = evict_dead_places(db)
            db.commit()
            print(f"evicted={evicted}")
    await service.metrics.drain()

    failures = 0
    for result in results:
        status = "degraded" if result.degraded else "ok"
        print(f"{result.tile}: places={result.place_count} latency_ms={result.latency_ms} {status}")
        if result.error and result.place_count == 0:
            failures += 1
    return 1 if results and failures == len(results) else 0


def main() -> None:
    configure_logging(settings.log_level, settings.perf_log_level)
    raise SystemExit(asyncio.run(run(parse_args())))


if __name__ == "__main__":
    main()
