"""
Main entrypoint: runs a one-off sync or starts the APScheduler.

FastAPI runs separately under uvicorn.

Usage:
    python -m dashboard sync --start 2025-01-01 --end 2025-01-31   # all entity types
    python -m dashboard sync --entity hours --start 2025-01-01 --end 2025-01-31
    python -m dashboard                                             # starts scheduler
    uvicorn dashboard.api.main:app --host 0.0.0.0 --port 8000       # starts API
"""
import argparse
import asyncio
import logging
import sys
from datetime import date

from dashboard.config import get_settings

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _build_service(client):
    from dashboard.cache.durable import SqlCacheTier
    from dashboard.cache.multilevel import MultiLevelCache
    from dashboard.db.engine import get_engine
    from dashboard.gripp.sync_service import SyncService

    settings = get_settings()
    engine = get_engine()
    cache = MultiLevelCache(
        durable=SqlCacheTier(engine),
        default_ttl=settings.cache_default_ttl_seconds,
        max_items=settings.cache_max_items,
    )
    return SyncService(client=client, engine=engine, cache=cache, settings=settings)


def _client():
    from dashboard.gripp.client import GrippClient

    settings = get_settings()
    if not settings.gripp_api_key:
        logger.error("GRIPP_API_KEY is not set.")
        sys.exit(1)
    return GrippClient(
        api_url=settings.gripp_api_url,
        api_key=settings.gripp_api_key,
        timeout=settings.gripp_timeout_seconds,
    )


async def _run_sync(argv) -> int:
    from dashboard.gripp.entities import SYNC_ORDER

    parser = argparse.ArgumentParser(prog="python -m dashboard sync", description="Sync Gripp data")
    parser.add_argument("--start", type=date.fromisoformat, help="First day (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, help="Last day (YYYY-MM-DD)")
    parser.add_argument("--entity", choices=SYNC_ORDER, help="Sync a single entity type")
    args = parser.parse_args(argv)

    if (args.start is None) != (args.end is None):
        parser.error("--start and --end must be given together")
    if args.start is not None and args.start > args.end:
        parser.error("--start must not be after --end")

    async with _client() as client:
        service = _build_service(client)
        if args.entity:
            date_range = (args.start, args.end) if args.start else None
            status = await service.sync_entity_type(args.entity, date_range)
            logger.info("%s: %s (%s)", args.entity, status.outcome, status.message)
            return 0 if status.outcome == "success" else 1

        result = await service.sync_all(args.start, args.end)
        for name, status in result.results.items():
            logger.info("%s: %s (%s)", name, status.outcome, status.message)
        return 0 if result.success else 1


async def _run_scheduler() -> None:
    from dashboard.scheduler.jobs import build_scheduler

    settings = get_settings()
    async with _client() as client:
        scheduler = build_scheduler(_build_service(client))
        scheduler.start()
        logger.info("Scheduler started (nightly sync at %02d:00)", settings.sync_hour)

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Shutting down...")
        finally:
            scheduler.shutdown()
            logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m dashboard sync ...` or just `python -m dashboard`
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        sys.exit(asyncio.run(_run_sync(sys.argv[2:])))
    else:
        asyncio.run(_run_scheduler())
