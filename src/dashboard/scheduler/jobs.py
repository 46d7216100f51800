"""
APScheduler jobs for background sync.

Nightly sync re-fetches the last `sync_lookback_days` days so late hour
registrations and edited absence requests are picked up without an on-demand
trigger.

The scheduler runs in the `python -m dashboard` process (wired in __main__.py).
"""
import logging
from datetime import date, datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from dashboard.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(service) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        service: SyncService whose sync_all() the nightly job runs.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_sync,
        trigger="cron",
        hour=settings.sync_hour,
        minute=0,
        id="nightly_sync",
        replace_existing=True,
        kwargs={"service": service},
    )

    return scheduler


async def _nightly_sync(service) -> None:
    """
    Nightly job: sync every entity type over the lookback window.

    Idempotent: windows are replaced, not appended.
    """
    settings = get_settings()
    end = date.today()
    start = end - timedelta(days=settings.sync_lookback_days)
    logger.info("Nightly sync starting at %s (%s to %s)", datetime.now(timezone.utc).isoformat(), start, end)

    try:
        result = await service.sync_all(start, end)
        logger.info("Nightly sync finished: success=%s %s", result.success, result.summary())
    except Exception as exc:
        logger.error("Nightly sync failed: %s", exc)
