"""
Scheduler — periodic eviction of expired WSAA session credentials.

Infrastructure layer — uses APScheduler (3.x) AsyncIOScheduler so the job
shares the application's event loop lifetime: started in the FastAPI lifespan,
shut down when the application stops.

The sweep is a memory optimization only; SessionCredentialCache.get applies
the same validity cutoff on its own. A failing sweep is logged and the
process keeps running.
"""

from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from afip_invoicer.adapters.credential_cache import SessionCredentialCache

log = structlog.get_logger()

SWEEP_JOB_ID = "credential_cache_sweep"


def create_sweeper(
    cache: SessionCredentialCache,
    interval_seconds: int = 60,
) -> AsyncIOScheduler:
    """
    Create a scheduler that sweeps `cache` every `interval_seconds`.

    Returns the scheduler unstarted; call .start() from inside a running
    event loop and .shutdown() on exit.
    """
    scheduler = AsyncIOScheduler()

    def _sweep() -> None:
        try:
            evicted = cache.sweep()
        except Exception as e:
            log.error("sweeper.failed", error=str(e))
            return
        log.debug("sweeper.completed", evicted=evicted, remaining=len(cache))

    scheduler.add_job(
        _sweep,
        trigger=IntervalTrigger(seconds=interval_seconds),
        id=SWEEP_JOB_ID,
        name="WSAA credential cache sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
