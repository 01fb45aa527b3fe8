from __future__ import annotations

import logging

from arq.connections import RedisSettings
from arq.cron import cron

from genstudio.core.config import get_settings
from genstudio.core.logging import configure_logging
from genstudio.persistence.db import SessionLocal
from genstudio.providers.inference.factory import get_inference_provider
from genstudio.providers.storage.factory import get_object_store
from genstudio.services.ingestor import reconcile_stale_jobs

logger = logging.getLogger(__name__)


async def reconcile_jobs(ctx) -> dict[str, int]:
    # Poll jobs whose completion webhook never arrived; each job commits independently.
    async with SessionLocal() as session:
        summary = await reconcile_stale_jobs(session, get_inference_provider(), get_object_store())
    return {
        "scanned": summary.scanned,
        "applied": summary.applied,
        "repaired": summary.repaired,
        "failed": summary.failed,
    }


def _even_step(value: int, period: int) -> int:
    # Largest divisor of the period not above value, so runs stay evenly spaced.
    value = max(1, min(period, value))
    return max(step for step in range(1, value + 1) if period % step == 0)


def _cron_schedule(interval_s: int) -> dict[str, set[int]]:
    """Translate a cadence in seconds into arq cron fields."""
    interval_s = max(1, int(interval_s))
    if interval_s < 60:
        return {"second": set(range(0, 60, _even_step(interval_s, 60)))}
    if interval_s < 3600:
        return {"second": {0}, "minute": set(range(0, 60, _even_step(interval_s // 60, 60)))}
    return {
        "second": {0},
        "minute": {0},
        "hour": set(range(0, 24, _even_step(interval_s // 3600, 24))),
    }


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("reconcile_worker_started queue=%s", get_settings().reconcile_queue_name)


async def _shutdown(ctx) -> None:
    logger.info("reconcile_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.reconcile_queue_name
    functions = [reconcile_jobs]
    cron_jobs = [
        cron(
            reconcile_jobs,
            **_cron_schedule(settings.reconcile_interval_s),
            run_at_startup=True,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
