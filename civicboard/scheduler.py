# civicboard/scheduler.py
from datetime import tzinfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from . import config
from .lifecycle import utcnow
from .reclassify import Reclassifier, purge_expired
from .utils import logger


def build_scheduler(reclassifier: Reclassifier, tz: tzinfo,
                    interval_minutes: int = config.RECLASSIFY_INTERVAL_MINUTES,
                    retention_days: int = config.EXPIRED_RETENTION_DAYS) -> BackgroundScheduler:
    """Background jobs keeping the index's lifecycle fields fresh.

    Reclassification runs on a short interval and again right after the
    reference midnight, when due-today listings turn expired.
    """
    scheduler = BackgroundScheduler(timezone=tz)
    scheduler.add_job(
        reclassifier.run_once, "interval", minutes=interval_minutes,
        id="reclassify", max_instances=1, coalesce=True,
    )
    scheduler.add_job(
        reclassifier.run_once, CronTrigger(hour=0, minute=0, second=5, timezone=tz),
        id="reclassify-midnight", max_instances=1, coalesce=True,
    )
    scheduler.add_job(
        lambda: purge_expired(reclassifier.client, reclassifier.index, utcnow(), tz, retention_days),
        CronTrigger(hour=0, minute=10, timezone=tz),
        id="purge-expired", max_instances=1, coalesce=True,
    )
    return scheduler


def start_scheduler(scheduler: BackgroundScheduler) -> BackgroundScheduler:
    scheduler.start()
    logger.info("Scheduler started with jobs: %s", ", ".join(j.id for j in scheduler.get_jobs()))
    return scheduler
