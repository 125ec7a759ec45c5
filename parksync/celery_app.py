import logging

from celery import Celery
from sqlalchemy.exc import SQLAlchemyError

from parksync.config import settings
from parksync.logging import configure_logging

logger = logging.getLogger(__name__)

celery_app = Celery(
    "parksync",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["parksync.tasks.integrations"],
)
celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=settings.celery_timezone,
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)


def load_beat_schedule() -> dict:
    """Beat entries for every active integration with a schedule.

    The schedule is read once at beat startup; edits take effect after a
    beat restart.
    """
    from parksync.db import SessionLocal
    from parksync.models.integration import Integration
    from parksync.services.erp_sync.schedule import build_beat_schedule

    session = SessionLocal()
    try:
        integrations = session.query(Integration).filter(Integration.is_active.is_(True)).all()
        schedule = build_beat_schedule(integrations)
    finally:
        session.close()
    schedule["erp-sync-reset-stuck-runs"] = {
        "task": "parksync.tasks.integrations.reset_stuck_sync_runs",
        "schedule": 900.0,
    }
    return schedule


@celery_app.on_after_configure.connect
def setup_periodic_tasks(sender, **kwargs):
    configure_logging()
    try:
        entries = load_beat_schedule()
    except SQLAlchemyError:
        logger.exception("ERP_SYNC_SCHEDULE_LOAD_FAILED")
        return
    for name, entry in entries.items():
        signature = sender.signature(entry["task"], args=entry.get("args", ()), kwargs=entry.get("kwargs", {}))
        sender.add_periodic_task(entry["schedule"], signature, name=name)
    logger.info("ERP_SYNC_SCHEDULE_LOADED entries=%d", len(entries))
