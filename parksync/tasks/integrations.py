import time
from datetime import timedelta

from parksync.celery_app import celery_app
from parksync.config import settings
from parksync.db import SessionLocal
from parksync.logging import get_logger
from parksync.metrics import observe_job
from parksync.services.erp_sync import SyncController, sync_response
from parksync.services.erp_sync.errors import IntegrationNotFoundError, SyncInProgressError
from parksync.services.erp_sync.run_log import RunLog

_SYNC_SOFT_LIMIT = int(settings.erp_sync_budget_seconds) + 60


@celery_app.task(
    name="parksync.tasks.integrations.sync_integration",
    time_limit=_SYNC_SOFT_LIMIT + 60,
    soft_time_limit=_SYNC_SOFT_LIMIT,
)
def sync_integration(integration_id: str, full_resync: bool = False, trigger: str = "cron"):
    """
    Pull (and for two-way integrations push) one integration.

    Args:
        integration_id: Integration to sync
        full_resync: Delete local rows of the target entity before pulling
        trigger: "cron" for scheduled runs, "manual" for operator requests

    Returns:
        Sync response dict (success, status, run_id, stats, error, cursor)
    """
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    logger = get_logger(__name__)
    logger.info(
        "ERP_SYNC_TASK_START integration_id=%s full_resync=%s trigger=%s",
        integration_id,
        full_resync,
        trigger,
    )
    try:
        controller = SyncController(session)
        run = controller.run_sync(integration_id, full_resync=full_resync, trigger=trigger)
        response = sync_response(session, run)
        status = run.status.value
        return response.model_dump(mode="json")
    except IntegrationNotFoundError as exc:
        status = "error"
        logger.warning("ERP_SYNC_TASK_NOT_FOUND integration_id=%s", integration_id)
        return {"success": False, "status": "error", "error": str(exc)}
    except SyncInProgressError as exc:
        status = "skipped"
        logger.info("ERP_SYNC_TASK_SKIPPED_RUNNING integration_id=%s", integration_id)
        return {"success": False, "status": "skipped", "error": str(exc)}
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        duration = time.monotonic() - start
        observe_job("erp_sync", status, duration)


@celery_app.task(
    name="parksync.tasks.integrations.reset_stuck_sync_runs",
    time_limit=120,
    soft_time_limit=90,
)
def reset_stuck_sync_runs():
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    logger = get_logger(__name__)
    try:
        count = RunLog(session).reset_stuck_runs(timedelta(seconds=settings.erp_sync_lock_ttl_seconds))
        logger.info("ERP_SYNC_RESET_STUCK_RUNS count=%d", count)
        return {"reset": count}
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("erp_sync_reset_stuck_runs", status, time.monotonic() - start)
