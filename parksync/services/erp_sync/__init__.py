"""SoftOne ERP reconciliation and sync engine.

Usage:
    from parksync.services.erp_sync import erp_sync_controller, sync_response

    controller = erp_sync_controller(db)
    run = controller.run_sync(integration_id, trigger="cron")
    response = sync_response(db, run)
"""

from sqlalchemy.orm import Session

from parksync.models.sync_run import SyncCursor, SyncRun, SyncRunStatus
from parksync.schemas.integration import SyncCursorRead, SyncResponse
from parksync.services.erp_sync.client import (
    ErpAuthError,
    ErpBusinessError,
    ErpClient,
    ErpCredentials,
    ErpError,
    ErpPage,
    ErpRateLimitError,
    ErpTransientError,
    SoftOneClient,
)
from parksync.services.erp_sync.controller import SyncController, credentials_for, softone_client_factory
from parksync.services.erp_sync.entities import EntityRegistry, EntitySpec, default_registry
from parksync.services.erp_sync.errors import (
    IntegrationConfigError,
    IntegrationNotFoundError,
    SyncError,
    SyncInProgressError,
    UnknownEntityError,
)


def erp_sync_controller(db: Session, **kwargs) -> SyncController:
    """Create a sync controller using the SoftOne client."""
    return SyncController(db, **kwargs)


def sync_response(db: Session, run: SyncRun) -> SyncResponse:
    cursor = db.get(SyncCursor, run.integration_id)
    if cursor is not None and cursor.run_id != run.id:
        cursor = None
    return SyncResponse(
        success=run.status == SyncRunStatus.success,
        status=run.status.value,
        run_id=run.id,
        stats=run.stats,
        error=run.error,
        cursor=SyncCursorRead.model_validate(cursor) if cursor is not None else None,
    )


__all__ = [
    "EntityRegistry",
    "EntitySpec",
    "ErpAuthError",
    "ErpBusinessError",
    "ErpClient",
    "ErpCredentials",
    "ErpError",
    "ErpPage",
    "ErpRateLimitError",
    "ErpTransientError",
    "IntegrationConfigError",
    "IntegrationNotFoundError",
    "SoftOneClient",
    "SyncController",
    "SyncError",
    "SyncInProgressError",
    "UnknownEntityError",
    "credentials_for",
    "default_registry",
    "erp_sync_controller",
    "softone_client_factory",
    "sync_response",
]
