from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from parksync.api.deps import get_db, require_cron_secret
from parksync.schemas.common import ListResponse
from parksync.schemas.integration import (
    IntegrationCreate,
    IntegrationRead,
    IntegrationUpdate,
    SyncCursorRead,
    SyncEnqueueResponse,
    SyncRequest,
    SyncResponse,
    SyncRunRead,
)
from parksync.services import integration as integration_service
from parksync.services.erp_sync import (
    IntegrationNotFoundError,
    SyncInProgressError,
    erp_sync_controller,
    sync_response,
)

router = APIRouter(prefix="/integrations", tags=["integrations"])


@router.post("", response_model=IntegrationRead, status_code=status.HTTP_201_CREATED)
def create_integration(payload: IntegrationCreate, db: Session = Depends(get_db)):
    return integration_service.integrations.create(db, payload)


@router.get("/{integration_id}", response_model=IntegrationRead)
def get_integration(integration_id: str, db: Session = Depends(get_db)):
    return integration_service.integrations.get(db, integration_id)


@router.get("", response_model=ListResponse[IntegrationRead])
def list_integrations(
    target_entity: str | None = None,
    sync_direction: str | None = None,
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return integration_service.integrations.list_response(
        db,
        target_entity,
        sync_direction,
        is_active,
        order_by,
        order_dir,
        limit,
        offset,
    )


@router.patch("/{integration_id}", response_model=IntegrationRead)
def update_integration(integration_id: str, payload: IntegrationUpdate, db: Session = Depends(get_db)):
    return integration_service.integrations.update(db, integration_id, payload)


@router.delete("/{integration_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_integration(integration_id: str, db: Session = Depends(get_db)):
    integration_service.integrations.delete(db, integration_id)


@router.get("/{integration_id}/cursor", response_model=SyncCursorRead)
def get_integration_cursor(integration_id: str, db: Session = Depends(get_db)):
    return integration_service.integrations.cursor(db, integration_id)


@router.get("/{integration_id}/runs", response_model=ListResponse[SyncRunRead])
def list_integration_runs(
    integration_id: str,
    status: str | None = None,
    order_by: str = Query(default="started_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    integration_service.integrations.get(db, integration_id)
    return integration_service.sync_runs.list_response(
        db, integration_id, status, order_by, order_dir, limit, offset
    )


@router.post(
    "/{integration_id}/sync",
    response_model=SyncResponse,
    dependencies=[Depends(require_cron_secret)],
)
def trigger_sync(integration_id: str, payload: SyncRequest | None = None, db: Session = Depends(get_db)):
    payload = payload or SyncRequest()
    controller = erp_sync_controller(db)
    try:
        run = controller.run_sync(integration_id, full_resync=payload.full_resync, trigger=payload.trigger)
    except IntegrationNotFoundError as exc:
        return JSONResponse(status_code=404, content={"success": False, "status": "error", "error": str(exc)})
    except SyncInProgressError as exc:
        return JSONResponse(status_code=409, content={"success": False, "status": "skipped", "error": str(exc)})
    return sync_response(db, run)


@router.post(
    "/{integration_id}/sync/enqueue",
    response_model=SyncEnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_cron_secret)],
)
def enqueue_sync(integration_id: str, payload: SyncRequest | None = None, db: Session = Depends(get_db)):
    from parksync.tasks.integrations import sync_integration

    payload = payload or SyncRequest()
    integration = integration_service.integrations.get(db, integration_id)
    if not integration.is_active:
        raise HTTPException(status_code=404, detail="Integration not found")
    result = sync_integration.delay(
        str(integration.id), full_resync=payload.full_resync, trigger=payload.trigger.value
    )
    return SyncEnqueueResponse(task_id=result.id)
