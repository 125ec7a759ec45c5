from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from parksync.api.deps import get_db
from parksync.schemas.common import ListResponse
from parksync.schemas.integration import SyncRunRead
from parksync.services import integration as integration_service

router = APIRouter(prefix="/sync-runs", tags=["sync-runs"])


@router.get("/{run_id}", response_model=SyncRunRead)
def get_sync_run(run_id: str, db: Session = Depends(get_db)):
    return integration_service.sync_runs.get(db, run_id)


@router.get("", response_model=ListResponse[SyncRunRead])
def list_sync_runs(
    integration_id: str | None = None,
    status: str | None = None,
    order_by: str = Query(default="started_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return integration_service.sync_runs.list_response(
        db, integration_id, status, order_by, order_dir, limit, offset
    )
