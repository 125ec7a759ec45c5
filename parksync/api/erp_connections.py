from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from parksync.api.deps import get_db
from parksync.schemas.common import ListResponse
from parksync.schemas.integration import ErpConnectionCreate, ErpConnectionRead, ErpConnectionUpdate
from parksync.services import integration as integration_service

router = APIRouter(prefix="/erp-connections", tags=["erp-connections"])


@router.post("", response_model=ErpConnectionRead, status_code=status.HTTP_201_CREATED)
def create_erp_connection(payload: ErpConnectionCreate, db: Session = Depends(get_db)):
    return integration_service.erp_connections.create(db, payload)


@router.get("/{connection_id}", response_model=ErpConnectionRead)
def get_erp_connection(connection_id: str, db: Session = Depends(get_db)):
    return integration_service.erp_connections.get(db, connection_id)


@router.get("", response_model=ListResponse[ErpConnectionRead])
def list_erp_connections(
    is_active: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return integration_service.erp_connections.list_response(db, is_active, order_by, order_dir, limit, offset)


@router.patch("/{connection_id}", response_model=ErpConnectionRead)
def update_erp_connection(connection_id: str, payload: ErpConnectionUpdate, db: Session = Depends(get_db)):
    return integration_service.erp_connections.update(db, connection_id, payload)


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_erp_connection(connection_id: str, db: Session = Depends(get_db)):
    integration_service.erp_connections.delete(db, connection_id)
