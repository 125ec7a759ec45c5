from fastapi import HTTPException
from sqlalchemy.orm import Session

from parksync.logging import get_logger
from parksync.models.integration import ErpConnection, Integration, SyncDirection
from parksync.models.sync_run import SyncCursor, SyncRun, SyncRunStatus
from parksync.schemas.integration import (
    ErpConnectionCreate,
    ErpConnectionUpdate,
    IntegrationCreate,
    IntegrationUpdate,
)
from parksync.services.common import apply_ordering, apply_pagination, coerce_uuid, validate_enum
from parksync.services.erp_sync.entities import default_registry
from parksync.services.erp_sync.errors import UnknownEntityError
from parksync.services.erp_sync.integration_config import parse_field_mappings, validate_config_fields
from parksync.services.response import ListResponseMixin
from parksync.services.secrets import SecretError, encrypt_secret

logger = get_logger(__name__)


def _encrypt_password(password: str) -> str:
    try:
        return encrypt_secret(password)
    except SecretError as exc:
        raise HTTPException(status_code=500, detail=str(exc))


class ErpConnections(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: ErpConnectionCreate):
        data = payload.model_dump(exclude={"password"})
        connection = ErpConnection(**data, password_enc=_encrypt_password(payload.password))
        db.add(connection)
        db.commit()
        db.refresh(connection)
        return connection

    @staticmethod
    def get(db: Session, connection_id: str):
        connection = db.get(ErpConnection, coerce_uuid(connection_id))
        if not connection:
            raise HTTPException(status_code=404, detail="ERP connection not found")
        return connection

    @staticmethod
    def list(
        db: Session,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = db.query(ErpConnection)
        if is_active is None:
            query = query.filter(ErpConnection.is_active.is_(True))
        else:
            query = query.filter(ErpConnection.is_active == is_active)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"created_at": ErpConnection.created_at, "name": ErpConnection.name},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(db: Session, connection_id: str, payload: ErpConnectionUpdate):
        connection = ErpConnections.get(db, connection_id)
        data = payload.model_dump(exclude_unset=True)
        password = data.pop("password", None)
        if password:
            connection.password_enc = _encrypt_password(password)
        for key, value in data.items():
            setattr(connection, key, value)
        db.commit()
        db.refresh(connection)
        return connection

    @staticmethod
    def delete(db: Session, connection_id: str):
        connection = ErpConnections.get(db, connection_id)
        connection.is_active = False
        db.commit()


def _validate_integration(data: dict) -> None:
    mappings = parse_field_mappings(data.get("field_mappings"))
    try:
        _, problems = validate_config_fields(
            default_registry,
            target_entity=data["target_entity"],
            key_field=data["target_entity_key_field"],
            mappings=mappings,
            unique_erp_field=data["unique_erp_field"],
            unique_local_field=data["unique_local_field"],
            field_defaults=data.get("field_defaults"),
            schedule=data.get("schedule"),
            direction=data.get("sync_direction") or SyncDirection.one_way,
        )
    except UnknownEntityError as exc:
        problems = exc.problems
    if problems:
        raise HTTPException(status_code=422, detail={"message": "Invalid integration configuration", "problems": problems})


class Integrations(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: IntegrationCreate):
        ErpConnections.get(db, str(payload.connection_id))
        data = payload.model_dump(mode="python")
        data["field_mappings"] = [dict(item) for item in data.get("field_mappings") or []]
        _validate_integration(data)
        integration = Integration(**data)
        db.add(integration)
        db.commit()
        db.refresh(integration)
        return integration

    @staticmethod
    def get(db: Session, integration_id: str):
        integration = db.get(Integration, coerce_uuid(integration_id))
        if not integration:
            raise HTTPException(status_code=404, detail="Integration not found")
        return integration

    @staticmethod
    def list(
        db: Session,
        target_entity: str | None,
        sync_direction: str | None,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = db.query(Integration)
        if target_entity:
            query = query.filter(Integration.target_entity == target_entity)
        if sync_direction:
            query = query.filter(
                Integration.sync_direction == validate_enum(sync_direction, SyncDirection, "sync_direction")
            )
        if is_active is None:
            query = query.filter(Integration.is_active.is_(True))
        else:
            query = query.filter(Integration.is_active == is_active)
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "created_at": Integration.created_at,
                "name": Integration.name,
                "last_synced_at": Integration.last_synced_at,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def update(db: Session, integration_id: str, payload: IntegrationUpdate):
        integration = Integrations.get(db, integration_id)
        data = payload.model_dump(exclude_unset=True, mode="python")
        if data.get("connection_id"):
            ErpConnections.get(db, str(data["connection_id"]))
        if "field_mappings" in data and data["field_mappings"] is not None:
            data["field_mappings"] = [dict(item) for item in data["field_mappings"]]
        merged = {
            "target_entity": integration.target_entity,
            "target_entity_key_field": integration.target_entity_key_field,
            "field_mappings": integration.field_mappings,
            "unique_erp_field": integration.unique_erp_field,
            "unique_local_field": integration.unique_local_field,
            "field_defaults": integration.field_defaults,
            "schedule": integration.schedule,
            "sync_direction": integration.sync_direction,
        }
        merged.update({key: value for key, value in data.items() if key in merged})
        _validate_integration(merged)
        for key, value in data.items():
            setattr(integration, key, value)
        db.commit()
        db.refresh(integration)
        return integration

    @staticmethod
    def delete(db: Session, integration_id: str):
        integration = Integrations.get(db, integration_id)
        integration.is_active = False
        db.commit()

    @staticmethod
    def cursor(db: Session, integration_id: str):
        integration = Integrations.get(db, integration_id)
        cursor = db.get(SyncCursor, integration.id)
        if not cursor:
            raise HTTPException(status_code=404, detail="No pending sync cursor")
        return cursor


class SyncRuns(ListResponseMixin):
    @staticmethod
    def get(db: Session, run_id: str):
        run = db.get(SyncRun, coerce_uuid(run_id))
        if not run:
            raise HTTPException(status_code=404, detail="Sync run not found")
        return run

    @staticmethod
    def list(
        db: Session,
        integration_id: str | None,
        status: str | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ):
        query = db.query(SyncRun)
        if integration_id:
            query = query.filter(SyncRun.integration_id == coerce_uuid(integration_id))
        if status:
            query = query.filter(SyncRun.status == validate_enum(status, SyncRunStatus, "status"))
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"started_at": SyncRun.started_at, "completed_at": SyncRun.completed_at},
        )
        return apply_pagination(query, limit, offset).all()


erp_connections = ErpConnections()
integrations = Integrations()
sync_runs = SyncRuns()
