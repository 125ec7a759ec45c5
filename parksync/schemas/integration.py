from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from parksync.models.integration import SyncDirection
from parksync.models.sync_run import SyncRunStatus, SyncTrigger


class ErpConnectionBase(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    base_url: str = Field(min_length=1, max_length=500)
    username: str = Field(min_length=1, max_length=160)
    app_id: int
    company: str | None = Field(default=None, max_length=40)
    branch: str | None = Field(default=None, max_length=40)
    module: str | None = Field(default=None, max_length=40)
    refid: str | None = Field(default=None, max_length=40)
    version: str = Field(default="1", max_length=20)
    registered_name: str | None = Field(default=None, max_length=160)
    is_active: bool = True


class ErpConnectionCreate(ErpConnectionBase):
    password: str = Field(min_length=1)


class ErpConnectionUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    base_url: str | None = Field(default=None, min_length=1, max_length=500)
    username: str | None = Field(default=None, min_length=1, max_length=160)
    password: str | None = Field(default=None, min_length=1)
    app_id: int | None = None
    company: str | None = Field(default=None, max_length=40)
    branch: str | None = Field(default=None, max_length=40)
    module: str | None = Field(default=None, max_length=40)
    refid: str | None = Field(default=None, max_length=40)
    version: str | None = Field(default=None, max_length=20)
    registered_name: str | None = Field(default=None, max_length=160)
    is_active: bool | None = None


class ErpConnectionRead(ErpConnectionBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
    updated_at: datetime


class FieldMappingItem(BaseModel):
    erp_field: str = Field(min_length=1, max_length=80)
    local_field: str = Field(min_length=1, max_length=80)


class IntegrationBase(BaseModel):
    name: str = Field(min_length=1, max_length=160)
    connection_id: UUID
    source_table: str = Field(min_length=1, max_length=80)
    erp_object: str | None = Field(default=None, max_length=80)
    target_entity: str = Field(min_length=1, max_length=80)
    target_entity_key_field: str = Field(min_length=1, max_length=80)
    field_mappings: list[FieldMappingItem] = Field(default_factory=list)
    unique_erp_field: str = Field(min_length=1, max_length=80)
    unique_local_field: str = Field(min_length=1, max_length=80)
    sync_direction: SyncDirection = SyncDirection.one_way
    schedule: str | None = Field(default=None, max_length=120)
    filter: str | None = None
    modified_field: str | None = Field(default=None, max_length=80)
    field_defaults: dict | None = None
    is_active: bool = True

    @field_validator("source_table", "erp_object", "unique_erp_field", "modified_field")
    @classmethod
    def _strip_erp_names(cls, value: str | None) -> str | None:
        return value.strip() if isinstance(value, str) else value


class IntegrationCreate(IntegrationBase):
    pass


class IntegrationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=160)
    connection_id: UUID | None = None
    source_table: str | None = Field(default=None, min_length=1, max_length=80)
    erp_object: str | None = Field(default=None, max_length=80)
    target_entity: str | None = Field(default=None, min_length=1, max_length=80)
    target_entity_key_field: str | None = Field(default=None, min_length=1, max_length=80)
    field_mappings: list[FieldMappingItem] | None = None
    unique_erp_field: str | None = Field(default=None, min_length=1, max_length=80)
    unique_local_field: str | None = Field(default=None, min_length=1, max_length=80)
    sync_direction: SyncDirection | None = None
    schedule: str | None = Field(default=None, max_length=120)
    filter: str | None = None
    modified_field: str | None = Field(default=None, max_length=80)
    field_defaults: dict | None = None
    is_active: bool | None = None


class IntegrationRead(IntegrationBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    last_synced_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class SyncRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    integration_id: UUID
    status: SyncRunStatus
    trigger: SyncTrigger
    full_resync: bool
    invocations: int
    stats: dict | None = None
    details: dict | None = None
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


class SyncCursorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    run_id: UUID
    offset_processed: int
    total_expected: int
    page_size: int
    has_more: bool
    full_resync: bool
    updated_at: datetime | None = None


class SyncRequest(BaseModel):
    full_resync: bool = Field(default=False, validation_alias=AliasChoices("full_resync", "fullSync"))
    trigger: SyncTrigger = SyncTrigger.manual


class SyncResponse(BaseModel):
    success: bool
    status: str
    run_id: UUID | None = None
    stats: dict | None = None
    error: str | None = None
    cursor: SyncCursorRead | None = None


class SyncEnqueueResponse(BaseModel):
    task_id: str
