import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from parksync.db import Base


class SyncDirection(enum.Enum):
    one_way = "one_way"
    two_way = "two_way"


class ErpConnection(Base):
    """SoftOne web-service credentials shared by one or more integrations."""

    __tablename__ = "erp_connections"
    __table_args__ = (UniqueConstraint("name", name="uq_erp_connections_name"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    base_url: Mapped[str] = mapped_column(String(500), nullable=False)
    username: Mapped[str] = mapped_column(String(160), nullable=False)
    password_enc: Mapped[str] = mapped_column(Text, nullable=False)
    app_id: Mapped[int] = mapped_column(Integer, nullable=False)
    company: Mapped[str | None] = mapped_column(String(40))
    branch: Mapped[str | None] = mapped_column(String(40))
    module: Mapped[str | None] = mapped_column(String(40))
    refid: Mapped[str | None] = mapped_column(String(40))
    version: Mapped[str] = mapped_column(String(20), default="1")
    registered_name: Mapped[str | None] = mapped_column(String(160))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    integrations = relationship("Integration", back_populates="connection")


class Integration(Base):
    """Pairing of one ERP table with one local entity."""

    __tablename__ = "integrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    connection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("erp_connections.id"), nullable=False
    )
    source_table: Mapped[str] = mapped_column(String(80), nullable=False)
    erp_object: Mapped[str | None] = mapped_column(String(80))
    target_entity: Mapped[str] = mapped_column(String(80), nullable=False)
    target_entity_key_field: Mapped[str] = mapped_column(String(80), nullable=False)
    # Ordered list of {"erp_field": ..., "local_field": ...}
    field_mappings: Mapped[list | None] = mapped_column(JSON)
    unique_erp_field: Mapped[str] = mapped_column(String(80), nullable=False)
    unique_local_field: Mapped[str] = mapped_column(String(80), nullable=False)
    sync_direction: Mapped[SyncDirection] = mapped_column(
        Enum(SyncDirection), default=SyncDirection.one_way
    )
    schedule: Mapped[str | None] = mapped_column(String(120))
    filter: Mapped[str | None] = mapped_column(Text)
    modified_field: Mapped[str | None] = mapped_column(String(80))
    field_defaults: Mapped[dict | None] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    connection = relationship("ErpConnection", back_populates="integrations")
    runs = relationship("SyncRun", back_populates="integration")
