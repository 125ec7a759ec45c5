"""Local parking entities mirrored from SoftOne tables.

ERP date columns are stored naive: they hold the ERP's wall-clock time.
Bookkeeping timestamps are timezone aware.
"""

from datetime import UTC, date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from parksync.db import Base


class SyncTrackedMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
    # Set by the sync engine together with updated_at; a later updated_at
    # means the row was edited locally since the last exchange with the ERP.
    erp_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Customer(SyncTrackedMixin, Base):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("trdr", name="uq_customers_trdr"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trdr: Mapped[str | None] = mapped_column(String(40))
    code: Mapped[str | None] = mapped_column(String(40))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    afm: Mapped[str | None] = mapped_column(String(20))
    email: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(60))
    address: Mapped[str | None] = mapped_column(String(255))
    city: Mapped[str | None] = mapped_column(String(120))
    zip: Mapped[str | None] = mapped_column(String(20))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    insdate: Mapped[datetime | None] = mapped_column(DateTime())
    upddate: Mapped[datetime | None] = mapped_column(DateTime())


class Item(SyncTrackedMixin, Base):
    """A vehicle; ``code`` carries the license plate."""

    __tablename__ = "items"
    __table_args__ = (
        UniqueConstraint("mtrl", name="uq_items_mtrl"),
        UniqueConstraint("code", name="uq_items_code"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mtrl: Mapped[str | None] = mapped_column(String(40))
    code: Mapped[str] = mapped_column(String(40), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    insdate: Mapped[datetime | None] = mapped_column(DateTime())
    upddate: Mapped[datetime | None] = mapped_column(DateTime())


class Contract(SyncTrackedMixin, Base):
    __tablename__ = "contracts"
    __table_args__ = (UniqueConstraint("inst", name="uq_contracts_inst"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    inst: Mapped[int] = mapped_column(Integer, nullable=False)
    code: Mapped[str | None] = mapped_column(String(40))
    name: Mapped[str | None] = mapped_column(String(255))
    trdr: Mapped[str | None] = mapped_column(String(40))
    from_date: Mapped[date | None] = mapped_column(Date)
    to_date: Mapped[date | None] = mapped_column(Date)
    num01: Mapped[int | None] = mapped_column(Integer)
    remarks: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    insdate: Mapped[datetime | None] = mapped_column(DateTime())
    upddate: Mapped[datetime | None] = mapped_column(DateTime())

    lines = relationship("ContractLine", back_populates="contract")


class ContractLine(SyncTrackedMixin, Base):
    __tablename__ = "contract_lines"
    __table_args__ = (
        UniqueConstraint("instlines", name="uq_contract_lines_instlines"),
        Index("ix_contract_lines_inst_linenum", "inst", "linenum"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instlines: Mapped[int | None] = mapped_column(Integer)
    inst: Mapped[int] = mapped_column(Integer, ForeignKey("contracts.inst"), nullable=False)
    linenum: Mapped[int] = mapped_column(Integer, nullable=False)
    mtrl: Mapped[str | None] = mapped_column(String(40))
    qty: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    price: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    from_date: Mapped[date | None] = mapped_column(Date)
    final_date: Mapped[date | None] = mapped_column(Date)
    comments: Mapped[str | None] = mapped_column(Text)
    sncode: Mapped[str | None] = mapped_column(String(80))

    contract = relationship("Contract", back_populates="lines")
