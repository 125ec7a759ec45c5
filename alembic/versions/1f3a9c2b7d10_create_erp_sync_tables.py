"""Create parking entities and ERP sync tables.

Revision ID: 1f3a9c2b7d10
Revises:
Create Date: 2026-10-18
"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "1f3a9c2b7d10"
down_revision = None
branch_labels = None
depends_on = None


def _tracking_columns():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("erp_synced_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    syncdirection = sa.Enum("one_way", "two_way", name="syncdirection")
    syncrunstatus = sa.Enum("running", "success", "error", "partial", name="syncrunstatus")
    synctrigger = sa.Enum("cron", "manual", name="synctrigger")

    op.create_table(
        "customers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("trdr", sa.String(length=40), nullable=True),
        sa.Column("code", sa.String(length=40), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("afm", sa.String(length=20), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=60), nullable=True),
        sa.Column("address", sa.String(length=255), nullable=True),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("zip", sa.String(length=20), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("insdate", sa.DateTime(), nullable=True),
        sa.Column("upddate", sa.DateTime(), nullable=True),
        *_tracking_columns(),
        sa.UniqueConstraint("trdr", name="uq_customers_trdr"),
    )

    op.create_table(
        "items",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("mtrl", sa.String(length=40), nullable=True),
        sa.Column("code", sa.String(length=40), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("insdate", sa.DateTime(), nullable=True),
        sa.Column("upddate", sa.DateTime(), nullable=True),
        *_tracking_columns(),
        sa.UniqueConstraint("mtrl", name="uq_items_mtrl"),
        sa.UniqueConstraint("code", name="uq_items_code"),
    )

    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("inst", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=40), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("trdr", sa.String(length=40), nullable=True),
        sa.Column("from_date", sa.Date(), nullable=True),
        sa.Column("to_date", sa.Date(), nullable=True),
        sa.Column("num01", sa.Integer(), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("insdate", sa.DateTime(), nullable=True),
        sa.Column("upddate", sa.DateTime(), nullable=True),
        *_tracking_columns(),
        sa.UniqueConstraint("inst", name="uq_contracts_inst"),
    )

    op.create_table(
        "contract_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("instlines", sa.Integer(), nullable=True),
        sa.Column("inst", sa.Integer(), sa.ForeignKey("contracts.inst"), nullable=False),
        sa.Column("linenum", sa.Integer(), nullable=False),
        sa.Column("mtrl", sa.String(length=40), nullable=True),
        sa.Column("qty", sa.Numeric(14, 4), nullable=True),
        sa.Column("price", sa.Numeric(14, 4), nullable=True),
        sa.Column("from_date", sa.Date(), nullable=True),
        sa.Column("final_date", sa.Date(), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("sncode", sa.String(length=80), nullable=True),
        *_tracking_columns(),
        sa.UniqueConstraint("instlines", name="uq_contract_lines_instlines"),
    )
    op.create_index("ix_contract_lines_inst_linenum", "contract_lines", ["inst", "linenum"])

    op.create_table(
        "erp_connections",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("base_url", sa.String(length=500), nullable=False),
        sa.Column("username", sa.String(length=160), nullable=False),
        sa.Column("password_enc", sa.Text(), nullable=False),
        sa.Column("app_id", sa.Integer(), nullable=False),
        sa.Column("company", sa.String(length=40), nullable=True),
        sa.Column("branch", sa.String(length=40), nullable=True),
        sa.Column("module", sa.String(length=40), nullable=True),
        sa.Column("refid", sa.String(length=40), nullable=True),
        sa.Column("version", sa.String(length=20), nullable=True),
        sa.Column("registered_name", sa.String(length=160), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("name", name="uq_erp_connections_name"),
    )

    op.create_table(
        "integrations",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("connection_id", sa.Uuid(), sa.ForeignKey("erp_connections.id"), nullable=False),
        sa.Column("source_table", sa.String(length=80), nullable=False),
        sa.Column("erp_object", sa.String(length=80), nullable=True),
        sa.Column("target_entity", sa.String(length=80), nullable=False),
        sa.Column("target_entity_key_field", sa.String(length=80), nullable=False),
        sa.Column("field_mappings", sa.JSON(), nullable=True),
        sa.Column("unique_erp_field", sa.String(length=80), nullable=False),
        sa.Column("unique_local_field", sa.String(length=80), nullable=False),
        sa.Column("sync_direction", syncdirection, nullable=True),
        sa.Column("schedule", sa.String(length=120), nullable=True),
        sa.Column("filter", sa.Text(), nullable=True),
        sa.Column("modified_field", sa.String(length=80), nullable=True),
        sa.Column("field_defaults", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("integration_id", sa.Uuid(), sa.ForeignKey("integrations.id"), nullable=False),
        sa.Column("status", syncrunstatus, nullable=True),
        sa.Column("trigger", synctrigger, nullable=True),
        sa.Column("full_resync", sa.Boolean(), nullable=True),
        sa.Column("invocations", sa.Integer(), nullable=True),
        sa.Column("stats", sa.JSON(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sync_runs_integration_id", "sync_runs", ["integration_id"])

    op.create_table(
        "sync_cursors",
        sa.Column("integration_id", sa.Uuid(), sa.ForeignKey("integrations.id"), primary_key=True),
        sa.Column("run_id", sa.Uuid(), sa.ForeignKey("sync_runs.id"), nullable=False),
        sa.Column("offset_processed", sa.Integer(), nullable=True),
        sa.Column("total_expected", sa.Integer(), nullable=True),
        sa.Column("page_size", sa.Integer(), nullable=False),
        sa.Column("has_more", sa.Boolean(), nullable=True),
        sa.Column("filter_expr", sa.Text(), nullable=False),
        sa.Column("full_resync", sa.Boolean(), nullable=True),
        sa.Column("purged", sa.Boolean(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "sync_locks",
        sa.Column("integration_id", sa.Uuid(), sa.ForeignKey("integrations.id"), primary_key=True),
        sa.Column("owner", sa.String(length=120), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("sync_locks")
    op.drop_table("sync_cursors")
    op.drop_index("ix_sync_runs_integration_id", table_name="sync_runs")
    op.drop_table("sync_runs")
    op.drop_table("integrations")
    op.drop_table("erp_connections")
    op.drop_index("ix_contract_lines_inst_linenum", table_name="contract_lines")
    op.drop_table("contract_lines")
    op.drop_table("contracts")
    op.drop_table("items")
    op.drop_table("customers")
    sa.Enum(name="synctrigger").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="syncrunstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="syncdirection").drop(op.get_bind(), checkfirst=True)
