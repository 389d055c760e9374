"""create schema registry, row store, permission and audit tables

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "databases",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "name", name="uq_databases_tenant_name"),
    )
    op.create_index("ix_databases_tenant_id", "databases", ["tenant_id"], unique=False)

    # tenant_id is denormalized onto every table so guards never join through databases.
    op.create_table(
        "data_tables",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("database_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), server_default="", nullable=False),
        sa.Column("is_public", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_protected", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("protected_type", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["database_id"], ["databases.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("database_id", "name", name="uq_data_tables_database_name"),
    )
    op.create_index("ix_data_tables_tenant_id", "data_tables", ["tenant_id"], unique=False)
    op.create_index("ix_data_tables_database_id", "data_tables", ["database_id"], unique=False)
    op.create_index(
        "ix_data_tables_tenant_database", "data_tables", ["tenant_id", "database_id"], unique=False
    )

    op.create_table(
        "data_columns",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("table_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("semantic_type", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("required", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("primary", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("unique", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("order", sa.Integer(), server_default="0", nullable=False),
        sa.Column("reference_table_id", sa.Integer(), nullable=True),
        sa.Column("custom_options", sa.JSON(), nullable=True),
        sa.Column("default_value", sa.Text(), nullable=True),
        sa.Column("is_locked", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["table_id"], ["data_tables.id"]),
        sa.ForeignKeyConstraint(["reference_table_id"], ["data_tables.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("table_id", "name", name="uq_data_columns_table_name"),
    )
    op.create_index("ix_data_columns_tenant_id", "data_columns", ["tenant_id"], unique=False)
    op.create_index("ix_data_columns_table_id", "data_columns", ["table_id"], unique=False)
    op.create_index(
        "ix_data_columns_reference_table_id", "data_columns", ["reference_table_id"], unique=False
    )
    op.create_index("ix_data_columns_table_order", "data_columns", ["table_id", "order"], unique=False)

    op.create_table(
        "data_rows",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("table_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["table_id"], ["data_tables.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_data_rows_tenant_id", "data_rows", ["tenant_id"], unique=False)
    op.create_index("ix_data_rows_table_id", "data_rows", ["table_id"], unique=False)

    # Shadow typed columns back range predicates and sorts; value stays the source of truth.
    op.create_table(
        "data_cells",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("row_id", sa.Integer(), nullable=False),
        sa.Column("column_id", sa.Integer(), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("number_value", sa.Float(), nullable=True),
        sa.Column("date_value", sa.DateTime(timezone=True), nullable=True),
        sa.Column("boolean_value", sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(["row_id"], ["data_rows.id"]),
        sa.ForeignKeyConstraint(["column_id"], ["data_columns.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("row_id", "column_id", name="uq_data_cells_row_column"),
    )
    op.create_index("ix_data_cells_row_id", "data_cells", ["row_id"], unique=False)
    op.create_index("ix_data_cells_column_id", "data_cells", ["column_id"], unique=False)
    op.create_index("ix_data_cells_column_value", "data_cells", ["column_id", "value"], unique=False)
    op.create_index(
        "ix_data_cells_column_number", "data_cells", ["column_id", "number_value"], unique=False
    )
    op.create_index("ix_data_cells_column_date", "data_cells", ["column_id", "date_value"], unique=False)

    op.create_table(
        "table_permissions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("table_id", sa.Integer(), nullable=False),
        sa.Column("can_read", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("can_edit", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("can_delete", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["table_id"], ["data_tables.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "table_id", name="uq_table_permissions_user_table"),
    )
    op.create_index("ix_table_permissions_tenant_id", "table_permissions", ["tenant_id"], unique=False)
    op.create_index("ix_table_permissions_user_id", "table_permissions", ["user_id"], unique=False)
    op.create_index("ix_table_permissions_table_id", "table_permissions", ["table_id"], unique=False)
    op.create_index("ix_table_permissions_expires_at", "table_permissions", ["expires_at"], unique=False)

    op.create_table(
        "column_permissions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("table_id", sa.Integer(), nullable=False),
        sa.Column("column_id", sa.Integer(), nullable=False),
        sa.Column("can_read", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("can_edit", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["table_id"], ["data_tables.id"]),
        sa.ForeignKeyConstraint(["column_id"], ["data_columns.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "column_id", name="uq_column_permissions_user_column"),
    )
    op.create_index("ix_column_permissions_tenant_id", "column_permissions", ["tenant_id"], unique=False)
    op.create_index("ix_column_permissions_user_id", "column_permissions", ["user_id"], unique=False)
    op.create_index("ix_column_permissions_table_id", "column_permissions", ["table_id"], unique=False)
    op.create_index("ix_column_permissions_column_id", "column_permissions", ["column_id"], unique=False)
    op.create_index("ix_column_permissions_expires_at", "column_permissions", ["expires_at"], unique=False)

    # Dashboards are owned by an external collaborator, so no foreign key.
    op.create_table(
        "dashboard_permissions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("dashboard_id", sa.Integer(), nullable=False),
        sa.Column("can_view", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("can_edit", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("can_delete", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("can_share", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("granted_by", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "dashboard_id", name="uq_dashboard_permissions_user_dashboard"),
    )
    op.create_index("ix_dashboard_permissions_tenant_id", "dashboard_permissions", ["tenant_id"], unique=False)
    op.create_index("ix_dashboard_permissions_user_id", "dashboard_permissions", ["user_id"], unique=False)
    op.create_index(
        "ix_dashboard_permissions_dashboard_id", "dashboard_permissions", ["dashboard_id"], unique=False
    )
    op.create_index(
        "ix_dashboard_permissions_expires_at", "dashboard_permissions", ["expires_at"], unique=False
    )

    op.create_table(
        "tenant_plan_limits",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("max_tables", sa.Integer(), nullable=True),
        sa.Column("max_rows", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("tenant_id"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=True),
        sa.Column("actor_type", sa.String(), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("actor_role", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("resource_type", sa.String(), nullable=True),
        sa.Column("resource_id", sa.String(), nullable=True),
        sa.Column("request_id", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_events_occurred_at", "audit_events", ["occurred_at"], unique=False)
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"], unique=False)
    op.create_index("ix_audit_events_event_type", "audit_events", ["event_type"], unique=False)
    op.create_index("ix_audit_events_request_id", "audit_events", ["request_id"], unique=False)


def downgrade() -> None:
    op.drop_table("audit_events")
    op.drop_table("tenant_plan_limits")
    op.drop_table("dashboard_permissions")
    op.drop_table("column_permissions")
    op.drop_table("table_permissions")
    op.drop_table("data_cells")
    op.drop_table("data_rows")
    op.drop_table("data_columns")
    op.drop_table("data_tables")
    op.drop_table("databases")
