from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Database(Base):
    __tablename__ = "databases"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_databases_tenant_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DataTable(Base):
    __tablename__ = "data_tables"
    __table_args__ = (
        UniqueConstraint("database_id", "name", name="uq_data_tables_database_name"),
        Index("ix_data_tables_tenant_database", "tenant_id", "database_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Denormalize tenant_id so tenant guards never need a join through databases.
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    database_id: Mapped[int] = mapped_column(Integer, ForeignKey("databases.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    is_public: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Protected tables are provisioned from templates and keep their locked columns.
    is_protected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    protected_type: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DataColumn(Base):
    __tablename__ = "data_columns"
    __table_args__ = (
        UniqueConstraint("table_id", "name", name="uq_data_columns_table_name"),
        Index("ix_data_columns_table_order", "table_id", "order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    table_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_tables.id"), index=True)
    name: Mapped[str] = mapped_column(String)
    # Canonical storage type; unknown declared types are stored as text.
    type: Mapped[str] = mapped_column(String)
    # Classification hint for consuming layers; never enforced by the store.
    semantic_type: Mapped[str | None] = mapped_column(String, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    primary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    unique: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reference_table_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("data_tables.id"), nullable=True, index=True
    )
    custom_options: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    default_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DataRow(Base):
    __tablename__ = "data_rows"

    # Integer identity keeps the default id ordering stable for pagination.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    table_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_tables.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DataCell(Base):
    __tablename__ = "data_cells"
    __table_args__ = (
        UniqueConstraint("row_id", "column_id", name="uq_data_cells_row_column"),
        Index("ix_data_cells_column_value", "column_id", "value"),
        Index("ix_data_cells_column_number", "column_id", "number_value"),
        Index("ix_data_cells_column_date", "column_id", "date_value"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    row_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_rows.id"), index=True)
    column_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_columns.id"), index=True)
    # Source of truth; typed reads always coerce from this text.
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Shadow values derived on write so range predicates and sorts stay in SQL.
    number_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    date_value: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    boolean_value: Mapped[bool | None] = mapped_column(Boolean, nullable=True)


class TablePermission(Base):
    __tablename__ = "table_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "table_id", name="uq_table_permissions_user_table"),
        Index("ix_table_permissions_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    table_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_tables.id"), index=True)
    can_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_edit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ColumnPermission(Base):
    __tablename__ = "column_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "column_id", name="uq_column_permissions_user_column"),
        Index("ix_column_permissions_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    table_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_tables.id"), index=True)
    column_id: Mapped[int] = mapped_column(Integer, ForeignKey("data_columns.id"), index=True)
    can_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_edit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class DashboardPermission(Base):
    __tablename__ = "dashboard_permissions"
    __table_args__ = (
        UniqueConstraint("user_id", "dashboard_id", name="uq_dashboard_permissions_user_dashboard"),
        Index("ix_dashboard_permissions_expires_at", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    # Dashboards live outside this core; keep the id without a foreign key.
    dashboard_id: Mapped[int] = mapped_column(Integer, index=True)
    can_view: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_edit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_delete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    can_share: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    granted_by: Mapped[str | None] = mapped_column(String, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class TenantPlanLimit(Base):
    __tablename__ = "tenant_plan_limits"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    # Null limits are unlimited for that resource.
    max_tables: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditEvent(Base):
    __tablename__ = "audit_events"

    # Use a monotonic numeric id for efficient pagination and ordering.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Store the event timestamp separately from creation to preserve source clocks.
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Allow null tenant_id for system events.
    tenant_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String, nullable=True)
    # Persist a stable event taxonomy for investigation queries.
    event_type: Mapped[str] = mapped_column(String, index=True)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, default=dict)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
