"""Payroll import, time log, run and payment models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
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

from aba_billing.models.base import Base, JsonType, TimestampMixin, utcnow


# ===== Employees =====


class PayrollEmployee(Base, TimestampMixin):
    """Payroll employee that import rows get linked to."""

    __tablename__ = "payroll_employee"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    default_hourly_rate: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


# ===== Imports =====


class PayrollImport(Base, TimestampMixin):
    """One uploaded time-log file and the mapping used to read it."""

    __tablename__ = "payroll_import"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    original_file_name: Mapped[str] = mapped_column(String, nullable=False)
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    uploaded_by: Mapped[str | None] = mapped_column(String, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    status: Mapped[str] = mapped_column(String, nullable=False, default="DRAFT")
    strategy: Mapped[str | None] = mapped_column(String, nullable=True)
    timezone: Mapped[str | None] = mapped_column(String, nullable=True)
    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    mapping_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    imported_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_rows: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    finalized_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('DRAFT', 'FINALIZED')", name="payroll_import_status_check"),
        Index("payroll_import_file_name_uploaded_idx", "original_file_name", "uploaded_at"),
        Index("payroll_import_file_hash_idx", "file_hash"),
    )

    # Relationships
    rows: Mapped[list[PayrollImportRow]] = relationship(
        back_populates="payroll_import",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PayrollImportRow.row_index",
    )
    time_logs: Mapped[list[PayrollTimeLog]] = relationship(
        back_populates="payroll_import",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PayrollImportRow(Base, TimestampMixin):
    """A reconciled shift row belonging to an import."""

    __tablename__ = "payroll_import_row"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    import_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_import.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_index: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_name_raw: Mapped[str | None] = mapped_column(String, nullable=True)
    employee_external_id_raw: Mapped[str | None] = mapped_column(String, nullable=True)
    linked_employee_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_employee.id", ondelete="SET NULL"),
        nullable=True,
    )
    work_date: Mapped[date] = mapped_column(Date, nullable=False)
    in_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    out_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    minutes_worked: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hours_worked: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    raw_json: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)

    __table_args__ = (
        UniqueConstraint("import_id", "row_index", name="payroll_import_row_index_unique"),
        CheckConstraint(
            "minutes_worked IS NULL OR minutes_worked > 0",
            name="payroll_import_row_minutes_positive",
        ),
        Index("payroll_import_row_employee_date_idx", "linked_employee_id", "work_date"),
    )

    # Relationships
    payroll_import: Mapped[PayrollImport] = relationship(back_populates="rows")
    linked_employee: Mapped[PayrollEmployee | None] = relationship()

    @property
    def is_incomplete(self) -> bool:
        return bool((self.raw_json or {}).get("isIncomplete", self.out_time is None))


class PayrollTimeLog(Base, TimestampMixin):
    """A single raw punch from the time-log ingestion path."""

    __tablename__ = "payroll_time_log"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    import_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_import.id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_employee.id", ondelete="SET NULL"),
        nullable=True,
    )
    employee_code: Mapped[str | None] = mapped_column(String, nullable=True)
    employee_name: Mapped[str | None] = mapped_column(String, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    event_type: Mapped[str | None] = mapped_column(String(3), nullable=True)
    timezone: Mapped[str] = mapped_column(String, nullable=False, default="America/New_York")
    file_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    row_signature: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("file_hash", "row_signature", name="payroll_time_log_signature_unique"),
        CheckConstraint(
            "event_type IS NULL OR event_type IN ('IN', 'OUT')",
            name="payroll_time_log_event_type_check",
        ),
        Index("payroll_time_log_employee_timestamp_idx", "employee_id", "timestamp"),
    )

    payroll_import: Mapped[PayrollImport] = relationship(back_populates="time_logs")


# ===== Runs & Payments =====


class PayrollRun(Base, TimestampMixin):
    """A payroll run built from one import over a period."""

    __tablename__ = "payroll_run"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    source_import_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_import.id", ondelete="SET NULL"),
        nullable=True,
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="DRAFT")
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT', 'APPROVED', 'PAID_PARTIAL', 'PAID_FULL')",
            name="payroll_run_status_check",
        ),
        CheckConstraint("period_end >= period_start", name="payroll_run_dates_check"),
    )

    # Relationships
    lines: Mapped[list[PayrollRunLine]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    payments: Mapped[list[PayrollPayment]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PayrollRunLine(Base, TimestampMixin):
    """One employee's totals within a payroll run."""

    __tablename__ = "payroll_run_line"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_employee.id"),
        nullable=False,
    )
    hourly_rate_used: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_hours: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    gross_pay: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    amount_owed: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("run_id", "employee_id", name="payroll_run_line_employee_unique"),
    )

    run: Mapped[PayrollRun] = relationship(back_populates="lines")
    employee: Mapped[PayrollEmployee] = relationship()


class PayrollPayment(Base, TimestampMixin):
    """A payment recorded against a run line."""

    __tablename__ = "payroll_payment"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.id", ondelete="CASCADE"),
        nullable=False,
    )
    run_line_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run_line.id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_employee.id"),
        nullable=False,
    )
    paid_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    method: Mapped[str] = mapped_column(String, nullable=False)
    reference: Mapped[str | None] = mapped_column(String, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="payroll_payment_amount_positive"),
    )

    run: Mapped[PayrollRun] = relationship(back_populates="payments")
