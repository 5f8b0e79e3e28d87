"""Email queue items and the approved entities they deliver."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from aba_billing.models.base import Base, TimestampMixin, utcnow

ERROR_MESSAGE_MAX_LENGTH = 500
LAST_ERROR_MAX_LENGTH = 1000


class Timesheet(Base, TimestampMixin):
    """Approved timesheet as seen by the email queue."""

    __tablename__ = "timesheet"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    client_name: Mapped[str] = mapped_column(String, nullable=False)
    provider_name: Mapped[str | None] = mapped_column(String, nullable=True)
    bcba_name: Mapped[str | None] = mapped_column(String, nullable=True)
    is_bcba: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String, nullable=False, default="APPROVED")
    emailed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Invoice(Base, TimestampMixin):
    """Approved invoice as seen by the email queue."""

    __tablename__ = "invoice"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    invoice_number: Mapped[str] = mapped_column(String, nullable=False)
    client_name: Mapped[str] = mapped_column(String, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    issued_on: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="APPROVED")
    emailed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class EmailQueueItem(Base, TimestampMixin):
    """One pending notification for an approved entity."""

    __tablename__ = "email_queue_item"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="QUEUED")
    to_email: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject: Mapped[str | None] = mapped_column(String, nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(String(ERROR_MESSAGE_MAX_LENGTH), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(LAST_ERROR_MAX_LENGTH), nullable=True)
    queued_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    queued_by: Mapped[str | None] = mapped_column(String, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('QUEUED', 'SENDING', 'SENT', 'FAILED')",
            name="email_queue_item_status_check",
        ),
        CheckConstraint(
            "entity_type IN ('TIMESHEET', 'BCBA_TIMESHEET', 'INVOICE')",
            name="email_queue_item_entity_type_check",
        ),
        Index("email_queue_item_status_queued_idx", "status", "queued_at"),
        Index("email_queue_item_entity_idx", "entity_type", "entity_id", "deleted_at"),
    )

    @property
    def recipients(self) -> list[str]:
        if not self.to_email:
            return []
        return [part.strip() for part in self.to_email.split(",") if part.strip()]
