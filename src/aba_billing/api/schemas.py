"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from aba_billing.services.state_machine import PayrollRunStatus


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    code: str | None = None


# ============================================================================
# Import schemas
# ============================================================================


class ColumnMappingSchema(BaseModel):
    """Column mapping for the shift-row import (camelCase or snake_case keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    work_date: str | None = None
    employee_name: str | None = None
    employee_external_id: str | None = None
    in_time: str | None = None
    out_time: str | None = None
    event_type: str | None = None
    minutes_worked: str | None = None
    hours_worked: str | None = None


class TimeLogMappingSchema(BaseModel):
    """Column mapping for the raw time-log import."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    employee_column: str
    timestamp_column: str | None = None
    date_column: str | None = None
    time_column: str | None = None
    event_type_column: str | None = None


class PreviewResponse(BaseModel):
    """First rows of an uploaded file."""

    file_name: str
    columns: list[str]
    total_rows: int
    rows: list[dict[str, Any]]


class ImportSummaryResponse(BaseModel):
    """Counts returned after an import."""

    import_id: UUID
    strategy: str | None = None
    total_rows: int
    imported_rows: int
    skipped_rows: int
    warnings: list[str] = Field(default_factory=list)
    message: str


class PayrollImportResponse(BaseModel):
    """Schema for payroll import response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    original_file_name: str
    file_hash: str
    file_size: int
    uploaded_by: str | None = None
    uploaded_at: datetime
    status: str
    strategy: str | None = None
    timezone: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    mapping_json: dict[str, Any]
    row_count: int
    imported_rows: int
    skipped_rows: int
    finalized_at: datetime | None = None


class PayrollImportListResponse(BaseModel):
    """Paginated import list."""

    items: list[PayrollImportResponse]
    total: int
    page: int
    page_size: int


class PayrollImportRowResponse(BaseModel):
    """Schema for one reconciled import row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    row_index: int
    employee_name_raw: str | None = None
    employee_external_id_raw: str | None = None
    linked_employee_id: UUID | None = None
    work_date: date
    in_time: datetime | None = None
    out_time: datetime | None = None
    minutes_worked: int | None = None
    hours_worked: Decimal | None = None
    is_incomplete: bool
    raw_json: dict[str, Any]


# ============================================================================
# Payroll run schemas
# ============================================================================


class PayrollRunCreate(BaseModel):
    """Schema for creating a payroll run."""

    name: str = Field(min_length=1)
    source_import_id: UUID
    employee_ids: list[UUID] = Field(min_length=1)
    employee_rates: dict[UUID, Decimal] = Field(default_factory=dict)
    period_start: date | None = None
    period_end: date | None = None


class PayrollRunUpdate(BaseModel):
    """Schema for updating a payroll run; omitted fields are left alone."""

    status: PayrollRunStatus | None = None
    name: str | None = Field(default=None, min_length=1)
    period_start: date | None = None
    period_end: date | None = None


class PayrollRunLineResponse(BaseModel):
    """Schema for one employee line of a run."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    employee_id: UUID
    hourly_rate_used: Decimal
    total_minutes: int
    total_hours: Decimal
    gross_pay: Decimal
    amount_paid: Decimal
    amount_owed: Decimal
    notes: str | None = None


class PayrollRunResponse(BaseModel):
    """Schema for payroll run response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    source_import_id: UUID | None = None
    period_start: date
    period_end: date
    status: str
    created_by: str | None = None
    created_at: datetime
    lines: list[PayrollRunLineResponse] = Field(default_factory=list)


class PayrollRunListResponse(BaseModel):
    """Paginated run list."""

    items: list[PayrollRunResponse]
    total: int
    page: int
    page_size: int


class PaymentCreate(BaseModel):
    """Schema for recording a payment."""

    employee_id: UUID
    amount: Decimal = Field(gt=0)
    paid_at: datetime
    method: str = Field(min_length=1)
    reference: str | None = None
    notes: str | None = None
    run_line_id: UUID | None = None


class PaymentResponse(BaseModel):
    """Schema for a recorded payment."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    run_id: UUID
    run_line_id: UUID
    employee_id: UUID
    paid_at: datetime
    amount: Decimal
    method: str
    reference: str | None = None
    notes: str | None = None


# ============================================================================
# Email queue schemas
# ============================================================================


class EnqueueRequest(BaseModel):
    """Schema for queueing an approved entity."""

    entity_type: str
    entity_id: UUID
    to_email: str | None = None
    subject: str | None = None


class EmailQueueItemResponse(BaseModel):
    """Schema for an email queue item."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    status: str
    to_email: str | None = None
    subject: str | None = None
    batch_id: str | None = None
    attempts: int
    error_message: str | None = None
    last_error: str | None = None
    queued_at: datetime
    claimed_at: datetime | None = None
    sent_at: datetime | None = None
    queued_by: str | None = None


class EmailQueueListResponse(BaseModel):
    items: list[EmailQueueItemResponse]
    total: int


class ItemIdsRequest(BaseModel):
    """A list of queue item ids."""

    ids: list[UUID] = Field(min_length=1)


class ResendRequest(ItemIdsRequest):
    """Resend FAILED items, optionally to new recipients (comma separated)."""

    recipients: str | None = None


class ItemFailureResponse(BaseModel):
    item_id: UUID
    error: str


class BatchSendResponse(BaseModel):
    """Outcome of a batch send."""

    batch_id: str | None = None
    claimed_count: int
    sent_count: int
    failed_count: int
    sent_ids: list[UUID]
    failures: list[ItemFailureResponse]
    message: str


class BulkDeleteResponse(BaseModel):
    deleted_count: int
    message: str


class ReleaseStaleResponse(BaseModel):
    released_count: int
    message: str
