"""Payroll import persistence.

Two ingestion paths write through this service:

- save_import: read a file, classify, reconcile into shift rows and persist
  the import plus every row in the caller's transaction.
- process_time_logs: store raw punches as time logs, deduplicated by a row
  signature of sha256(employee|timestamp ISO|event type).

Duplicate uploads (same original filename within the configured window) are
rejected on both paths before anything is written.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from aba_billing.config import Settings, get_settings
from aba_billing.ingestion import (
    ColumnMapping,
    TimeLogMapping,
    parse_time_value,
    parse_work_date,
    read_tabular,
    reconcile,
)
from aba_billing.models import (
    PayrollImport,
    PayrollImportRow,
    PayrollRun,
    PayrollTimeLog,
    utcnow,
)
from aba_billing.services.state_machine import ImportStateMachine, ImportStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"


class DuplicateImportError(Exception):
    """Raised when the same file name was already imported within the window."""

    def __init__(self, existing_import_id: UUID, file_name: str):
        self.existing_import_id = existing_import_id
        self.file_name = file_name
        super().__init__("This file has already been imported")


class ImportNotFoundError(Exception):
    """Raised when an import id does not exist."""

    def __init__(self, import_id: UUID):
        self.import_id = import_id
        super().__init__(f"Import {import_id} not found")


@dataclass
class ImportSummary:
    """Counts reported back to the operator after an import."""

    import_id: UUID
    strategy: str | None
    total_rows: int
    imported_rows: int
    skipped_rows: int
    warnings: list[str] = field(default_factory=list)


def compute_file_hash(content: bytes) -> str:
    """SHA-256 hex digest of the uploaded bytes."""
    return hashlib.sha256(content).hexdigest()


def compute_row_signature(employee: str, timestamp: datetime, event_type: str | None) -> str:
    """Dedup key for a raw punch."""
    payload = f"{employee}|{timestamp.isoformat()}|{event_type or ''}"
    return hashlib.sha256(payload.encode()).hexdigest()


def _to_utc(value: datetime, zone: ZoneInfo) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=zone)
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _event_type(raw: Any) -> str | None:
    value = str(raw or "").strip().upper()
    return value if value in ("IN", "OUT") else None


class ImportService:
    """Service for payroll imports and their rows.

    Operations:
    - check_duplicate_upload: Reject a recently imported file name
    - save_import: Reconcile a file into shift rows and persist them
    - process_time_logs: Persist deduplicated raw punches
    - finalize_import / delete_import: Lifecycle
    - get_import / list_imports / list_rows: Reads

    Writes are flushed, not committed; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def check_duplicate_upload(self, file_name: str, now: datetime | None = None) -> None:
        """Raise DuplicateImportError if file_name was uploaded within the window."""
        now = now or utcnow()
        window_start = now - timedelta(hours=self.settings.duplicate_upload_window_hours)
        existing_id = await self.session.scalar(
            select(PayrollImport.id)
            .where(
                PayrollImport.original_file_name == file_name,
                PayrollImport.uploaded_at >= window_start,
            )
            .order_by(PayrollImport.uploaded_at.desc())
            .limit(1)
        )
        if existing_id is not None:
            logger.warning("Rejected duplicate upload of %s (existing import %s)", file_name, existing_id)
            raise DuplicateImportError(existing_id, file_name)

    async def save_import(
        self,
        file_name: str,
        content: bytes,
        mapping: ColumnMapping,
        period_start: date | None = None,
        period_end: date | None = None,
        uploaded_by: str | None = None,
        now: datetime | None = None,
    ) -> ImportSummary:
        """Read, reconcile and persist an uploaded time log.

        Raises:
            MappingError: If the mapping cannot drive an import
            FileFormatError: If the file cannot be read
            DuplicateImportError: If the file name was imported recently
        """
        mapping.validate()
        now = now or utcnow()
        await self.check_duplicate_upload(file_name, now)

        rows = read_tabular(content, file_name)
        result = reconcile(
            rows,
            mapping,
            reject_ambiguous_out=self.settings.reject_ambiguous_out,
        )

        payroll_import = PayrollImport(
            original_file_name=file_name,
            file_hash=compute_file_hash(content),
            file_size=len(content),
            uploaded_by=uploaded_by,
            uploaded_at=now,
            status=ImportStatus.DRAFT.value,
            strategy=result.strategy.value,
            period_start=period_start,
            period_end=period_end,
            mapping_json=mapping.to_dict(),
            row_count=result.total_rows,
            imported_rows=result.imported_count,
            skipped_rows=result.skipped_count,
        )
        self.session.add(payroll_import)
        await self.session.flush()

        self.session.add_all(
            [
                PayrollImportRow(
                    import_id=payroll_import.id,
                    row_index=shift.row_index,
                    employee_name_raw=shift.employee_name_raw,
                    employee_external_id_raw=shift.employee_external_id_raw,
                    work_date=shift.work_date,
                    in_time=shift.in_time,
                    out_time=shift.out_time,
                    minutes_worked=shift.minutes_worked,
                    hours_worked=shift.hours_worked,
                    raw_json=shift.raw_json,
                )
                for shift in result.rows
            ]
        )
        await self.session.flush()

        logger.info(
            "Saved import %s from %s: %d imported, %d skipped of %d (%s)",
            payroll_import.id,
            file_name,
            result.imported_count,
            result.skipped_count,
            result.total_rows,
            result.strategy.value,
        )

        return ImportSummary(
            import_id=payroll_import.id,
            strategy=result.strategy.value,
            total_rows=result.total_rows,
            imported_rows=result.imported_count,
            skipped_rows=result.skipped_count,
            warnings=list(result.warnings),
        )

    async def process_time_logs(
        self,
        file_name: str,
        content: bytes,
        mapping: TimeLogMapping,
        tz_name: str = DEFAULT_TIMEZONE,
        uploaded_by: str | None = None,
        now: datetime | None = None,
    ) -> ImportSummary:
        """Persist raw punches as time logs.

        Naive timestamps are read in ``tz_name`` and stored as UTC. A row is
        skipped when it has no employee, no parseable timestamp, or a
        signature already stored for the same file hash or seen earlier in
        this file.
        """
        mapping.validate()
        try:
            zone = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {tz_name}") from e

        now = now or utcnow()
        await self.check_duplicate_upload(file_name, now)

        rows = read_tabular(content, file_name)
        file_hash = compute_file_hash(content)

        payroll_import = PayrollImport(
            original_file_name=file_name,
            file_hash=file_hash,
            file_size=len(content),
            uploaded_by=uploaded_by,
            uploaded_at=now,
            status=ImportStatus.DRAFT.value,
            timezone=tz_name,
            mapping_json={
                "employeeColumn": mapping.employee_column,
                "timestampColumn": mapping.timestamp_column,
                "dateColumn": mapping.date_column,
                "timeColumn": mapping.time_column,
                "eventTypeColumn": mapping.event_type_column,
            },
            row_count=len(rows),
        )
        self.session.add(payroll_import)
        await self.session.flush()

        existing = set(
            (
                await self.session.scalars(
                    select(PayrollTimeLog.row_signature).where(PayrollTimeLog.file_hash == file_hash)
                )
            ).all()
        )

        imported = 0
        skipped = 0
        for row in rows:
            employee = str(row.get(mapping.employee_column) or "").strip()
            timestamp = self._row_timestamp(row, mapping)
            if not employee or timestamp is None:
                skipped += 1
                continue

            timestamp = _to_utc(timestamp, zone)
            event_type = _event_type(row.get(mapping.event_type_column)) if mapping.event_type_column else None
            signature = compute_row_signature(employee, timestamp, event_type)
            if signature in existing:
                skipped += 1
                continue
            existing.add(signature)

            self.session.add(
                PayrollTimeLog(
                    import_id=payroll_import.id,
                    employee_code=employee,
                    employee_name=employee,
                    timestamp=timestamp,
                    event_type=event_type,
                    timezone=tz_name,
                    file_hash=file_hash,
                    row_signature=signature,
                )
            )
            imported += 1

        payroll_import.imported_rows = imported
        payroll_import.skipped_rows = skipped
        await self.session.flush()

        logger.info(
            "Processed time logs %s from %s: %d imported, %d skipped of %d",
            payroll_import.id,
            file_name,
            imported,
            skipped,
            len(rows),
        )

        return ImportSummary(
            import_id=payroll_import.id,
            strategy=None,
            total_rows=len(rows),
            imported_rows=imported,
            skipped_rows=skipped,
        )

    @staticmethod
    def _row_timestamp(row: dict[str, Any], mapping: TimeLogMapping) -> datetime | None:
        if mapping.timestamp_column:
            return parse_time_value(row.get(mapping.timestamp_column), None)
        work_date = parse_work_date(row.get(mapping.date_column))
        if work_date is None:
            return None
        return parse_time_value(row.get(mapping.time_column), work_date)

    async def get_import(self, import_id: UUID) -> PayrollImport:
        """Load an import or raise ImportNotFoundError."""
        payroll_import = await self.session.get(PayrollImport, import_id)
        if payroll_import is None:
            raise ImportNotFoundError(import_id)
        return payroll_import

    async def list_imports(self, limit: int = 50, offset: int = 0) -> tuple[list[PayrollImport], int]:
        """Most recent imports first, with the total count."""
        total = await self.session.scalar(select(func.count()).select_from(PayrollImport)) or 0
        result = await self.session.scalars(
            select(PayrollImport)
            .order_by(PayrollImport.uploaded_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.all()), total

    async def list_rows(self, import_id: UUID) -> list[PayrollImportRow]:
        """Rows of an import in row_index order."""
        await self.get_import(import_id)
        result = await self.session.scalars(
            select(PayrollImportRow)
            .where(PayrollImportRow.import_id == import_id)
            .order_by(PayrollImportRow.row_index)
        )
        return list(result.all())

    async def finalize_import(self, import_id: UUID) -> PayrollImport:
        """Move an import DRAFT → FINALIZED."""
        payroll_import = await self.get_import(import_id)
        ImportStateMachine.validate_transition(
            payroll_import.status,
            ImportStatus.FINALIZED,
            "Import is already finalized",
        )
        payroll_import.status = ImportStatus.FINALIZED.value
        payroll_import.finalized_at = utcnow()
        await self.session.flush()
        return payroll_import

    async def delete_import(self, import_id: UUID) -> None:
        """Delete an import together with its rows and time logs."""
        payroll_import = await self.get_import(import_id)

        await self.session.execute(
            delete(PayrollImportRow).where(PayrollImportRow.import_id == import_id)
        )
        await self.session.execute(
            delete(PayrollTimeLog).where(PayrollTimeLog.import_id == import_id)
        )
        await self.session.execute(
            update(PayrollRun)
            .where(PayrollRun.source_import_id == import_id)
            .values(source_import_id=None)
        )
        await self.session.delete(payroll_import)
        await self.session.flush()
        logger.info("Deleted import %s", import_id)
