"""Payroll run aggregation and payment tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from aba_billing.models import (
    PayrollEmployee,
    PayrollImport,
    PayrollImportRow,
    PayrollPayment,
    PayrollRun,
    PayrollRunLine,
)
from aba_billing.services.import_service import ImportNotFoundError
from aba_billing.services.state_machine import PayrollRunStateMachine, PayrollRunStatus

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class PayrollRunNotFoundError(Exception):
    """Raised when a payroll run (or one of its lines) does not exist."""

    def __init__(self, run_id: UUID, detail: str | None = None):
        self.run_id = run_id
        super().__init__(detail or f"Payroll run {run_id} not found")


class NoImportRowsError(Exception):
    """Raised when no linked import rows match the run selection."""

    def __init__(self, import_id: UUID, employee_count: int):
        self.import_id = import_id
        self.employee_count = employee_count
        super().__init__(
            f"No import rows found for the selected {employee_count} employee(s) in this import. "
            "Ensure employees are linked to import rows."
        )


@dataclass
class EmployeeTotals:
    """Running totals for one employee while building a run."""

    employee: PayrollEmployee
    hourly_rate: Decimal
    total_minutes: int = 0
    total_hours: Decimal = Decimal("0")

    def add(self, row: PayrollImportRow) -> None:
        minutes = row.minutes_worked or 0
        self.total_minutes += minutes
        if row.hours_worked is not None and row.hours_worked > 0:
            self.total_hours += Decimal(row.hours_worked)
        elif minutes > 0:
            self.total_hours += Decimal(minutes) / Decimal(60)

    @property
    def gross_pay(self) -> Decimal:
        return (self.total_hours * self.hourly_rate).quantize(CENT, rounding=ROUND_HALF_UP)


class PayrollRunService:
    """Service for payroll runs.

    Operations:
    - create_run: Aggregate linked import rows per employee into run lines
    - record_payment: Add a payment and advance the run's paid status
    - update_run: Rename, re-date or approve a run
    - get_run / list_runs / delete_run
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_run(
        self,
        name: str,
        source_import_id: UUID,
        employee_ids: list[UUID],
        employee_rates: Mapping[UUID, Decimal] | None = None,
        period_start: date | None = None,
        period_end: date | None = None,
        created_by: str | None = None,
    ) -> PayrollRun:
        """Build a DRAFT run from an import.

        The import's own period wins over the given one; with neither, the
        run covers today. Hours per row prefer hours_worked, else
        minutes_worked / 60. The rate is the override for the employee, else
        the employee's default rate.

        Raises:
            ValueError: If name or employee selection is empty
            ImportNotFoundError: If the source import does not exist
            NoImportRowsError: If no linked rows fall in the period
        """
        if not name or not name.strip():
            raise ValueError("Run name is required")
        if not employee_ids:
            raise ValueError("At least one employee must be selected")

        payroll_import = await self.session.get(PayrollImport, source_import_id)
        if payroll_import is None:
            raise ImportNotFoundError(source_import_id)

        today = date.today()
        start = payroll_import.period_start or period_start or today
        end = payroll_import.period_end or period_end or today
        if end < start:
            raise ValueError("Period end must not be before period start")

        result = await self.session.scalars(
            select(PayrollImportRow)
            .where(
                PayrollImportRow.import_id == source_import_id,
                PayrollImportRow.linked_employee_id.in_(employee_ids),
                PayrollImportRow.work_date >= start,
                PayrollImportRow.work_date <= end,
            )
            .options(selectinload(PayrollImportRow.linked_employee))
            .order_by(PayrollImportRow.row_index)
        )
        rows = list(result.all())

        rates = employee_rates or {}
        totals: dict[UUID, EmployeeTotals] = {}
        for row in rows:
            employee = row.linked_employee
            if employee is None:
                continue
            if employee.id not in totals:
                rate = rates.get(employee.id)
                totals[employee.id] = EmployeeTotals(
                    employee=employee,
                    hourly_rate=Decimal(rate) if rate is not None else Decimal(employee.default_hourly_rate),
                )
            totals[employee.id].add(row)

        if not totals:
            raise NoImportRowsError(source_import_id, len(employee_ids))

        run = PayrollRun(
            name=name.strip(),
            source_import_id=source_import_id,
            period_start=start,
            period_end=end,
            status=PayrollRunStatus.DRAFT.value,
            created_by=created_by,
        )
        self.session.add(run)
        await self.session.flush()

        for employee_id, employee_totals in totals.items():
            gross = employee_totals.gross_pay
            self.session.add(
                PayrollRunLine(
                    run_id=run.id,
                    employee_id=employee_id,
                    hourly_rate_used=employee_totals.hourly_rate.quantize(CENT, rounding=ROUND_HALF_UP),
                    total_minutes=employee_totals.total_minutes,
                    total_hours=employee_totals.total_hours.quantize(CENT, rounding=ROUND_HALF_UP),
                    gross_pay=gross,
                    amount_paid=Decimal("0.00"),
                    amount_owed=gross,
                )
            )
        await self.session.flush()

        logger.info(
            "Created payroll run %s from import %s with %d line(s) over %d row(s)",
            run.id,
            source_import_id,
            len(totals),
            len(rows),
        )
        return await self.get_run(run.id)

    async def get_run(self, run_id: UUID) -> PayrollRun:
        """Load a run with its lines and payments."""
        run = await self.session.scalar(
            select(PayrollRun)
            .where(PayrollRun.id == run_id)
            .options(selectinload(PayrollRun.lines), selectinload(PayrollRun.payments))
            .execution_options(populate_existing=True)
        )
        if run is None:
            raise PayrollRunNotFoundError(run_id)
        return run

    async def list_runs(self, limit: int = 25, offset: int = 0) -> tuple[list[PayrollRun], int]:
        total = await self.session.scalar(select(func.count()).select_from(PayrollRun)) or 0
        result = await self.session.scalars(
            select(PayrollRun)
            .options(selectinload(PayrollRun.lines))
            .order_by(PayrollRun.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.all()), total

    async def record_payment(
        self,
        run_id: UUID,
        employee_id: UUID,
        amount: Decimal,
        paid_at: datetime,
        method: str,
        reference: str | None = None,
        notes: str | None = None,
        run_line_id: UUID | None = None,
        created_by: str | None = None,
    ) -> PayrollPayment:
        """Record a payment against a run line.

        Paid accumulates; owed = max(gross - paid, 0). The run becomes
        PAID_FULL when every line is settled, else PAID_PARTIAL once any
        line has a payment.
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValueError("Payment amount must be positive")
        if not method or not method.strip():
            raise ValueError("Payment method is required")

        run = await self.get_run(run_id)

        if run_line_id is not None:
            line = next((line for line in run.lines if line.id == run_line_id), None)
        else:
            line = next((line for line in run.lines if line.employee_id == employee_id), None)
        if line is None:
            raise PayrollRunNotFoundError(run_id, "Payroll run line not found")

        payment = PayrollPayment(
            run_id=run.id,
            run_line_id=line.id,
            employee_id=line.employee_id,
            paid_at=paid_at,
            amount=amount.quantize(CENT, rounding=ROUND_HALF_UP),
            method=method.strip(),
            reference=reference.strip() if reference and reference.strip() else None,
            notes=notes.strip() if notes and notes.strip() else None,
            created_by=created_by,
        )
        self.session.add(payment)

        line.amount_paid = (Decimal(line.amount_paid) + payment.amount).quantize(CENT)
        line.amount_owed = max(Decimal(line.gross_pay) - line.amount_paid, Decimal("0.00")).quantize(CENT)

        new_status = self._paid_status(run)
        if new_status != run.status:
            PayrollRunStateMachine.validate_transition(run.status, new_status)
            logger.info("Payroll run %s: %s -> %s", run.id, run.status, new_status)
            run.status = new_status

        await self.session.flush()
        return payment

    async def update_run(
        self,
        run_id: UUID,
        status: str | None = None,
        name: str | None = None,
        period_start: date | None = None,
        period_end: date | None = None,
    ) -> PayrollRun:
        """Update a run's name, period or status.

        Without an explicit status the paid status is recomputed from the
        lines, so a run whose lines were settled elsewhere catches up.

        Raises:
            PayrollRunNotFoundError: If the run does not exist
            ValueError: If the name is blank, the status unknown or the period backwards
            InvalidTransitionError: If the status change is not allowed
        """
        run = await self.get_run(run_id)

        if name is not None:
            if not name.strip():
                raise ValueError("Run name is required")
            run.name = name.strip()

        start = period_start or run.period_start
        end = period_end or run.period_end
        if end < start:
            raise ValueError("Period end must not be before period start")
        run.period_start, run.period_end = start, end

        new_status = PayrollRunStatus(status).value if status is not None else self._paid_status(run)
        if new_status != run.status:
            PayrollRunStateMachine.validate_transition(run.status, new_status)
            logger.info("Payroll run %s: %s -> %s", run.id, run.status, new_status)
            run.status = new_status

        await self.session.flush()
        return await self.get_run(run.id)

    @staticmethod
    def _paid_status(run: PayrollRun) -> str:
        lines = run.lines
        if lines and all(Decimal(line.amount_owed) <= 0 for line in lines):
            return PayrollRunStatus.PAID_FULL.value
        if any(Decimal(line.amount_paid) > 0 for line in lines):
            return PayrollRunStatus.PAID_PARTIAL.value
        return run.status

    async def delete_run(self, run_id: UUID) -> None:
        """Delete a run with its lines and payments."""
        run = await self.get_run(run_id)
        await self.session.execute(delete(PayrollPayment).where(PayrollPayment.run_id == run_id))
        await self.session.execute(delete(PayrollRunLine).where(PayrollRunLine.run_id == run_id))
        self.session.expunge(run)
        await self.session.execute(delete(PayrollRun).where(PayrollRun.id == run_id))
        await self.session.flush()
        logger.info("Deleted payroll run %s", run_id)
