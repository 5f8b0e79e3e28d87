"""Tests for payroll run aggregation and payments."""

from datetime import date, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from aba_billing.models import PayrollImport, PayrollImportRow
from aba_billing.services.import_service import ImportNotFoundError
from aba_billing.services.payroll_run_service import (
    NoImportRowsError,
    PayrollRunNotFoundError,
    PayrollRunService,
)
from aba_billing.services.state_machine import InvalidTransitionError
from tests.conftest import make_employee

pytestmark = pytest.mark.asyncio


async def _import_with_rows(session, rows, period_start=None, period_end=None) -> PayrollImport:
    payroll_import = PayrollImport(
        original_file_name="hours.csv",
        file_hash="0" * 64,
        file_size=10,
        status="DRAFT",
        period_start=period_start,
        period_end=period_end,
        mapping_json={},
        row_count=len(rows),
        imported_rows=len(rows),
    )
    session.add(payroll_import)
    await session.flush()
    for index, (employee, work_date, minutes, hours) in enumerate(rows):
        session.add(
            PayrollImportRow(
                import_id=payroll_import.id,
                row_index=index,
                employee_name_raw=employee.full_name if employee else "Unknown",
                linked_employee_id=employee.id if employee else None,
                work_date=work_date,
                minutes_worked=minutes,
                hours_worked=hours,
                raw_json={},
            )
        )
    await session.flush()
    return payroll_import


class TestCreateRun:
    """Aggregation of linked rows into run lines."""

    async def test_totals_per_employee(self, session):
        """Hours prefer hours_worked, else minutes / 60; gross is hours x rate."""
        alice = await make_employee(session, "Alice Smith", Decimal("25.00"))
        bob = await make_employee(session, "Bob Jones", Decimal("30.00"))
        payroll_import = await _import_with_rows(
            session,
            [
                (alice, date(2024, 1, 1), 480, None),
                (alice, date(2024, 1, 2), 999, Decimal("7.50")),
                (bob, date(2024, 1, 1), 90, None),
                (None, date(2024, 1, 1), 600, None),
            ],
            period_start=date(2024, 1, 1),
            period_end=date(2024, 1, 7),
        )

        run = await PayrollRunService(session).create_run(
            "Week 1",
            payroll_import.id,
            [alice.id, bob.id],
            created_by="admin",
        )

        assert run.status == "DRAFT"
        assert run.period_start == date(2024, 1, 1)
        assert run.period_end == date(2024, 1, 7)
        lines = {line.employee_id: line for line in run.lines}
        assert lines[alice.id].total_minutes == 480 + 999
        assert lines[alice.id].total_hours == Decimal("15.50")
        assert lines[alice.id].gross_pay == Decimal("387.50")
        assert lines[alice.id].amount_owed == Decimal("387.50")
        assert lines[alice.id].amount_paid == Decimal("0.00")
        assert lines[bob.id].total_hours == Decimal("1.50")
        assert lines[bob.id].gross_pay == Decimal("45.00")

    async def test_rate_override_and_period_filter(self, session):
        alice = await make_employee(session, "Alice Smith", Decimal("25.00"))
        payroll_import = await _import_with_rows(
            session,
            [
                (alice, date(2024, 1, 1), 60, None),
                (alice, date(2024, 1, 20), 600, None),
            ],
        )

        run = await PayrollRunService(session).create_run(
            "Override",
            payroll_import.id,
            [alice.id],
            employee_rates={alice.id: Decimal("40")},
            period_start=date(2024, 1, 1),
            period_end=date(2024, 1, 7),
        )

        line = run.lines[0]
        assert line.hourly_rate_used == Decimal("40.00")
        assert line.total_minutes == 60
        assert line.gross_pay == Decimal("40.00")

    async def test_no_linked_rows(self, session):
        alice = await make_employee(session)
        payroll_import = await _import_with_rows(session, [(None, date(2024, 1, 1), 60, None)])

        with pytest.raises(NoImportRowsError) as exc_info:
            await PayrollRunService(session).create_run(
                "Empty",
                payroll_import.id,
                [alice.id],
                period_start=date(2024, 1, 1),
                period_end=date(2024, 1, 7),
            )
        assert "Ensure employees are linked" in str(exc_info.value)

    async def test_validation(self, session):
        service = PayrollRunService(session)
        with pytest.raises(ValueError, match="name is required"):
            await service.create_run(" ", uuid4(), [uuid4()])
        with pytest.raises(ValueError, match="At least one employee"):
            await service.create_run("Run", uuid4(), [])
        with pytest.raises(ImportNotFoundError):
            await service.create_run("Run", uuid4(), [uuid4()])


class TestRecordPayment:
    """Payments move the run through PAID_PARTIAL to PAID_FULL."""

    async def _run(self, session):
        alice = await make_employee(session, "Alice Smith", Decimal("20.00"))
        bob = await make_employee(session, "Bob Jones", Decimal("20.00"))
        payroll_import = await _import_with_rows(
            session,
            [(alice, date(2024, 1, 1), 300, None), (bob, date(2024, 1, 1), 120, None)],
            period_start=date(2024, 1, 1),
            period_end=date(2024, 1, 7),
        )
        run = await PayrollRunService(session).create_run("Week", payroll_import.id, [alice.id, bob.id])
        return run, alice, bob

    async def test_partial_then_full(self, session):
        run, alice, bob = await self._run(session)
        service = PayrollRunService(session)
        paid_at = datetime(2024, 1, 8, 9, 0)

        await service.record_payment(run.id, alice.id, Decimal("60.00"), paid_at, "check")
        run = await service.get_run(run.id)
        assert run.status == "PAID_PARTIAL"
        line = next(line for line in run.lines if line.employee_id == alice.id)
        assert line.amount_paid == Decimal("60.00")
        assert line.amount_owed == Decimal("40.00")

        await service.record_payment(run.id, alice.id, Decimal("50.00"), paid_at, "check")
        await service.record_payment(run.id, bob.id, Decimal("40.00"), paid_at, "ach", reference="T-1")
        run = await service.get_run(run.id)
        assert run.status == "PAID_FULL"
        line = next(line for line in run.lines if line.employee_id == alice.id)
        # overpayment never makes owed negative
        assert line.amount_owed == Decimal("0.00")
        assert len(run.payments) == 3

    async def test_unknown_line(self, session):
        run, _, _ = await self._run(session)
        with pytest.raises(PayrollRunNotFoundError, match="line not found"):
            await PayrollRunService(session).record_payment(
                run.id, uuid4(), Decimal("10"), datetime(2024, 1, 8), "check"
            )

    async def test_amount_must_be_positive(self, session):
        run, alice, _ = await self._run(session)
        with pytest.raises(ValueError, match="positive"):
            await PayrollRunService(session).record_payment(
                run.id, alice.id, Decimal("0"), datetime(2024, 1, 8), "check"
            )


class TestUpdateRun:
    """Renames, period changes and status moves."""

    async def _run(self, session):
        alice = await make_employee(session, "Alice Smith", Decimal("20.00"))
        payroll_import = await _import_with_rows(
            session,
            [(alice, date(2024, 1, 1), 300, None)],
            period_start=date(2024, 1, 1),
            period_end=date(2024, 1, 7),
        )
        run = await PayrollRunService(session).create_run("Week", payroll_import.id, [alice.id])
        return run, alice

    async def test_approve_and_rename(self, session):
        run, _ = await self._run(session)
        service = PayrollRunService(session)

        run = await service.update_run(run.id, status="APPROVED", name="  Week 1 final ")
        assert run.status == "APPROVED"
        assert run.name == "Week 1 final"
        assert run.period_start == date(2024, 1, 1)

        run = await service.update_run(run.id, period_end=date(2024, 1, 14))
        assert run.period_end == date(2024, 1, 14)
        assert run.status == "APPROVED"

    async def test_payment_after_approval(self, session):
        run, alice = await self._run(session)
        service = PayrollRunService(session)
        await service.update_run(run.id, status="APPROVED")

        await service.record_payment(run.id, alice.id, Decimal("100.00"), datetime(2024, 1, 8), "check")
        assert (await service.get_run(run.id)).status == "PAID_FULL"

    async def test_without_status_recomputes_paid_status(self, session):
        run, _ = await self._run(session)
        service = PayrollRunService(session)
        line = run.lines[0]
        line.amount_paid = Decimal("100.00")
        line.amount_owed = Decimal("0.00")
        await session.flush()

        run = await service.update_run(run.id, name="Settled")
        assert run.status == "PAID_FULL"

    async def test_rejected_updates(self, session):
        run, alice = await self._run(session)
        service = PayrollRunService(session)
        await service.record_payment(run.id, alice.id, Decimal("100.00"), datetime(2024, 1, 8), "check")

        with pytest.raises(InvalidTransitionError):
            await service.update_run(run.id, status="APPROVED")
        with pytest.raises(ValueError, match="not a valid"):
            await service.update_run(run.id, status="CANCELLED")
        with pytest.raises(ValueError, match="Run name is required"):
            await service.update_run(run.id, name="  ")
        with pytest.raises(ValueError, match="Period end"):
            await service.update_run(run.id, period_end=date(2023, 12, 31))
        with pytest.raises(PayrollRunNotFoundError):
            await service.update_run(uuid4(), status="APPROVED")


class TestDeleteRun:
    async def test_delete(self, session):
        alice = await make_employee(session)
        payroll_import = await _import_with_rows(
            session,
            [(alice, date(2024, 1, 1), 60, None)],
            period_start=date(2024, 1, 1),
            period_end=date(2024, 1, 1),
        )
        service = PayrollRunService(session)
        run = await service.create_run("Run", payroll_import.id, [alice.id])
        await service.record_payment(run.id, alice.id, Decimal("5"), datetime(2024, 1, 2), "cash")

        await service.delete_run(run.id)

        with pytest.raises(PayrollRunNotFoundError):
            await service.get_run(run.id)
        runs, total = await service.list_runs()
        assert total == 0
