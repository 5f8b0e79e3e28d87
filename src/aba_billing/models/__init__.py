"""ORM models."""

from aba_billing.models.base import Base, TimestampMixin, utcnow
from aba_billing.models.email_queue import EmailQueueItem, Invoice, Timesheet
from aba_billing.models.payroll import (
    PayrollEmployee,
    PayrollImport,
    PayrollImportRow,
    PayrollPayment,
    PayrollRun,
    PayrollRunLine,
    PayrollTimeLog,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "utcnow",
    "EmailQueueItem",
    "Invoice",
    "Timesheet",
    "PayrollEmployee",
    "PayrollImport",
    "PayrollImportRow",
    "PayrollPayment",
    "PayrollRun",
    "PayrollRunLine",
    "PayrollTimeLog",
]
