"""Billing back-office services."""

from aba_billing.services.email_queue_service import (
    BatchSendError,
    BatchSendResult,
    EmailQueueService,
    EntityNotFoundError,
    InvalidRecipientError,
    NothingToResendError,
)
from aba_billing.services.import_service import DuplicateImportError, ImportNotFoundError, ImportService, ImportSummary
from aba_billing.services.mailer import EmailTransport, SmtpEmailTransport
from aba_billing.services.payroll_run_service import NoImportRowsError, PayrollRunNotFoundError, PayrollRunService
from aba_billing.services.rendering import PdfRenderer, RenderError
from aba_billing.services.state_machine import (
    EmailEntityType,
    EmailQueueStateMachine,
    EmailQueueStatus,
    ImportStatus,
    InvalidTransitionError,
    PayrollRunStatus,
)

__all__ = [
    "BatchSendError",
    "BatchSendResult",
    "EmailQueueService",
    "EntityNotFoundError",
    "InvalidRecipientError",
    "NothingToResendError",
    "DuplicateImportError",
    "ImportNotFoundError",
    "ImportService",
    "ImportSummary",
    "EmailTransport",
    "SmtpEmailTransport",
    "NoImportRowsError",
    "PayrollRunNotFoundError",
    "PayrollRunService",
    "PdfRenderer",
    "RenderError",
    "EmailEntityType",
    "EmailQueueStateMachine",
    "EmailQueueStatus",
    "ImportStatus",
    "InvalidTransitionError",
    "PayrollRunStatus",
]
