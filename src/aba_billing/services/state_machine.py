"""Status enums and state machines with transition validation."""

from __future__ import annotations

from enum import Enum


class EmailQueueStatus(str, Enum):
    """Email queue item status values."""

    QUEUED = "QUEUED"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class EmailEntityType(str, Enum):
    """Entities that can be queued for delivery."""

    TIMESHEET = "TIMESHEET"
    BCBA_TIMESHEET = "BCBA_TIMESHEET"
    INVOICE = "INVOICE"


class ImportStatus(str, Enum):
    """Payroll import status values."""

    DRAFT = "DRAFT"
    FINALIZED = "FINALIZED"


class PayrollRunStatus(str, Enum):
    """Payroll run status values."""

    DRAFT = "DRAFT"
    APPROVED = "APPROVED"
    PAID_PARTIAL = "PAID_PARTIAL"
    PAID_FULL = "PAID_FULL"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class _StateMachine:
    VALID_TRANSITIONS: dict[str, list[str]] = {}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str, reason: str | None = None) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status, reason)

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])


class EmailQueueStateMachine(_StateMachine):
    """State machine for email queue items.

    Allowed transitions:
    - QUEUED → SENDING (claimed by a batch send)
    - SENDING → SENT
    - SENDING → FAILED
    - FAILED → QUEUED (explicit resend only)

    SENT is terminal. Nothing ever moves back to QUEUED automatically.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        EmailQueueStatus.QUEUED: [EmailQueueStatus.SENDING],
        EmailQueueStatus.SENDING: [EmailQueueStatus.SENT, EmailQueueStatus.FAILED],
        EmailQueueStatus.SENT: [],
        EmailQueueStatus.FAILED: [EmailQueueStatus.QUEUED],
    }

    # Statuses a live item for an entity can be in (blocks re-enqueue)
    LIVE = {EmailQueueStatus.QUEUED, EmailQueueStatus.SENDING}

    # Statuses that may be soft deleted
    DELETABLE = {EmailQueueStatus.QUEUED, EmailQueueStatus.SENT, EmailQueueStatus.FAILED}


class ImportStateMachine(_StateMachine):
    """Imports move DRAFT → FINALIZED once; FINALIZED is terminal."""

    VALID_TRANSITIONS: dict[str, list[str]] = {
        ImportStatus.DRAFT: [ImportStatus.FINALIZED],
        ImportStatus.FINALIZED: [],
    }


class PayrollRunStateMachine(_StateMachine):
    """State machine for payroll runs.

    Allowed transitions:
    - DRAFT → APPROVED
    - DRAFT/APPROVED → PAID_PARTIAL or PAID_FULL (a payment is recorded)
    - PAID_PARTIAL → PAID_PARTIAL or PAID_FULL
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayrollRunStatus.DRAFT: [
            PayrollRunStatus.APPROVED,
            PayrollRunStatus.PAID_PARTIAL,
            PayrollRunStatus.PAID_FULL,
        ],
        PayrollRunStatus.APPROVED: [PayrollRunStatus.PAID_PARTIAL, PayrollRunStatus.PAID_FULL],
        PayrollRunStatus.PAID_PARTIAL: [PayrollRunStatus.PAID_PARTIAL, PayrollRunStatus.PAID_FULL],
        PayrollRunStatus.PAID_FULL: [],
    }
