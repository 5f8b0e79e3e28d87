"""Tests for status state machines."""

import pytest

from aba_billing.services.state_machine import (
    EmailQueueStateMachine,
    EmailQueueStatus,
    ImportStateMachine,
    InvalidTransitionError,
    PayrollRunStateMachine,
)


class TestEmailQueueStateMachine:
    """Test email queue transitions."""

    def test_valid_transitions(self):
        """Test that valid transitions are allowed."""
        assert EmailQueueStateMachine.can_transition("QUEUED", "SENDING") is True
        assert EmailQueueStateMachine.can_transition("SENDING", "SENT") is True
        assert EmailQueueStateMachine.can_transition("SENDING", "FAILED") is True
        # explicit resend
        assert EmailQueueStateMachine.can_transition("FAILED", "QUEUED") is True

    def test_invalid_transitions(self):
        """Test that invalid transitions are blocked."""
        # Can't skip the claim
        assert EmailQueueStateMachine.can_transition("QUEUED", "SENT") is False
        assert EmailQueueStateMachine.can_transition("QUEUED", "FAILED") is False

        # A claim never goes back to QUEUED
        assert EmailQueueStateMachine.can_transition("SENDING", "QUEUED") is False

        # SENT is terminal
        assert EmailQueueStateMachine.can_transition("SENT", "QUEUED") is False
        assert EmailQueueStateMachine.can_transition("SENT", "FAILED") is False

    def test_validate_transition_raises(self):
        """Test that validate_transition raises for invalid transitions."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            EmailQueueStateMachine.validate_transition("SENT", "SENDING")

        assert exc_info.value.from_status == "SENT"
        assert exc_info.value.to_status == "SENDING"
        assert "Invalid transition from 'SENT' to 'SENDING'" in str(exc_info.value)

    def test_get_next_statuses(self):
        assert EmailQueueStateMachine.get_next_statuses("SENT") == []
        assert set(EmailQueueStateMachine.get_next_statuses("SENDING")) == {"SENT", "FAILED"}

    def test_deletable_statuses(self):
        """Items held by a running batch cannot be deleted."""
        assert EmailQueueStatus.QUEUED in EmailQueueStateMachine.DELETABLE
        assert EmailQueueStatus.FAILED in EmailQueueStateMachine.DELETABLE
        assert EmailQueueStatus.SENDING not in EmailQueueStateMachine.DELETABLE


class TestImportStateMachine:
    def test_finalize_once(self):
        assert ImportStateMachine.can_transition("DRAFT", "FINALIZED") is True
        assert ImportStateMachine.can_transition("FINALIZED", "FINALIZED") is False
        assert ImportStateMachine.can_transition("FINALIZED", "DRAFT") is False

    def test_reason_in_message(self):
        with pytest.raises(InvalidTransitionError, match="already finalized"):
            ImportStateMachine.validate_transition("FINALIZED", "FINALIZED", "Import is already finalized")


class TestPayrollRunStateMachine:
    def test_payment_transitions(self):
        assert PayrollRunStateMachine.can_transition("DRAFT", "PAID_PARTIAL") is True
        assert PayrollRunStateMachine.can_transition("APPROVED", "PAID_FULL") is True
        assert PayrollRunStateMachine.can_transition("PAID_PARTIAL", "PAID_FULL") is True

    def test_paid_full_is_terminal(self):
        assert PayrollRunStateMachine.get_next_statuses("PAID_FULL") == []
        assert PayrollRunStateMachine.can_transition("PAID_FULL", "PAID_PARTIAL") is False
        assert PayrollRunStateMachine.can_transition("PAID_PARTIAL", "DRAFT") is False
