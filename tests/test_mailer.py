"""Tests for outbound email building and the SMTP transport fallbacks."""

from dataclasses import replace
from datetime import date

import pytest

from aba_billing.services.mailer import (
    Attachment,
    BatchSummaryItem,
    OutboundEmail,
    SmtpEmailTransport,
    build_batch_email_html,
    build_batch_email_text,
)

SUMMARY = [
    BatchSummaryItem(
        entity_type="TIMESHEET",
        title="Timesheet",
        client_name="Jane <Doe>",
        period="2024-01-01 - 2024-01-07",
        total_hours="10.00",
        url="https://billing.example.com/timesheets/1",
    ),
    BatchSummaryItem(
        entity_type="INVOICE",
        title="Invoice INV-1",
        client_name="John Roe",
        period="2024-01-31",
        total_hours=None,
        url="https://billing.example.com/invoices/2",
    ),
]


def _email(**overrides) -> OutboundEmail:
    fields = {
        "to": ["office@example.com"],
        "subject": "Approved Timesheets Batch",
        "html": "<p>hi</p>",
        "text": "hi",
        "attachments": [Attachment(filename="a.pdf", content=b"%PDF-1.4")],
    }
    fields.update(overrides)
    return OutboundEmail(**fields)


class TestBatchBodies:
    def test_html_escapes_and_lists_every_item(self):
        body = build_batch_email_html(SUMMARY, "BATCH-1-abc", date(2024, 2, 1))
        assert "Approved documents (2)" in body
        assert "Jane &lt;Doe&gt;" in body
        assert "BATCH-1-abc" in body
        assert body.count("<tr>") == 3

    def test_text_body(self):
        body = build_batch_email_text(SUMMARY, "BATCH-1-abc", date(2024, 2, 1))
        lines = body.splitlines()
        assert lines[0] == "Approved documents (2)"
        assert lines[1] == "Batch BATCH-1-abc - 2024-02-01"
        assert "- Timesheet: Jane <Doe> (2024-01-01 - 2024-01-07, 10.00 h)" in body
        assert "- Invoice INV-1: John Roe (2024-01-31) https://billing.example.com/invoices/2" in body


class TestSmtpEmailTransport:
    """Behavior that does not reach a server."""

    def test_build_message(self, settings):
        transport = SmtpEmailTransport(replace(settings, email_from="billing@example.com"))
        msg = transport.build_message(_email())

        assert msg["From"] == "billing@example.com"
        assert msg["To"] == "office@example.com"
        assert msg["Message-ID"]
        attachments = list(msg.iter_attachments())
        assert [part.get_filename() for part in attachments] == ["a.pdf"]
        assert attachments[0].get_content_type() == "application/pdf"

    @pytest.mark.asyncio
    async def test_no_recipients(self, settings):
        result = await SmtpEmailTransport(settings).send(_email(to=[]))
        assert result.success is False
        assert result.error == "No recipients configured"

    @pytest.mark.asyncio
    async def test_unconfigured_smtp_in_development_logs_instead(self, settings, caplog):
        transport = SmtpEmailTransport(replace(settings, environment="development"))
        with caplog.at_level("INFO"):
            result = await transport.send(_email())

        assert result.success is True
        assert result.message_id.startswith("debug-")
        assert "EMAIL DEBUG MODE" in caplog.text

    @pytest.mark.asyncio
    async def test_unconfigured_smtp_elsewhere_fails(self, settings):
        result = await SmtpEmailTransport(settings).send(_email())
        assert result.success is False
        assert result.error == "SMTP is not configured"
