"""Outbound email: message types, SMTP transport and batch summary bodies."""

from __future__ import annotations

import asyncio
import html
import logging
import smtplib
import ssl
import uuid
from dataclasses import dataclass, field
from datetime import date
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Protocol

from aba_billing.config import Settings, get_settings

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class Attachment:
    """A file attached to an outbound email."""

    filename: str
    content: bytes
    content_type: str = "application/pdf"


@dataclass
class OutboundEmail:
    """One email ready for the transport."""

    to: list[str]
    subject: str
    html: str
    text: str
    attachments: list[Attachment] = field(default_factory=list)


@dataclass(frozen=True)
class SendResult:
    """Transport outcome; transports report failure here instead of raising."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class EmailTransport(Protocol):
    """Protocol for email transports."""

    async def send(self, email: OutboundEmail) -> SendResult:
        """Send the email and report the outcome."""
        ...


class SmtpEmailTransport:
    """SMTP transport; blocking smtplib calls run in a worker thread.

    Port 465 uses implicit TLS, anything else STARTTLS when smtp_secure is
    set. When SMTP is not configured, development settings log the message
    and report success; other environments report a failure.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    def _from_address(self) -> str:
        return self.settings.email_from or self.settings.smtp_user or "no-reply@localhost"

    def build_message(self, email: OutboundEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self._from_address()
        msg["To"] = ", ".join(email.to)
        msg["Subject"] = email.subject
        msg["Message-ID"] = make_msgid()
        msg.set_content(email.text)
        msg.add_alternative(email.html, subtype="html")
        for attachment in email.attachments:
            maintype, _, subtype = attachment.content_type.partition("/")
            msg.add_attachment(
                attachment.content,
                maintype=maintype,
                subtype=subtype or "octet-stream",
                filename=attachment.filename,
            )
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        settings = self.settings
        context = ssl.create_default_context()
        if settings.smtp_port == 465:
            with smtplib.SMTP_SSL(
                settings.smtp_host, settings.smtp_port, context=context, timeout=SMTP_TIMEOUT_SECONDS
            ) as smtp:
                smtp.login(settings.smtp_user, settings.smtp_password)
                smtp.send_message(msg)
        else:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=SMTP_TIMEOUT_SECONDS) as smtp:
                smtp.ehlo()
                if settings.smtp_secure:
                    smtp.starttls(context=context)
                    smtp.ehlo()
                smtp.login(settings.smtp_user, settings.smtp_password)
                smtp.send_message(msg)

    async def send(self, email: OutboundEmail) -> SendResult:
        if not email.to:
            return SendResult(success=False, error="No recipients configured")

        if not self.settings.smtp_configured:
            if self.settings.is_development:
                logger.info(
                    "EMAIL DEBUG MODE: SMTP not configured. Would send to %s (subject=%s, %d attachment(s))",
                    ", ".join(email.to),
                    email.subject,
                    len(email.attachments),
                )
                return SendResult(success=True, message_id=f"debug-{uuid.uuid4()}")
            return SendResult(success=False, error="SMTP is not configured")

        msg = self.build_message(email)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.exception("SMTP authentication failed")
            return SendResult(success=False, error=f"SMTP authentication failed: {e}")
        except (smtplib.SMTPException, OSError) as e:
            logger.exception("Email sending failed")
            return SendResult(success=False, error=f"Email sending failed: {e}")

        logger.info("Email sent to %s (subject: %s)", msg["To"], email.subject)
        return SendResult(success=True, message_id=msg["Message-ID"])


# ===== Batch summary bodies =====


@dataclass(frozen=True)
class BatchSummaryItem:
    """One line of the batch summary."""

    entity_type: str
    title: str
    client_name: str
    period: str
    total_hours: str | None
    url: str


def build_batch_email_html(items: list[BatchSummaryItem], batch_id: str, batch_date: date) -> str:
    """HTML body listing every attached document."""
    rows = "\n".join(
        "<tr>"
        f"<td>{html.escape(item.title)}</td>"
        f"<td>{html.escape(item.client_name)}</td>"
        f"<td>{html.escape(item.period)}</td>"
        f"<td>{html.escape(item.total_hours or '')}</td>"
        f'<td><a href="{html.escape(item.url, quote=True)}">View</a></td>'
        "</tr>"
        for item in items
    )
    return (
        "<html><body>"
        f"<h2>Approved documents ({len(items)})</h2>"
        f"<p>Batch {html.escape(batch_id)} &middot; {batch_date.isoformat()}</p>"
        '<table border="1" cellpadding="4" cellspacing="0">'
        "<thead><tr><th>Document</th><th>Client</th><th>Period</th><th>Hours</th><th></th></tr></thead>"
        f"<tbody>{rows}</tbody>"
        "</table>"
        "<p>The PDFs are attached to this email.</p>"
        "</body></html>"
    )


def build_batch_email_text(items: list[BatchSummaryItem], batch_id: str, batch_date: date) -> str:
    """Plain-text alternative of the batch summary."""
    lines = [
        f"Approved documents ({len(items)})",
        f"Batch {batch_id} - {batch_date.isoformat()}",
        "",
    ]
    for item in items:
        hours = f", {item.total_hours} h" if item.total_hours else ""
        lines.append(f"- {item.title}: {item.client_name} ({item.period}{hours}) {item.url}")
    lines.extend(["", "The PDFs are attached to this email."])
    return "\n".join(lines)
