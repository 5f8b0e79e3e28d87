"""Email queue: claiming, batch delivery and recovery.

Batch send flow:

1. claim: one transaction selects the QUEUED, non-deleted items ordered by
   queued_at and conditionally moves them to SENDING. The ids returned by
   that update are the claimed snapshot; nothing downstream re-reads QUEUED.
   A concurrent send finds no QUEUED rows left and is a no-op.
2. Each claimed item's entity is loaded and rendered to PDF. A failure for
   one item marks only that item FAILED.
3. One email carries every rendered PDF plus a summary.
4. On success the rendered items become SENT with a shared batch id and
   their entities become EMAILED, in one transaction. On transport failure
   they become FAILED with the transport error.

Any unexpected exception moves the claimed items still in SENDING to FAILED
before it propagates, so no item is left holding a claim.

enqueue and soft_delete only flush; claim and delivery commit at each state
boundary because those transactions are the locking protocol.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from aba_billing.config import Settings, get_settings
from aba_billing.models import EmailQueueItem, Invoice, Timesheet, utcnow
from aba_billing.models.email_queue import ERROR_MESSAGE_MAX_LENGTH, LAST_ERROR_MAX_LENGTH
from aba_billing.services.mailer import (
    Attachment,
    BatchSummaryItem,
    EmailTransport,
    OutboundEmail,
    build_batch_email_html,
    build_batch_email_text,
)
from aba_billing.services.rendering import PdfRenderer, RenderError
from aba_billing.services.state_machine import (
    EmailEntityType,
    EmailQueueStateMachine,
    EmailQueueStatus,
)

logger = logging.getLogger(__name__)

EMAILED_STATUS = "EMAILED"
ALL_RENDERS_FAILED = "All PDF generation failed"

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_BATCH_ALPHABET = string.ascii_lowercase + string.digits


class BatchSendError(Exception):
    """Raised when a claimed batch could not be delivered.

    Queue state has already been persisted when this is raised; every
    claimed item is FAILED.
    """

    def __init__(self, message: str, batch_id: str | None, result: BatchSendResult | None = None):
        self.batch_id = batch_id
        self.result = result
        super().__init__(message)


class EntityNotFoundError(LookupError):
    """Raised when a queued entity does not exist or is deleted."""

    def __init__(self, entity_type: str, entity_id: UUID):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class NothingToResendError(LookupError):
    """Raised when none of the requested items is a live FAILED item."""


class InvalidRecipientError(ValueError):
    """Raised for malformed recipient addresses."""

    def __init__(self, invalid: list[str]):
        self.invalid = invalid
        super().__init__(f"Invalid email address(es): {', '.join(invalid)}")


@dataclass
class ItemFailure:
    item_id: UUID
    error: str


@dataclass
class BatchSendResult:
    """Outcome of one send operation."""

    batch_id: str | None
    claimed_count: int = 0
    sent_ids: list[UUID] = field(default_factory=list)
    failures: list[ItemFailure] = field(default_factory=list)
    message_id: str | None = None
    message: str = ""

    @property
    def is_noop(self) -> bool:
        return self.claimed_count == 0

    @property
    def sent_count(self) -> int:
        return len(self.sent_ids)

    @property
    def failed_count(self) -> int:
        return len(self.failures)


@dataclass
class _Rendered:
    item: EmailQueueItem
    entity: Timesheet | Invoice
    attachment: Attachment
    summary: BatchSummaryItem


def generate_batch_id() -> str:
    """Batch id of the form BATCH-<epoch ms>-<9 random chars>."""
    suffix = "".join(secrets.choice(_BATCH_ALPHABET) for _ in range(9))
    return f"BATCH-{int(time.time() * 1000)}-{suffix}"


def normalize_recipients(recipients: str | Iterable[str] | None) -> list[str]:
    """Split, trim and validate recipient addresses."""
    if recipients is None:
        return []
    parts = recipients.split(",") if isinstance(recipients, str) else list(recipients)
    normalized = [part.strip() for part in parts if part and part.strip()]
    invalid = [address for address in normalized if not _EMAIL_PATTERN.match(address)]
    if invalid:
        raise InvalidRecipientError(invalid)
    return normalized


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", value)


def _is_timesheet(entity_type: str) -> bool:
    return entity_type in (EmailEntityType.TIMESHEET, EmailEntityType.BCBA_TIMESHEET)


class EmailQueueService:
    """Service for the email queue.

    Operations:
    - enqueue: Queue an approved entity (idempotent while QUEUED/SENDING)
    - claim: QUEUED → SENDING for the currently queued set
    - send_batch / send_selected: Claim and deliver
    - resend_failed: FAILED → QUEUED by explicit request, then deliver
    - release_stale_claims: SENDING → FAILED for claims older than max_age
    - soft_delete / list_items
    """

    def __init__(
        self,
        session: AsyncSession,
        renderer: PdfRenderer,
        transport: EmailTransport,
        settings: Settings | None = None,
    ):
        self.session = session
        self.renderer = renderer
        self.transport = transport
        self.settings = settings or get_settings()

    # ===== Queue management =====

    async def enqueue(
        self,
        entity_type: str,
        entity_id: UUID,
        to_email: str | Iterable[str] | None = None,
        subject: str | None = None,
        queued_by: str | None = None,
    ) -> EmailQueueItem:
        """Queue an entity for the next batch.

        Returns the existing live item if the entity is already QUEUED or
        SENDING.
        """
        entity_type = EmailEntityType(entity_type).value
        recipients = normalize_recipients(to_email)

        if await self._load_entity(entity_type, entity_id) is None:
            raise EntityNotFoundError(entity_type, entity_id)

        existing = await self.session.scalar(
            select(EmailQueueItem).where(
                EmailQueueItem.entity_type == entity_type,
                EmailQueueItem.entity_id == entity_id,
                EmailQueueItem.status.in_([status.value for status in EmailQueueStateMachine.LIVE]),
                EmailQueueItem.deleted_at.is_(None),
            )
        )
        if existing is not None:
            logger.info("%s %s already queued as %s", entity_type, entity_id, existing.id)
            return existing

        item = EmailQueueItem(
            entity_type=entity_type,
            entity_id=entity_id,
            status=EmailQueueStatus.QUEUED.value,
            to_email=",".join(recipients) or None,
            subject=subject,
            attempts=0,
            queued_at=utcnow(),
            queued_by=queued_by,
        )
        self.session.add(item)
        await self.session.flush()
        logger.info("Queued %s %s as %s", entity_type, entity_id, item.id)
        return item

    async def list_items(
        self,
        status: str | None = None,
        include_deleted: bool = False,
    ) -> list[EmailQueueItem]:
        query = select(EmailQueueItem).order_by(EmailQueueItem.queued_at)
        if status:
            query = query.where(EmailQueueItem.status == EmailQueueStatus(status).value)
        if not include_deleted:
            query = query.where(EmailQueueItem.deleted_at.is_(None))
        result = await self.session.scalars(query.execution_options(populate_existing=True))
        return list(result.all())

    async def soft_delete(self, item_ids: list[UUID], deleted_by: str | None = None) -> int:
        """Soft delete items; items held by a running batch are left alone."""
        result = await self.session.execute(
            update(EmailQueueItem)
            .where(
                EmailQueueItem.id.in_(item_ids),
                EmailQueueItem.deleted_at.is_(None),
                EmailQueueItem.status.in_([status.value for status in EmailQueueStateMachine.DELETABLE]),
            )
            .values(deleted_at=utcnow(), deleted_by=deleted_by)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        logger.info("Soft deleted %d queue item(s)", result.rowcount)
        return result.rowcount

    # ===== Claiming =====

    async def claim(self, item_ids: list[UUID] | None = None) -> list[UUID]:
        """Move the currently QUEUED items to SENDING and return their ids.

        Select and update run in one transaction. The update is conditional
        on the row still being QUEUED, so when two sends race only one of
        them gets each row back from RETURNING.
        """
        query = (
            select(EmailQueueItem.id)
            .where(
                EmailQueueItem.status == EmailQueueStatus.QUEUED.value,
                EmailQueueItem.deleted_at.is_(None),
            )
            .order_by(EmailQueueItem.queued_at)
        )
        if item_ids is not None:
            query = query.where(EmailQueueItem.id.in_(item_ids))

        candidate_ids = list((await self.session.scalars(query)).all())
        if not candidate_ids:
            await self.session.commit()
            return []

        result = await self.session.execute(
            update(EmailQueueItem)
            .where(
                EmailQueueItem.id.in_(candidate_ids),
                EmailQueueItem.status == EmailQueueStatus.QUEUED.value,
                EmailQueueItem.deleted_at.is_(None),
            )
            .values(status=EmailQueueStatus.SENDING.value, claimed_at=utcnow())
            .returning(EmailQueueItem.id)
            .execution_options(synchronize_session=False)
        )
        claimed = set(result.scalars().all())
        await self.session.commit()

        claimed_ids = [item_id for item_id in candidate_ids if item_id in claimed]
        logger.info("Claimed %d of %d queued item(s)", len(claimed_ids), len(candidate_ids))
        return claimed_ids

    # ===== Sending =====

    async def send_batch(self) -> BatchSendResult:
        """Claim every QUEUED item and deliver them in one email."""
        return await self._deliver_claimed(await self.claim())

    async def send_selected(self, item_ids: list[UUID]) -> BatchSendResult:
        """Claim the given QUEUED items and deliver them in one email."""
        if not item_ids:
            raise ValueError("Item IDs are required")
        return await self._deliver_claimed(await self.claim(item_ids))

    async def resend_failed(
        self,
        item_ids: list[UUID],
        recipients: str | Iterable[str] | None = None,
    ) -> BatchSendResult:
        """Re-queue FAILED items by explicit request and deliver exactly those.

        Errors are cleared and attempts incremented on re-queue; recipients,
        when given, replace the items' to_email.
        """
        if not item_ids:
            raise ValueError("Item IDs are required")
        new_recipients = normalize_recipients(recipients)

        result = await self.session.scalars(
            select(EmailQueueItem)
            .where(
                EmailQueueItem.id.in_(item_ids),
                EmailQueueItem.status == EmailQueueStatus.FAILED.value,
                EmailQueueItem.deleted_at.is_(None),
            )
            .execution_options(populate_existing=True)
        )
        failed_items = list(result.all())
        if not failed_items:
            raise NothingToResendError("No failed items found to resend")

        for item in failed_items:
            EmailQueueStateMachine.validate_transition(item.status, EmailQueueStatus.QUEUED)
            item.status = EmailQueueStatus.QUEUED.value
            item.error_message = None
            item.last_error = None
            item.attempts += 1
            if new_recipients:
                item.to_email = ",".join(new_recipients)
        await self.session.commit()
        logger.info("Re-queued %d failed item(s) for resend", len(failed_items))

        return await self._deliver_claimed(await self.claim([item.id for item in failed_items]))

    async def release_stale_claims(self, max_age: timedelta, now: datetime | None = None) -> int:
        """Fail SENDING items whose claim is older than max_age.

        Covers a process that died between claim and outcome.
        """
        cutoff = (now or utcnow()) - max_age
        stale_ids = list(
            (
                await self.session.scalars(
                    select(EmailQueueItem.id).where(
                        EmailQueueItem.status == EmailQueueStatus.SENDING.value,
                        (EmailQueueItem.claimed_at.is_(None)) | (EmailQueueItem.claimed_at < cutoff),
                    )
                )
            ).all()
        )
        if not stale_ids:
            return 0
        released = await self._sweep(stale_ids, "Send interrupted before completion; claim released")
        logger.warning("Released %d stale SENDING claim(s)", released)
        return released

    async def _deliver_claimed(self, claimed_ids: list[UUID]) -> BatchSendResult:
        if not claimed_ids:
            return BatchSendResult(batch_id=None, message="No items in queue to send")

        batch_id = generate_batch_id()
        try:
            return await self._deliver(claimed_ids, batch_id)
        except BatchSendError:
            raise
        except Exception as e:
            logger.exception("Unexpected error while sending batch %s", batch_id)
            await self.session.rollback()
            await self._sweep(claimed_ids, f"Unexpected error: {e}")
            raise

    async def _deliver(self, claimed_ids: list[UUID], batch_id: str) -> BatchSendResult:
        result = await self.session.scalars(
            select(EmailQueueItem)
            .where(EmailQueueItem.id.in_(claimed_ids))
            .order_by(EmailQueueItem.queued_at)
            .execution_options(populate_existing=True)
        )
        items = list(result.all())
        outcome = BatchSendResult(batch_id=batch_id, claimed_count=len(items))

        rendered: list[_Rendered] = []
        for item in items:
            try:
                rendered.append(await self._render_item(item, batch_id))
            except (RenderError, EntityNotFoundError) as e:
                logger.warning("Batch %s: item %s not rendered: %s", batch_id, item.id, e)
                outcome.failures.append(ItemFailure(item.id, str(e)))
            except Exception as e:
                logger.exception("Batch %s: renderer raised for item %s", batch_id, item.id)
                outcome.failures.append(ItemFailure(item.id, f"PDF generation failed: {e}"))

        render_errors = {failure.item_id: failure.error for failure in outcome.failures}

        if not rendered:
            for item in items:
                self._mark_failed(item, ALL_RENDERS_FAILED, render_errors.get(item.id, ALL_RENDERS_FAILED))
            await self.session.commit()
            outcome.message = ALL_RENDERS_FAILED
            logger.error("Batch %s: all %d PDF renders failed", batch_id, len(items))
            raise BatchSendError(ALL_RENDERS_FAILED, batch_id, outcome)

        if render_errors:
            for item in items:
                if item.id in render_errors:
                    self._mark_failed(item, render_errors[item.id], render_errors[item.id])
            await self.session.commit()

        recipients = self._recipients(rendered)
        if not recipients:
            await self._fail_rendered(rendered, outcome, "No recipients configured for batch email")
            raise BatchSendError(outcome.message, batch_id, outcome)

        email = OutboundEmail(
            to=recipients,
            subject=self._subject(rendered),
            html=build_batch_email_html([r.summary for r in rendered], batch_id, utcnow().date()),
            text=build_batch_email_text([r.summary for r in rendered], batch_id, utcnow().date()),
            attachments=[r.attachment for r in rendered],
        )
        send_result = await self.transport.send(email)

        if not send_result.success:
            await self._fail_rendered(rendered, outcome, send_result.error or "Email transport failed")
            raise BatchSendError(outcome.message, batch_id, outcome)

        sent_at = utcnow()
        for entry in rendered:
            EmailQueueStateMachine.validate_transition(entry.item.status, EmailQueueStatus.SENT)
            entry.item.status = EmailQueueStatus.SENT.value
            entry.item.sent_at = sent_at
            entry.item.batch_id = batch_id
            entry.item.attempts += 1
            entry.item.error_message = None
            entry.item.last_error = None
            entry.entity.status = EMAILED_STATUS
            entry.entity.emailed_at = sent_at
            outcome.sent_ids.append(entry.item.id)
        await self.session.commit()

        outcome.message_id = send_result.message_id
        outcome.message = f"Sent {outcome.sent_count} item(s) in batch {batch_id}"
        if outcome.failures:
            outcome.message += f"; {outcome.failed_count} failed to render"
        logger.info(
            "Batch %s sent to %s: %d sent, %d failed",
            batch_id,
            ", ".join(recipients),
            outcome.sent_count,
            outcome.failed_count,
        )
        return outcome

    async def _fail_rendered(
        self,
        rendered: list[_Rendered],
        outcome: BatchSendResult,
        error: str,
    ) -> None:
        for entry in rendered:
            self._mark_failed(entry.item, error, error)
            outcome.failures.append(ItemFailure(entry.item.id, error))
        await self.session.commit()
        outcome.message = error[:ERROR_MESSAGE_MAX_LENGTH]
        logger.error("Batch %s failed: %s", outcome.batch_id, error)

    @staticmethod
    def _mark_failed(item: EmailQueueItem, message: str, last_error: str) -> None:
        EmailQueueStateMachine.validate_transition(item.status, EmailQueueStatus.FAILED)
        item.status = EmailQueueStatus.FAILED.value
        item.error_message = message[:ERROR_MESSAGE_MAX_LENGTH]
        item.last_error = last_error[:LAST_ERROR_MAX_LENGTH]
        item.attempts += 1

    async def _sweep(self, item_ids: list[UUID], error: str) -> int:
        """Move items still in SENDING to FAILED."""
        result = await self.session.execute(
            update(EmailQueueItem)
            .where(
                EmailQueueItem.id.in_(item_ids),
                EmailQueueItem.status == EmailQueueStatus.SENDING.value,
            )
            .values(
                status=EmailQueueStatus.FAILED.value,
                error_message=error[:ERROR_MESSAGE_MAX_LENGTH],
                last_error=error[:LAST_ERROR_MAX_LENGTH],
                attempts=EmailQueueItem.attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.commit()
        return result.rowcount

    # ===== Rendering helpers =====

    async def _load_entity(self, entity_type: str, entity_id: UUID) -> Timesheet | Invoice | None:
        model = Timesheet if _is_timesheet(entity_type) else Invoice
        entity = await self.session.get(model, entity_id, populate_existing=True)
        if entity is None or entity.deleted_at is not None:
            return None
        return entity

    async def _render_item(self, item: EmailQueueItem, batch_id: str) -> _Rendered:
        entity = await self._load_entity(item.entity_type, item.entity_id)
        if entity is None:
            raise EntityNotFoundError(item.entity_type, item.entity_id)

        content = await self.renderer.render(item.entity_type, item.entity_id)
        logger.debug("Batch %s: rendered %s %s (%d bytes)", batch_id, item.entity_type, entity.id, len(content))

        if isinstance(entity, Timesheet):
            is_bcba = entity.is_bcba or item.entity_type == EmailEntityType.BCBA_TIMESHEET
            label = "BCBA" if is_bcba else "Regular"
            filename = f"{label}_Timesheet_{_safe_name(entity.client_name)}_{entity.start_date.isoformat()}.pdf"
            hours = (Decimal(entity.total_minutes) / Decimal(60)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            summary = BatchSummaryItem(
                entity_type=item.entity_type,
                title="BCBA Timesheet" if is_bcba else "Timesheet",
                client_name=entity.client_name,
                period=f"{entity.start_date.isoformat()} - {entity.end_date.isoformat()}",
                total_hours=str(hours),
                url=f"{self.settings.app_url}/{'bcba-timesheets' if is_bcba else 'timesheets'}/{entity.id}",
            )
        else:
            filename = f"Invoice_{_safe_name(entity.invoice_number)}_{_safe_name(entity.client_name)}.pdf"
            summary = BatchSummaryItem(
                entity_type=item.entity_type,
                title=f"Invoice {entity.invoice_number}",
                client_name=entity.client_name,
                period=entity.issued_on.isoformat(),
                total_hours=None,
                url=f"{self.settings.app_url}/invoices/{entity.id}",
            )

        return _Rendered(
            item=item,
            entity=entity,
            attachment=Attachment(filename=filename, content=content),
            summary=summary,
        )

    def _recipients(self, rendered: list[_Rendered]) -> list[str]:
        recipients: list[str] = []
        for entry in rendered:
            for address in entry.item.recipients:
                if address not in recipients:
                    recipients.append(address)
        return recipients or list(self.settings.batch_recipients)

    @staticmethod
    def _subject(rendered: list[_Rendered]) -> str:
        for entry in rendered:
            if entry.item.subject:
                return entry.item.subject
        today = utcnow().date().isoformat()
        if all(_is_timesheet(entry.item.entity_type) for entry in rendered):
            return f"Approved Timesheets Batch ({today})"
        return f"Approved Documents Batch ({today})"
