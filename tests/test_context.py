"""Tests for per-request timing and query counting."""

import logging

import pytest
from sqlalchemy import select

from aba_billing.context import RequestContext
from aba_billing.models import EmailQueueItem

pytestmark = pytest.mark.asyncio


class TestRequestContext:
    async def test_counts_orm_statements_while_attached(self, session):
        context = RequestContext.start("GET", "/api/v1/email-queue", "req-1")
        context.attach(session)

        await session.scalars(select(EmailQueueItem))
        await session.scalars(select(EmailQueueItem))
        context.detach(session)
        await session.scalars(select(EmailQueueItem))

        assert context.query_count == 2

    async def test_finish_logs_phases(self, session, caplog):
        context = RequestContext.start("POST", "/api/v1/email-queue/send-batch")
        context.attach(session)
        with context.phase("send"):
            await session.scalars(select(EmailQueueItem))

        with caplog.at_level(logging.INFO, logger="aba_billing.context"):
            context.finish()

        assert len(context.request_id) == 12
        assert "send=" in caplog.text
        assert "queries=1" in caplog.text
        assert context._sessions == []
