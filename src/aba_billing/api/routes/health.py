"""Health check endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, status
from pydantic import BaseModel, Field
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from aba_billing.api.dependencies import DbSession
from aba_billing.models import EmailQueueItem
from aba_billing.services.state_machine import EmailQueueStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response.

    email_queue holds the number of live (QUEUED / SENDING) items; a
    SENDING count that never drains points at an interrupted batch.
    """

    status: str
    timestamp: datetime
    database: str
    email_queue: dict[str, int] = Field(default_factory=dict)


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
async def health_check(db: DbSession) -> HealthResponse:
    """Check API and database health."""
    db_status = "unhealthy"
    queue: dict[str, int] = {}
    try:
        await db.execute(text("SELECT 1"))
        result = await db.execute(
            select(EmailQueueItem.status, func.count())
            .where(
                EmailQueueItem.status.in_([s.value for s in EmailQueueStateMachine.LIVE]),
                EmailQueueItem.deleted_at.is_(None),
            )
            .group_by(EmailQueueItem.status)
        )
        queue = {s.value: 0 for s in EmailQueueStateMachine.LIVE}
        queue.update({row_status: count for row_status, count in result.all()})
        db_status = "healthy"
    except SQLAlchemyError:
        logger.exception("Database health check failed")

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        timestamp=datetime.now(timezone.utc),
        database=db_status,
        email_queue=queue,
    )


@router.get("/ready", status_code=status.HTTP_200_OK)
async def readiness_check() -> dict[str, str]:
    """Readiness check for container orchestration."""
    return {"status": "ready"}


@router.get("/live", status_code=status.HTTP_200_OK)
async def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
