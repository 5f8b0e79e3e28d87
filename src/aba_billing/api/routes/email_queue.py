"""Email queue API endpoints."""

from datetime import timedelta
from typing import Annotated

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import JSONResponse

from aba_billing.api.dependencies import Actor, AppSettings, Context, DbSession, Renderer, Transport
from aba_billing.api.schemas import (
    BatchSendResponse,
    BulkDeleteResponse,
    EmailQueueItemResponse,
    EmailQueueListResponse,
    EnqueueRequest,
    ErrorResponse,
    ItemFailureResponse,
    ItemIdsRequest,
    ReleaseStaleResponse,
    ResendRequest,
)
from aba_billing.services.email_queue_service import (
    BatchSendError,
    BatchSendResult,
    EmailQueueService,
    EntityNotFoundError,
    NothingToResendError,
)

router = APIRouter(prefix="/email-queue", tags=["email-queue"])

_SEND_RESPONSES = {
    400: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def _batch_response(result: BatchSendResult) -> BatchSendResponse:
    return BatchSendResponse(
        batch_id=result.batch_id,
        claimed_count=result.claimed_count,
        sent_count=result.sent_count,
        failed_count=result.failed_count,
        sent_ids=result.sent_ids,
        failures=[ItemFailureResponse(item_id=f.item_id, error=f.error) for f in result.failures],
        message=result.message,
    )


def _batch_error_response(exc: BatchSendError) -> JSONResponse:
    content: dict = {
        "detail": str(exc),
        "code": "BATCH_SEND_FAILED",
        "batchId": exc.batch_id,
    }
    if exc.result is not None:
        content["result"] = _batch_response(exc.result).model_dump(mode="json")
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=content)


@router.get(
    "",
    response_model=EmailQueueListResponse,
    responses={400: {"model": ErrorResponse}},
)
async def list_queue(
    db: DbSession,
    renderer: Renderer,
    transport: Transport,
    settings: AppSettings,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
    include_deleted: bool = False,
) -> EmailQueueListResponse:
    """List queue items, oldest first."""
    service = EmailQueueService(db, renderer, transport, settings)
    try:
        items = await service.list_items(status_filter, include_deleted)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return EmailQueueListResponse(
        items=[EmailQueueItemResponse.model_validate(item) for item in items],
        total=len(items),
    )


@router.post(
    "",
    response_model=EmailQueueItemResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def enqueue(
    db: DbSession,
    actor: Actor,
    renderer: Renderer,
    transport: Transport,
    settings: AppSettings,
    payload: EnqueueRequest,
) -> EmailQueueItemResponse:
    """Queue an approved timesheet or invoice for the next batch."""
    service = EmailQueueService(db, renderer, transport, settings)
    try:
        item = await service.enqueue(
            payload.entity_type,
            payload.entity_id,
            to_email=payload.to_email,
            subject=payload.subject,
            queued_by=actor,
        )
    except EntityNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await db.commit()
    return EmailQueueItemResponse.model_validate(item)


@router.post(
    "/send-batch",
    response_model=BatchSendResponse,
    responses=_SEND_RESPONSES,
)
async def send_batch(
    db: DbSession,
    context: Context,
    renderer: Renderer,
    transport: Transport,
    settings: AppSettings,
) -> BatchSendResponse | JSONResponse:
    """Send every QUEUED item in one email."""
    service = EmailQueueService(db, renderer, transport, settings)
    try:
        with context.phase("send"):
            result = await service.send_batch()
    except BatchSendError as e:
        return _batch_error_response(e)
    return _batch_response(result)


@router.post(
    "/send-selected",
    response_model=BatchSendResponse,
    responses=_SEND_RESPONSES,
)
async def send_selected(
    db: DbSession,
    context: Context,
    renderer: Renderer,
    transport: Transport,
    settings: AppSettings,
    payload: ItemIdsRequest,
) -> BatchSendResponse | JSONResponse:
    """Send the selected QUEUED items in one email."""
    service = EmailQueueService(db, renderer, transport, settings)
    try:
        with context.phase("send"):
            result = await service.send_selected(payload.ids)
    except BatchSendError as e:
        return _batch_error_response(e)
    return _batch_response(result)


@router.post(
    "/resend",
    response_model=BatchSendResponse,
    responses={**_SEND_RESPONSES, 404: {"model": ErrorResponse}},
)
async def resend_failed(
    db: DbSession,
    context: Context,
    renderer: Renderer,
    transport: Transport,
    settings: AppSettings,
    payload: ResendRequest,
) -> BatchSendResponse | JSONResponse:
    """Re-queue FAILED items and send exactly those."""
    service = EmailQueueService(db, renderer, transport, settings)
    try:
        with context.phase("send"):
            result = await service.resend_failed(payload.ids, payload.recipients)
    except NothingToResendError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except BatchSendError as e:
        return _batch_error_response(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return _batch_response(result)


@router.post(
    "/bulk-delete",
    response_model=BulkDeleteResponse,
)
async def bulk_delete(
    db: DbSession,
    actor: Actor,
    renderer: Renderer,
    transport: Transport,
    settings: AppSettings,
    payload: ItemIdsRequest,
) -> BulkDeleteResponse:
    """Soft delete queue items; items in a running batch are skipped."""
    service = EmailQueueService(db, renderer, transport, settings)
    deleted = await service.soft_delete(payload.ids, deleted_by=actor)
    await db.commit()
    return BulkDeleteResponse(
        deleted_count=deleted,
        message=f"Deleted {deleted} of {len(payload.ids)} item(s)",
    )


@router.post(
    "/release-stale",
    response_model=ReleaseStaleResponse,
)
async def release_stale_claims(
    db: DbSession,
    renderer: Renderer,
    transport: Transport,
    settings: AppSettings,
    max_age_minutes: Annotated[int, Query(ge=1)] = 30,
) -> ReleaseStaleResponse:
    """Fail SENDING items whose claim is older than max_age_minutes."""
    service = EmailQueueService(db, renderer, transport, settings)
    released = await service.release_stale_claims(timedelta(minutes=max_age_minutes))
    return ReleaseStaleResponse(
        released_count=released,
        message=f"Released {released} stale claim(s)",
    )
