"""Payroll run API endpoints."""

from datetime import datetime, timezone
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, HTTPException, Path, Query, status
from fastapi.responses import Response

from aba_billing.api.dependencies import Actor, Context, DbSession
from aba_billing.api.schemas import (
    ErrorResponse,
    PaymentCreate,
    PaymentResponse,
    PayrollRunCreate,
    PayrollRunListResponse,
    PayrollRunResponse,
    PayrollRunUpdate,
)
from aba_billing.services.import_service import ImportNotFoundError
from aba_billing.services.payroll_run_service import (
    NoImportRowsError,
    PayrollRunNotFoundError,
    PayrollRunService,
)
from aba_billing.services.state_machine import InvalidTransitionError

router = APIRouter(prefix="/payroll/runs", tags=["payroll-runs"])


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


@router.post(
    "",
    response_model=PayrollRunResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def create_payroll_run(
    db: DbSession,
    context: Context,
    actor: Actor,
    payload: PayrollRunCreate,
) -> PayrollRunResponse:
    """Aggregate an import's linked rows into a DRAFT payroll run."""
    service = PayrollRunService(db)
    try:
        with context.phase("aggregate"):
            run = await service.create_run(
                name=payload.name,
                source_import_id=payload.source_import_id,
                employee_ids=payload.employee_ids,
                employee_rates=payload.employee_rates,
                period_start=payload.period_start,
                period_end=payload.period_end,
                created_by=actor,
            )
    except ImportNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except (NoImportRowsError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.get(
    "",
    response_model=PayrollRunListResponse,
)
async def list_payroll_runs(
    db: DbSession,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 25,
) -> PayrollRunListResponse:
    """List payroll runs, newest first."""
    runs, total = await PayrollRunService(db).list_runs(
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return PayrollRunListResponse(
        items=[PayrollRunResponse.model_validate(run) for run in runs],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{run_id}",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_payroll_run(
    db: DbSession,
    run_id: Annotated[UUID, Path()],
) -> PayrollRunResponse:
    try:
        run = await PayrollRunService(db).get_run(run_id)
    except PayrollRunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return PayrollRunResponse.model_validate(run)


@router.patch(
    "/{run_id}",
    response_model=PayrollRunResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def update_payroll_run(
    db: DbSession,
    run_id: Annotated[UUID, Path()],
    payload: PayrollRunUpdate,
) -> PayrollRunResponse:
    """Rename, re-date or change the status of a run."""
    try:
        run = await PayrollRunService(db).update_run(
            run_id,
            status=payload.status,
            name=payload.name,
            period_start=payload.period_start,
            period_end=payload.period_end,
        )
    except PayrollRunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{run_id}/payments",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def record_payment(
    db: DbSession,
    actor: Actor,
    run_id: Annotated[UUID, Path()],
    payload: PaymentCreate,
) -> PaymentResponse:
    """Record a payment against one employee's line."""
    try:
        payment = await PayrollRunService(db).record_payment(
            run_id,
            employee_id=payload.employee_id,
            amount=payload.amount,
            paid_at=_naive_utc(payload.paid_at),
            method=payload.method,
            reference=payload.reference,
            notes=payload.notes,
            run_line_id=payload.run_line_id,
            created_by=actor,
        )
    except PayrollRunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await db.commit()
    return PaymentResponse.model_validate(payment)


@router.delete(
    "/{run_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_payroll_run(
    db: DbSession,
    run_id: Annotated[UUID, Path()],
) -> Response:
    """Delete a run with its lines and payments."""
    try:
        await PayrollRunService(db).delete_run(run_id)
    except PayrollRunNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
