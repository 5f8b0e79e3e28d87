"""Payroll import API endpoints."""

from datetime import date
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, File, Form, HTTPException, Path, Query, UploadFile, status
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from aba_billing.api.dependencies import Actor, AppSettings, Context, DbSession
from aba_billing.api.schemas import (
    ColumnMappingSchema,
    ErrorResponse,
    ImportSummaryResponse,
    PayrollImportListResponse,
    PayrollImportResponse,
    PayrollImportRowResponse,
    PreviewResponse,
    TimeLogMappingSchema,
)
from aba_billing.ingestion import ColumnMapping, FileFormatError, MappingError, TimeLogMapping, preview_tabular
from aba_billing.services.import_service import (
    DEFAULT_TIMEZONE,
    DuplicateImportError,
    ImportNotFoundError,
    ImportService,
    ImportSummary,
)
from aba_billing.services.state_machine import InvalidTransitionError

router = APIRouter(prefix="/payroll/imports", tags=["payroll-imports"])


async def _read_upload(file: UploadFile) -> tuple[str, bytes]:
    content = await file.read()
    if not file.filename or not content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File is required",
        )
    return file.filename, content


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _not_found(exc: ImportNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _duplicate_response(exc: DuplicateImportError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={
            "detail": str(exc),
            "code": "DUPLICATE_IMPORT",
            "importId": str(exc.existing_import_id),
        },
    )


def _summary_response(summary: ImportSummary) -> ImportSummaryResponse:
    message = f"Imported {summary.imported_rows} of {summary.total_rows} rows"
    if summary.skipped_rows:
        message += f" ({summary.skipped_rows} skipped)"
    return ImportSummaryResponse(
        import_id=summary.import_id,
        strategy=summary.strategy,
        total_rows=summary.total_rows,
        imported_rows=summary.imported_rows,
        skipped_rows=summary.skipped_rows,
        warnings=summary.warnings,
        message=message,
    )


# ============================================================================
# Upload
# ============================================================================


@router.post(
    "/preview",
    response_model=PreviewResponse,
    responses={400: {"model": ErrorResponse}},
)
async def preview_import(
    file: Annotated[UploadFile, File()],
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> PreviewResponse:
    """Show the columns and first rows of a file before mapping it."""
    file_name, content = await _read_upload(file)
    try:
        preview = preview_tabular(content, file_name, limit)
    except FileFormatError as e:
        raise _bad_request(e) from e
    return PreviewResponse(file_name=file_name, **preview)


@router.post(
    "",
    response_model=ImportSummaryResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def save_import(
    db: DbSession,
    context: Context,
    actor: Actor,
    settings: AppSettings,
    file: Annotated[UploadFile, File()],
    mapping: Annotated[str, Form()],
    period_start: Annotated[date | None, Form()] = None,
    period_end: Annotated[date | None, Form()] = None,
) -> ImportSummaryResponse | JSONResponse:
    """Reconcile an uploaded time log into shift rows and save it as a DRAFT import."""
    file_name, content = await _read_upload(file)
    if period_start and period_end and period_end < period_start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Period end must not be before period start",
        )
    try:
        column_mapping = ColumnMapping.from_dict(
            ColumnMappingSchema.model_validate_json(mapping).model_dump()
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid column mapping",
        ) from e

    service = ImportService(db, settings)
    try:
        with context.phase("import"):
            summary = await service.save_import(
                file_name,
                content,
                column_mapping,
                period_start=period_start,
                period_end=period_end,
                uploaded_by=actor,
            )
    except DuplicateImportError as e:
        return _duplicate_response(e)
    except (MappingError, FileFormatError) as e:
        raise _bad_request(e) from e

    with context.phase("commit"):
        await db.commit()
    return _summary_response(summary)


@router.post(
    "/process",
    response_model=ImportSummaryResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def process_time_logs(
    db: DbSession,
    context: Context,
    actor: Actor,
    settings: AppSettings,
    file: Annotated[UploadFile, File()],
    mapping: Annotated[str, Form()],
    timezone: Annotated[str, Form()] = DEFAULT_TIMEZONE,
) -> ImportSummaryResponse | JSONResponse:
    """Store raw punches from an uploaded log, skipping duplicates."""
    file_name, content = await _read_upload(file)
    try:
        schema = TimeLogMappingSchema.model_validate_json(mapping)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid time log mapping",
        ) from e

    service = ImportService(db, settings)
    try:
        with context.phase("import"):
            summary = await service.process_time_logs(
                file_name,
                content,
                TimeLogMapping(**schema.model_dump()),
                tz_name=timezone,
                uploaded_by=actor,
            )
    except DuplicateImportError as e:
        return _duplicate_response(e)
    except (MappingError, FileFormatError, ValueError) as e:
        raise _bad_request(e) from e

    await db.commit()
    return _summary_response(summary)


# ============================================================================
# Reads and lifecycle
# ============================================================================


@router.get(
    "",
    response_model=PayrollImportListResponse,
)
async def list_imports(
    db: DbSession,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
) -> PayrollImportListResponse:
    """List imports, most recent first."""
    imports, total = await ImportService(db).list_imports(
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return PayrollImportListResponse(
        items=[PayrollImportResponse.model_validate(item) for item in imports],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{import_id}",
    response_model=PayrollImportResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_import(
    db: DbSession,
    import_id: Annotated[UUID, Path()],
) -> PayrollImportResponse:
    try:
        payroll_import = await ImportService(db).get_import(import_id)
    except ImportNotFoundError as e:
        raise _not_found(e) from e
    return PayrollImportResponse.model_validate(payroll_import)


@router.get(
    "/{import_id}/rows",
    response_model=list[PayrollImportRowResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_import_rows(
    db: DbSession,
    import_id: Annotated[UUID, Path()],
) -> list[PayrollImportRowResponse]:
    """Reconciled rows of an import in row order."""
    try:
        rows = await ImportService(db).list_rows(import_id)
    except ImportNotFoundError as e:
        raise _not_found(e) from e
    return [PayrollImportRowResponse.model_validate(row) for row in rows]


@router.post(
    "/{import_id}/finalize",
    response_model=PayrollImportResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def finalize_import(
    db: DbSession,
    import_id: Annotated[UUID, Path()],
) -> PayrollImportResponse:
    """Finalize a DRAFT import."""
    try:
        payroll_import = await ImportService(db).finalize_import(import_id)
    except ImportNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    await db.commit()
    return PayrollImportResponse.model_validate(payroll_import)


@router.delete(
    "/{import_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_import(
    db: DbSession,
    import_id: Annotated[UUID, Path()],
) -> Response:
    """Delete an import with its rows and time logs."""
    try:
        await ImportService(db).delete_import(import_id)
    except ImportNotFoundError as e:
        raise _not_found(e) from e

    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
