"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from aba_billing.api.routes import email_queue_router, health_router, imports_router, payroll_runs_router
from aba_billing.config import get_settings
from aba_billing.database import dispose_db, init_db
from aba_billing.services.mailer import EmailTransport, SmtpEmailTransport
from aba_billing.services.rendering import PdfRenderer, RenderError

logger = logging.getLogger(__name__)


class UnconfiguredRenderer:
    """Renderer used until a PDF backend is wired in; every render fails."""

    async def render(self, entity_type: str, entity_id: UUID) -> bytes:
        raise RenderError(entity_type, entity_id, "No PDF renderer configured")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    init_db()
    yield
    # Shutdown
    await dispose_db()


def create_app(
    renderer: PdfRenderer | None = None,
    transport: EmailTransport | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    app = FastAPI(
        title="ABA Billing API",
        description="Payroll time-log imports, payroll runs and batch email queue",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.renderer = renderer or UnconfiguredRenderer()
    app.state.transport = transport or SmtpEmailTransport(settings)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        detail = str(exc) if settings.is_development else "An unexpected error occurred"
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": detail,
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(imports_router, prefix="/api/v1")
    app.include_router(payroll_runs_router, prefix="/api/v1")
    app.include_router(email_queue_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
