"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aba_billing.config import Settings, get_settings
from aba_billing.context import RequestContext
from aba_billing.database import get_session_factory
from aba_billing.services.mailer import EmailTransport
from aba_billing.services.rendering import PdfRenderer


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory dependency (overridden in tests)."""
    return get_session_factory()


async def get_request_context(request: Request) -> AsyncGenerator[RequestContext, None]:
    """Request-scoped timing context, logged when the request ends."""
    context = RequestContext.start(
        request.method,
        request.url.path,
        request.headers.get("x-request-id"),
    )
    try:
        yield context
    finally:
        context.finish()


async def get_db_session(
    context: Annotated[RequestContext, Depends(get_request_context)],
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_maker)],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with session_maker() as session:
        context.attach(session)
        try:
            yield session
        finally:
            context.detach(session)
            await session.close()


async def get_actor(x_user_id: Annotated[str | None, Header()] = None) -> str | None:
    """Acting user from the X-User-ID header, if any."""
    return x_user_id.strip() if x_user_id and x_user_id.strip() else None


def get_renderer(request: Request) -> PdfRenderer:
    return request.app.state.renderer


def get_transport(request: Request) -> EmailTransport:
    return request.app.state.transport


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Context = Annotated[RequestContext, Depends(get_request_context)]
Actor = Annotated[str | None, Depends(get_actor)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Renderer = Annotated[PdfRenderer, Depends(get_renderer)]
Transport = Annotated[EmailTransport, Depends(get_transport)]
