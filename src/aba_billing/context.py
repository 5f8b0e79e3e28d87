"""Per-request timing and query counting."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import ORMExecuteState

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """Timings and ORM statement count for one request.

    Created per request and passed explicitly; attach() hooks it to the
    request's session and finish() logs the summary and detaches it.
    """

    request_id: str
    method: str
    path: str
    started_at: float = field(default_factory=time.perf_counter)
    timings_ms: dict[str, float] = field(default_factory=dict)
    query_count: int = 0
    _sessions: list[AsyncSession] = field(default_factory=list, repr=False)

    @classmethod
    def start(cls, method: str, path: str, request_id: str | None = None) -> RequestContext:
        return cls(request_id=request_id or uuid.uuid4().hex[:12], method=method, path=path)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000

    @contextmanager
    def phase(self, name: str) -> Iterator[None]:
        """Time a named phase of the request."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timings_ms[name] = (time.perf_counter() - start) * 1000

    def _on_execute(self, orm_execute_state: ORMExecuteState) -> None:
        self.query_count += 1

    def attach(self, session: AsyncSession) -> None:
        event.listen(session.sync_session, "do_orm_execute", self._on_execute)
        self._sessions.append(session)

    def detach(self, session: AsyncSession) -> None:
        if session in self._sessions:
            event.remove(session.sync_session, "do_orm_execute", self._on_execute)
            self._sessions.remove(session)

    def finish(self) -> None:
        for session in list(self._sessions):
            self.detach(session)
        phases = " ".join(f"{name}={ms:.1f}ms" for name, ms in self.timings_ms.items())
        logger.info(
            "[%s] %s %s %.1fms queries=%d %s",
            self.request_id,
            self.method,
            self.path,
            self.elapsed_ms,
            self.query_count,
            phases,
        )
