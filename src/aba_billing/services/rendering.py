"""PDF rendering collaborator seam."""

from __future__ import annotations

from typing import Protocol
from uuid import UUID


class RenderError(Exception):
    """Raised when a document cannot be rendered for one entity."""

    def __init__(self, entity_type: str, entity_id: UUID, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Failed to render {entity_type} {entity_id}: {reason}")


class PdfRenderer(Protocol):
    """Protocol for the PDF rendering engine.

    Rendering itself lives outside this package; the email queue only needs
    bytes back or a RenderError. Any other exception is treated as a
    render failure for that one item as well.
    """

    async def render(self, entity_type: str, entity_id: UUID) -> bytes:
        """Render the entity to PDF bytes."""
        ...
