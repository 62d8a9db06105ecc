"""
tradedocs -- Attachment Pipeline

Renders a document to bytes through the injected Renderer, persists the
bytes through the injected ArtifactStore and returns an ArtifactRef that can
be attached to an outbound email.

Keys are collision resistant:

    invoices/<business_id>/<number>_<document_id>_<YYYYmmddHHMMSSffffff>.pdf

Any renderer or store failure is raised as DocumentPreparationError.  The
caller decides whether to abort the send or deliver without the attachment.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from .error_classifier import preparation_error
from .errors import DocumentPreparationError
from .interfaces import ArtifactStore, Renderer
from .models import ArtifactRef, BusinessProfile, Document, LineItem
from .templates import TemplateEngine

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_number(number: str) -> str:
    """Make a document number safe for use inside a storage key."""
    cleaned = re.sub(r"[^A-Za-z0-9_-]+", "_", number or "").strip("_")
    return cleaned or "document"


def build_artifact_key(document: Document, extension: str, when: datetime) -> str:
    return (
        f"{document.kind.value}s/{document.business_id}/"
        f"{sanitize_number(document.number)}_{document.id}_{when.strftime('%Y%m%d%H%M%S%f')}"
        f".{extension}"
    )


def attachment_filename(document: Document, extension: str) -> str:
    """'INVOICE-1001.pdf' style name shown to the client."""
    return f"{document.kind.value.upper()}-{sanitize_number(document.number)}.{extension}"


class AttachmentPipeline:
    """Render + persist a document, returning a reference usable as an attachment."""

    def __init__(
        self,
        renderer: Renderer,
        store: ArtifactStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.renderer = renderer
        self.store = store
        self._clock = clock

    def render(
        self,
        document: Document,
        business: BusinessProfile,
        line_items: list[LineItem],
        extras: dict[str, Any] | None = None,
    ) -> ArtifactRef:
        """Render ``document`` and store it.

        Raises:
            DocumentPreparationError: The renderer or the artifact store failed.
        """
        extension = getattr(self.renderer, "extension", "pdf")
        content_type = getattr(self.renderer, "content_type", "application/pdf")

        try:
            data = self.renderer.render(document, business, line_items, extras or {})
        except Exception as exc:
            logger.warning("Rendering %s failed: %s", document.display_name, exc)
            raise DocumentPreparationError(preparation_error(exc).as_user_message(), cause=exc) from exc

        if not data:
            raise DocumentPreparationError(
                preparation_error("renderer returned no content").as_user_message()
            )

        key = build_artifact_key(document, extension, self._clock())
        try:
            path_ref = self.store.put(key, data, content_type)
        except Exception as exc:
            logger.warning("Storing %s failed: %s", key, exc)
            raise DocumentPreparationError(preparation_error(exc).as_user_message(), cause=exc) from exc

        logger.debug("Stored %s (%d bytes) at %s", document.display_name, len(data), path_ref)
        return ArtifactRef(
            key=key,
            path_ref=path_ref,
            filename=attachment_filename(document, extension),
            content_type=content_type,
            content=data,
        )


# ---------------------------------------------------------------------------
# Local defaults
# ---------------------------------------------------------------------------

class HtmlDocumentRenderer:
    """Default renderer: the printable HTML page from ``document.html``.

    Output depends only on its inputs, so the same document renders to the
    same bytes.
    """

    content_type = "text/html"
    extension = "html"

    def __init__(self, templates: TemplateEngine):
        self.templates = templates

    def render(
        self,
        document: Document,
        business: BusinessProfile,
        line_items: list[LineItem],
        extras: dict[str, Any],
    ) -> bytes:
        return self.templates.render_document_html(document, business, line_items, extras).encode("utf-8")


class FileArtifactStore:
    """Artifact store backed by a local directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return str(path)

    def get(self, path_ref: str) -> bytes:
        return Path(path_ref).read_bytes()
