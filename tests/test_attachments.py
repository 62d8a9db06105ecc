"""Tests for tradedocs.attachments -- render, persist, reference.

Covers:
- Artifact key layout and number sanitising
- Client-facing attachment filenames
- Renderer / store failures raised as DocumentPreparationError
- Local HTML renderer and file store
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from tradedocs.attachments import (
    AttachmentPipeline,
    FileArtifactStore,
    HtmlDocumentRenderer,
    attachment_filename,
    build_artifact_key,
    sanitize_number,
)
from tradedocs.errors import DocumentPreparationError
from tradedocs.models import Document, DocumentKind, LineItem

NOW = datetime(2026, 3, 14, 9, 0, tzinfo=timezone.utc)


def _doc(number="1001", kind=DocumentKind.INVOICE):
    return Document(id="inv-1", kind=kind, number=number, client_id="cli-1",
                    business_id="biz-1", total=Decimal("1510.00"))


class BrokenStore:
    def put(self, key, data, content_type):
        raise OSError("bucket unavailable")

    def get(self, path_ref):
        raise OSError("bucket unavailable")


# ============================================================================
# Keys and filenames
# ============================================================================

class TestKeys:

    def test_key_layout(self):
        key = build_artifact_key(_doc(), "pdf", datetime(2026, 3, 14, 9, 0, 5, 123456, tzinfo=timezone.utc))
        assert key == "invoices/biz-1/1001_inv-1_20260314090005123456.pdf"

    def test_quote_prefix(self):
        key = build_artifact_key(_doc(kind=DocumentKind.QUOTE), "pdf", NOW)
        assert key.startswith("quotes/biz-1/")

    def test_keys_differ_per_render(self):
        first = build_artifact_key(_doc(), "pdf", NOW)
        second = build_artifact_key(_doc(), "pdf", NOW.replace(microsecond=1))
        assert first != second

    @pytest.mark.parametrize("number, expected", [
        ("1001", "1001"),
        ("INV/2026/07", "INV_2026_07"),
        ("  Q 12 ", "Q_12"),
        ("../../etc", "etc"),
        ("", "document"),
        ("///", "document"),
    ])
    def test_sanitize_number(self, number, expected):
        assert sanitize_number(number) == expected

    def test_attachment_filename(self):
        assert attachment_filename(_doc(), "pdf") == "INVOICE-1001.pdf"
        assert attachment_filename(_doc("Q/7", DocumentKind.QUOTE), "html") == "QUOTE-Q_7.html"


# ============================================================================
# Pipeline
# ============================================================================

class TestPipeline:

    def test_render_and_store(self, renderer, artifacts, clock, business):
        pipeline = AttachmentPipeline(renderer, artifacts, clock=clock)

        ref = pipeline.render(_doc(), business, [])

        assert ref.key == "invoices/biz-1/1001_inv-1_20260314090000000000.pdf"
        assert ref.path_ref == f"mem://{ref.key}"
        assert ref.filename == "INVOICE-1001.pdf"
        assert ref.content_type == "application/pdf"
        assert artifacts.get(ref.path_ref) == b"%PDF-1.7 fake"

        attachment = ref.as_attachment()
        assert attachment.filename == "INVOICE-1001.pdf"
        assert attachment.content == b"%PDF-1.7 fake"

    def test_renderer_failure(self, renderer, artifacts, business):
        renderer.fail = RuntimeError("font missing")
        pipeline = AttachmentPipeline(renderer, artifacts)

        with pytest.raises(DocumentPreparationError) as exc_info:
            pipeline.render(_doc(), business, [])

        assert exc_info.value.title == "Couldn't Prepare Document"
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert artifacts.objects == {}

    def test_empty_output(self, renderer, artifacts, business):
        renderer.output = b""
        pipeline = AttachmentPipeline(renderer, artifacts)

        with pytest.raises(DocumentPreparationError) as exc_info:
            pipeline.render(_doc(), business, [])

        assert exc_info.value.cause is None
        assert artifacts.objects == {}

    def test_store_failure(self, renderer, business):
        pipeline = AttachmentPipeline(renderer, BrokenStore())
        with pytest.raises(DocumentPreparationError) as exc_info:
            pipeline.render(_doc(), business, [])
        assert isinstance(exc_info.value.cause, OSError)


# ============================================================================
# Local defaults
# ============================================================================

class TestLocalDefaults:

    def test_html_renderer(self, templates, business):
        renderer = HtmlDocumentRenderer(templates)
        items = [LineItem("Switchboard upgrade", Decimal("1"), Decimal("1200.00"))]

        output = renderer.render(_doc(), business, items, {"notes": "Thanks for your business"})

        page = output.decode("utf-8")
        assert "INVOICE 1001" in page
        assert "Sparky Electrical" in page
        assert "$1,200.00" in page
        assert "$1,510.00" in page
        assert "Thanks for your business" in page

    def test_html_renderer_is_deterministic(self, templates, business):
        renderer = HtmlDocumentRenderer(templates)
        assert renderer.render(_doc(), business, [], {}) == renderer.render(_doc(), business, [], {})

    def test_html_renderer_escapes_content(self, templates, business):
        business.name = "Tom & Sons <Electrical>"
        page = HtmlDocumentRenderer(templates).render(_doc(), business, [], {}).decode("utf-8")
        assert "Tom &amp; Sons &lt;Electrical&gt;" in page

    def test_file_store_round_trip(self, tmp_path):
        store = FileArtifactStore(tmp_path / "artifacts")

        path_ref = store.put("invoices/biz-1/1001_inv-1_x.pdf", b"data", "application/pdf")

        assert path_ref == str(tmp_path / "artifacts" / "invoices" / "biz-1" / "1001_inv-1_x.pdf")
        assert store.get(path_ref) == b"data"

    def test_pipeline_with_local_defaults(self, tmp_path, templates, business, clock):
        pipeline = AttachmentPipeline(HtmlDocumentRenderer(templates), FileArtifactStore(tmp_path), clock=clock)

        ref = pipeline.render(_doc(), business, [])

        assert ref.filename == "INVOICE-1001.html"
        assert ref.content_type == "text/html"
        assert (tmp_path / ref.key).read_bytes() == ref.content
