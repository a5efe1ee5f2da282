"""Tests for document text extraction."""
import io

import pytest
from docx import Document
from pypdf import PdfWriter

from groundrag.errors import ExtractionError, UnsupportedFormat
from groundrag.rag.extractors import (
    DOCX,
    HTML,
    MARKDOWN,
    PDF,
    PLAINTEXT,
    DocumentProcessor,
    normalize_mime_type,
)


@pytest.fixture
def processor():
    return DocumentProcessor()


@pytest.mark.parametrize(
    "mime_type,expected",
    [
        ("application/pdf", PDF),
        ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", DOCX),
        ("text/markdown", MARKDOWN),
        ("text/html; charset=utf-8", HTML),
        ("TEXT/PLAIN", PLAINTEXT),
        ("md", MARKDOWN),
    ],
)
def test_mime_types_are_normalized(mime_type, expected):
    """Test that MIME types, parameters and short aliases map to formats."""
    assert normalize_mime_type(mime_type) == expected


def test_unsupported_format_raises(processor):
    """Test that an unknown MIME type raises UnsupportedFormat."""
    with pytest.raises(UnsupportedFormat) as exc_info:
        processor.extract(b"\x89PNG", "image/png")

    assert exc_info.value.mime_type == "image/png"


def test_plaintext_passthrough(processor):
    """Test that plain text is decoded as-is, dropping a BOM."""
    doc = processor.extract("\ufeffHello world.\nSecond line.".encode("utf-8"), "text/plain")

    assert doc.text == "Hello world.\nSecond line."
    assert doc.format == PLAINTEXT
    assert doc.metadata == {}


def test_invalid_utf8_raises_extraction_error(processor):
    """Test that undecodable text is an extraction error."""
    with pytest.raises(ExtractionError):
        processor.extract(b"\xff\xfe\xfa broken", "text/plain")


def test_html_strips_boilerplate(processor):
    """Test that scripts, styles, navigation and footers are removed."""
    html = b"""
    <html>
      <head><title>Branch Hours</title><style>body { color: red; }</style></head>
      <body>
        <nav>Home | About</nav>
        <h1>Opening hours</h1>
        <p>Open <b>daily</b> from nine.</p>
        <script>trackVisitor();</script>
        <footer>Copyright notice</footer>
      </body>
    </html>
    """
    doc = processor.extract(html, "text/html")

    assert doc.metadata["title"] == "Branch Hours"
    assert "Opening hours" in doc.text
    assert "Open daily from nine." in doc.text
    for boilerplate in ("Home | About", "trackVisitor", "Copyright", "color: red"):
        assert boilerplate not in doc.text


def test_html_blocks_become_paragraphs(processor):
    """Test that block elements end up on separate paragraphs."""
    doc = processor.extract(b"<p>One</p><p>Two</p><ul><li>Three</li></ul>", "text/html")

    assert doc.text == "One\n\nTwo\n\nThree"


def test_markdown_front_matter_and_headings(processor):
    """Test that markdown front matter and headings become metadata."""
    source = b"""---
title: Library Guide
tags: [library, toronto]
---

# Getting a card

Bring **photo ID** to any branch.

## Borrowing

Loans last `three` weeks.
"""
    doc = processor.extract(source, "text/markdown")

    assert doc.metadata["title"] == "Library Guide"
    assert doc.metadata["tags"] == ["library", "toronto"]
    assert doc.metadata["headings"] == ["Getting a card", "Borrowing"]
    assert "Bring photo ID to any branch." in doc.text
    assert "#" not in doc.text
    assert "**" not in doc.text
    assert "title: Library Guide" not in doc.text


def test_markdown_title_falls_back_to_first_heading(processor):
    """Test that the first heading is used as title without front matter."""
    doc = processor.extract(b"# Parks\n\nThere are many parks.", "markdown")

    assert doc.metadata["title"] == "Parks"
    assert doc.text == "Parks\n\nThere are many parks."


def test_docx_paragraphs(processor):
    """Test that DOCX paragraphs are extracted in order."""
    document = Document()
    document.add_paragraph("First paragraph.")
    document.add_paragraph("")
    document.add_paragraph("Second paragraph.")
    buffer = io.BytesIO()
    document.save(buffer)

    doc = processor.extract(
        buffer.getvalue(),
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    )

    assert doc.text == "First paragraph.\n\nSecond paragraph."
    assert doc.metadata["paragraph_count"] == 2


def test_pdf_page_count(processor):
    """Test that a PDF is read and its pages counted."""
    writer = PdfWriter()
    writer.add_blank_page(width=200, height=200)
    writer.add_blank_page(width=200, height=200)
    buffer = io.BytesIO()
    writer.write(buffer)

    doc = processor.extract(buffer.getvalue(), "application/pdf")

    assert doc.metadata["page_count"] == 2
    assert doc.text == ""


def test_corrupt_pdf_raises_extraction_error(processor):
    """Test that a corrupt PDF is an extraction error, not a crash."""
    with pytest.raises(ExtractionError):
        processor.extract(b"definitely not a pdf", "application/pdf")


def test_corrupt_docx_raises_extraction_error(processor):
    """Test that a corrupt DOCX is an extraction error."""
    with pytest.raises(ExtractionError):
        processor.extract(
            b"not a zip archive",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        )
