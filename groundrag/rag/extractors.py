"""Text extraction from uploaded documents.

Handles:
- MIME type normalisation
- PDF page text and page count
- DOCX paragraph text
- Markdown front matter, headings and rendered text
- HTML boilerplate removal and title capture
- Plain text passthrough
"""
import io
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Tuple

import markdown
import structlog
import yaml
from bs4 import BeautifulSoup
from docx import Document as DocxDocument
from pypdf import PdfReader

from groundrag.errors import ExtractionError, UnsupportedFormat

logger = structlog.get_logger()

PDF = "pdf"
DOCX = "docx"
MARKDOWN = "markdown"
HTML = "html"
PLAINTEXT = "plaintext"

SUPPORTED_FORMATS = (PDF, DOCX, MARKDOWN, HTML, PLAINTEXT)

MIME_ALIASES = {
    "application/pdf": PDF,
    "pdf": PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DOCX,
    "docx": DOCX,
    "text/markdown": MARKDOWN,
    "text/x-markdown": MARKDOWN,
    "markdown": MARKDOWN,
    "md": MARKDOWN,
    "text/html": HTML,
    "application/xhtml+xml": HTML,
    "html": HTML,
    "htm": HTML,
    "text/plain": PLAINTEXT,
    "plaintext": PLAINTEXT,
    "txt": PLAINTEXT,
}

# Elements that carry page chrome rather than content
HTML_BOILERPLATE_TAGS = ["script", "style", "nav", "footer", "header", "noscript"]

# Block-level elements that end a line of text
HTML_BLOCK_TAGS = [
    "p", "div", "section", "article", "li", "tr", "br", "pre", "blockquote",
    "h1", "h2", "h3", "h4", "h5", "h6", "table", "ul", "ol", "dd", "dt",
]

FRONTMATTER_FIELDS = ["title", "tags", "created", "updated", "author"]


@dataclass
class ExtractedDocument:
    """Plain text extracted from a document plus format-specific metadata."""

    text: str
    format: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def normalize_mime_type(mime_type: str) -> str:
    """Map a declared MIME type or short alias to a supported format name.

    Raises:
        UnsupportedFormat: If the type is not in the supported set
    """
    key = (mime_type or "").split(";", 1)[0].strip().lower()
    try:
        return MIME_ALIASES[key]
    except KeyError:
        raise UnsupportedFormat(mime_type) from None


class MarkdownParser:
    """Parser for markdown text with front matter support."""

    # YAML front matter (must be at start of file)
    FRONTMATTER_PATTERN = re.compile(r"\A---\s*\n(.*?)\n---\s*(?:\n|\Z)", re.DOTALL)

    # ATX headings
    HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$", re.MULTILINE)

    def parse(self, content: str) -> Tuple[str, Dict[str, Any]]:
        """Render markdown to plain text and collect its metadata.

        Args:
            content: Raw markdown source

        Returns:
            Tuple of (plain_text, metadata)
        """
        frontmatter, body = self._parse_frontmatter(content)
        headings = self._extract_headings(body)

        html = markdown.markdown(body, extensions=["fenced_code", "tables"])
        text = _html_to_text(BeautifulSoup(html, "html.parser"))

        metadata: Dict[str, Any] = {"headings": headings}
        for name in FRONTMATTER_FIELDS:
            if name in frontmatter:
                value = frontmatter[name]
                # Dates come back from YAML as date objects
                if hasattr(value, "isoformat"):
                    value = value.isoformat()
                metadata[name] = value

        if "title" not in metadata and headings:
            metadata["title"] = headings[0]

        return text, metadata

    def _parse_frontmatter(self, content: str) -> Tuple[Dict[str, Any], str]:
        match = self.FRONTMATTER_PATTERN.match(content)

        if not match:
            return {}, content

        yaml_content = match.group(1)
        try:
            frontmatter = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            logger.warning(
                "frontmatter_parse_error",
                error=str(e),
                yaml_preview=yaml_content[:100],
            )
            frontmatter = None

        if not isinstance(frontmatter, dict):
            frontmatter = {}

        return frontmatter, content[match.end():]

    def _extract_headings(self, content: str) -> List[str]:
        return [m.group(2).strip() for m in self.HEADING_PATTERN.finditer(content)]


def _html_to_text(soup: BeautifulSoup) -> str:
    """Flatten parsed HTML into paragraphs separated by blank lines."""
    for block in soup.find_all(HTML_BLOCK_TAGS):
        block.insert_after("\n")

    lines = []
    for line in soup.get_text().splitlines():
        collapsed = " ".join(line.split())
        if collapsed:
            lines.append(collapsed)
    return "\n\n".join(lines)


def _decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ExtractionError(
            "Document is not valid UTF-8 text",
            details={"position": e.start},
        ) from e


class DocumentProcessor:
    """Extracts plain text from the supported document formats.

    The processor is stateless; it never persists anything.
    """

    def __init__(self):
        self.markdown_parser = MarkdownParser()
        self._handlers: Dict[str, Callable[[bytes], Tuple[str, Dict[str, Any]]]] = {
            PDF: self._extract_pdf,
            DOCX: self._extract_docx,
            MARKDOWN: self._extract_markdown,
            HTML: self._extract_html,
            PLAINTEXT: self._extract_plaintext,
        }

    def extract(self, data: bytes, mime_type: str) -> ExtractedDocument:
        """Extract text and metadata from raw document bytes.

        Args:
            data: Raw document bytes
            mime_type: Declared MIME type or short alias (pdf, docx, markdown, html, plaintext)

        Returns:
            ExtractedDocument with text and metadata

        Raises:
            UnsupportedFormat: If the MIME type is not supported
            ExtractionError: If the parser cannot produce text
        """
        doc_format = normalize_mime_type(mime_type)
        handler = self._handlers[doc_format]

        try:
            text, metadata = handler(data)
        except (ExtractionError, UnsupportedFormat):
            raise
        except Exception as e:
            logger.error(
                "document_extraction_failed",
                format=doc_format,
                size_bytes=len(data),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ExtractionError(
                f"Failed to extract text from {doc_format} document: {e}",
                details={"format": doc_format},
            ) from e

        logger.info(
            "document_extracted",
            format=doc_format,
            size_bytes=len(data),
            text_length=len(text),
        )

        return ExtractedDocument(text=text, format=doc_format, metadata=metadata)

    def _extract_pdf(self, data: bytes) -> Tuple[str, Dict[str, Any]]:
        reader = PdfReader(io.BytesIO(data))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
        text = "\n\n".join(page for page in pages if page)
        return text, {"page_count": len(reader.pages)}

    def _extract_docx(self, data: bytes) -> Tuple[str, Dict[str, Any]]:
        document = DocxDocument(io.BytesIO(data))
        paragraphs = [p.text.strip() for p in document.paragraphs if p.text.strip()]
        return "\n\n".join(paragraphs), {"paragraph_count": len(paragraphs)}

    def _extract_markdown(self, data: bytes) -> Tuple[str, Dict[str, Any]]:
        return self.markdown_parser.parse(_decode_text(data))

    def _extract_html(self, data: bytes) -> Tuple[str, Dict[str, Any]]:
        soup = BeautifulSoup(data, "html.parser")

        metadata: Dict[str, Any] = {}
        if soup.title and soup.title.string:
            metadata["title"] = " ".join(soup.title.string.split())

        for tag in soup(HTML_BOILERPLATE_TAGS):
            tag.decompose()
        if soup.head:
            soup.head.decompose()

        return _html_to_text(soup), metadata

    def _extract_plaintext(self, data: bytes) -> Tuple[str, Dict[str, Any]]:
        return _decode_text(data), {}


# Singleton instance for convenience
_processor_instance = None


def get_processor() -> DocumentProcessor:
    """Get a singleton document processor instance."""
    global _processor_instance
    if _processor_instance is None:
        _processor_instance = DocumentProcessor()
    return _processor_instance
