"""Recursive text chunking with overlap for the RAG pipeline.

Text is split on the coarsest boundary that produces pieces small enough to
embed: paragraphs first, then single lines, then sentences, and raw
character windows as a last resort. Sizes and overlap are counted in
characters to avoid tokenizer dependencies.
"""
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog

from groundrag import config

logger = structlog.get_logger()

Span = Tuple[int, int]

# Coarsest first. Each level is only tried on pieces the previous one left too large.
SEPARATOR_PATTERNS = [
    re.compile(r"\n[ \t]*\n\s*"),  # paragraph break
    re.compile(r"\n"),  # line break
    re.compile(r"(?<=[.!?])\s+"),  # sentence end
]


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int


class TextChunker:
    """Recursive, boundary-aware chunker with character overlap."""

    def __init__(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Maximum chunk length in characters (default from config)
            chunk_overlap: Characters shared with the previous chunk (default from config)
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap

        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ValueError(f"Overlap must not be negative, got {self.chunk_overlap}")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError(
                f"Overlap ({self.chunk_overlap}) must be less than "
                f"chunk size ({self.chunk_size})"
            )

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    @property
    def body_size(self) -> int:
        """Room left in a chunk once the overlap prefix is accounted for."""
        return self.chunk_size - self.chunk_overlap

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into bounded, overlapping chunks.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects in document order
        """
        if not text or not text.strip():
            return []

        spans = self._split_span(text, 0, len(text), 0)

        chunks = []
        for index, (body_start, body_end) in enumerate(spans):
            start = body_start
            if index > 0 and self.chunk_overlap:
                start = max(0, body_start - self.chunk_overlap)
                while start < body_start and text[start].isspace():
                    start += 1

            chunks.append(
                TextChunk(
                    content=text[start:body_end],
                    char_start=start,
                    char_end=body_end,
                    chunk_index=index,
                )
            )

        logger.info(
            "text_chunked",
            text_length=len(text),
            chunk_count=len(chunks),
            avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks),
        )

        return chunks

    def _split_span(self, text: str, start: int, end: int, level: int) -> List[Span]:
        """Recursively split ``text[start:end]`` into spans no longer than the body size."""
        start, end = _trim(text, start, end)
        if start >= end:
            return []

        if end - start <= self.body_size:
            return [(start, end)]

        if level >= len(SEPARATOR_PATTERNS):
            return self._split_characters(start, end)

        pieces = []
        cursor = start
        for match in SEPARATOR_PATTERNS[level].finditer(text, start, end):
            pieces.append((cursor, match.start()))
            cursor = match.end()
        pieces.append((cursor, end))

        if len(pieces) == 1:
            return self._split_span(text, start, end, level + 1)

        spans: List[Span] = []
        for piece_start, piece_end in pieces:
            spans.extend(self._split_span(text, piece_start, piece_end, level + 1))

        return self._merge_spans(spans)

    def _split_characters(self, start: int, end: int) -> List[Span]:
        """Cut a span with no usable boundary into fixed-size windows."""
        size = self.body_size
        return [(i, min(i + size, end)) for i in range(start, end, size)]

    def _merge_spans(self, spans: List[Span]) -> List[Span]:
        """Greedily join neighbouring spans while the result stays under the body size."""
        merged: List[Span] = []
        for span_start, span_end in spans:
            if merged and span_end - merged[-1][0] < self.body_size:
                merged[-1] = (merged[-1][0], span_end)
            else:
                merged.append((span_start, span_end))
        return merged

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }


def _trim(text: str, start: int, end: int) -> Span:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def split_text(
    text: str,
    max_size: Optional[int] = None,
    overlap: Optional[int] = None,
) -> List[str]:
    """Chunk text and return only the chunk strings.

    Args:
        text: Text to chunk
        max_size: Maximum chunk length in characters
        overlap: Characters shared between adjacent chunks

    Returns:
        Ordered list of chunk strings
    """
    chunker = TextChunker(chunk_size=max_size, chunk_overlap=overlap)
    return [chunk.content for chunk in chunker.chunk_text(text)]
