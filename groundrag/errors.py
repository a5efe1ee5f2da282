"""Exception hierarchy for the RAG pipeline.

Every error carries a human-readable message plus an optional ``details``
dict that is safe to log and to return to API callers.
"""
from typing import Any, Dict, List, Optional


class GroundRAGError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class UnsupportedFormat(GroundRAGError):
    """Raised when a document's MIME type is not in the supported set."""

    def __init__(self, mime_type: str, details: Optional[Dict[str, Any]] = None):
        details = details or {}
        details["mime_type"] = mime_type
        self.mime_type = mime_type
        super().__init__(f"Unsupported document format: {mime_type}", details)


class ExtractionError(GroundRAGError):
    """Raised when a parser cannot produce text from a document."""


class EmbeddingServiceError(GroundRAGError):
    """Raised when the embedding provider fails or times out."""


class DimensionMismatch(GroundRAGError):
    """Raised when a vector's dimension differs from the configured one."""

    def __init__(self, expected: int, actual: int, details: Optional[Dict[str, Any]] = None):
        details = details or {}
        details.update({"expected": expected, "actual": actual})
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            details,
        )


class VectorStoreError(GroundRAGError):
    """Raised when the vector index cannot serve a read or write."""


class GenerationError(GroundRAGError):
    """Raised when the language model call fails.

    The retrieved context is kept on the exception so that callers can retry
    generation without retrieving again.
    """

    def __init__(
        self,
        message: str,
        results: Optional[List[Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.results = results or []
        super().__init__(message, details)


class RerankParseError(GroundRAGError):
    """Raised when a re-ranking answer cannot be parsed into valid indices."""
