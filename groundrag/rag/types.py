"""Shared retrieval result types."""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class RetrievedChunk:
    """A retrieved chunk with the scores that ranked it.

    ``similarity`` is the cosine similarity from vector search, or ``None``
    when the chunk was found only by keyword search. ``combined_score`` is
    set when hybrid ranking was used.
    """

    chunk_id: str
    content: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    similarity: Optional[float] = None
    combined_score: Optional[float] = None

    @property
    def score(self) -> float:
        """The score used for final ranking."""
        if self.combined_score is not None:
            return self.combined_score
        return self.similarity if self.similarity is not None else 0.0

    @property
    def document_id(self) -> Optional[str]:
        return self.metadata.get("document_id")

    @property
    def source(self) -> str:
        """Get a formatted source string for display."""
        name = self.metadata.get("filename") or self.metadata.get("title") or self.document_id or self.chunk_id
        chunk_index = self.metadata.get("chunk_index")
        total = self.metadata.get("total_chunks")
        if chunk_index is not None and total:
            return f"{name} (part {chunk_index + 1}/{total})"
        return str(name)

    def to_source(self, label: int) -> Dict[str, Any]:
        """Citation payload for API responses and stored messages."""
        preview = self.content[:200] + "..." if len(self.content) > 200 else self.content
        return {
            "label": label,
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "source": self.source,
            "content_preview": preview,
            "similarity": round(self.similarity, 4) if self.similarity is not None else None,
            "score": round(self.score, 4),
        }


def rank(results: List[RetrievedChunk]) -> List[RetrievedChunk]:
    """Order by final score descending, ties broken by chunk id."""
    return sorted(results, key=lambda r: (-r.score, r.chunk_id))
