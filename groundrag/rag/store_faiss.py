"""FAISS vector store for semantic search.

Handles:
- Fixed-dimension cosine index (inner product over normalised vectors)
- Idempotent upserts keyed by string ids
- Exact-match metadata filtering and thresholded top-K queries
- Deletion by id or by metadata filter
- Index and metadata persistence
"""
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import faiss
import numpy as np
import structlog

from groundrag import config
from groundrag.errors import DimensionMismatch, VectorStoreError
from groundrag.rag.embedder import get_embedder

logger = structlog.get_logger()

INDEX_TYPE = "IndexIDMap2(IndexFlatIP)"
METRIC = "cosine"


@dataclass
class VectorRecord:
    """A vector with its string id and scalar metadata."""

    id: str
    vector: Sequence[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A query hit."""

    id: str
    metadata: Dict[str, Any]
    similarity: float


def _normalize(vectors: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return vectors / norms


def matches_filter(metadata: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    if not filters:
        return True
    return all(key in metadata and metadata[key] == value for key, value in filters.items())


class FAISSVectorStore:
    """FAISS-based cosine vector store with string ids and metadata."""

    def __init__(
        self,
        index_dir: Path = None,
        dimension: Optional[int] = None,
        embedding_model: str = None,
        batch_size: Optional[int] = None,
        embedder=None,
    ):
        """Initialize the FAISS vector store.

        Args:
            index_dir: Directory to store index and metadata (default: DATA_DIR)
            dimension: Vector dimension (default from config, detected when unset)
            embedding_model: Embedding model name recorded with the index
            batch_size: Records written per batch on upsert (default from config)
            embedder: EmbeddingClient used to detect the dimension when unset
        """
        self.index_dir = Path(index_dir) if index_dir else config.DATA_DIR
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.batch_size = batch_size or config.VECTOR_UPSERT_BATCH_SIZE
        self.embedder = embedder

        self.index_path = self.index_dir / config.VECTOR_INDEX_PATH.name
        self.metadata_path = self.index_dir / config.METADATA_PATH.name

        self.index: Optional[faiss.Index] = None
        self.dimension: Optional[int] = dimension or config.EMBEDDING_DIMENSION or None
        self.metadata: Dict[str, Any] = {}

        self._ids: Dict[str, int] = {}
        self._keys: Dict[int, str] = {}
        self._records: Dict[str, Dict[str, Any]] = {}
        self._next_id = 0

        logger.info(
            "faiss_store_initialized",
            index_dir=str(self.index_dir),
            embedding_model=self.embedding_model,
            dimension=self.dimension,
        )

    @property
    def count(self) -> int:
        return len(self._records)

    async def get_embedding_dimension(self) -> int:
        """Detect embedding dimension by embedding a test string.

        Raises:
            VectorStoreError: If no embedder is available to ask
        """
        if self.embedder is None:
            raise VectorStoreError(
                "Embedding dimension is not configured and no embedder is available to detect it"
            )

        logger.info("detecting_embedding_dimension", model=self.embedding_model)
        vector = await self.embedder.embed_query("test")
        dimension = len(vector)
        logger.info("embedding_dimension_detected", dimension=dimension)
        return dimension

    async def init_new_index(self, dimension: Optional[int] = None) -> None:
        """Initialize a new, empty index.

        Args:
            dimension: Embedding dimension (configured or auto-detected if not provided)
        """
        if dimension is None:
            dimension = self.dimension or await self.get_embedding_dimension()

        self.dimension = dimension
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimension))
        self._ids, self._keys, self._records = {}, {}, {}
        self._next_id = 0

        self.metadata = {
            "embedding_model": self.embedding_model,
            "embedding_dimension": self.dimension,
            "index_type": INDEX_TYPE,
            "metric": METRIC,
            "vector_count": 0,
        }

        logger.info(
            "faiss_index_initialized",
            dimension=self.dimension,
            index_type=INDEX_TYPE,
        )

    async def load_index(self) -> None:
        """Load an existing index from disk.

        Raises:
            FileNotFoundError: If index files don't exist
            DimensionMismatch: If the stored dimension differs from the configured one
            VectorStoreError: If loading fails
        """
        if not self.index_path.exists():
            raise FileNotFoundError(f"Index not found: {self.index_path}")

        if not self.metadata_path.exists():
            raise FileNotFoundError(f"Metadata not found: {self.metadata_path}")

        try:
            with open(self.metadata_path, "r") as f:
                stored = json.load(f)
        except (OSError, ValueError) as e:
            raise VectorStoreError(f"Failed to load metadata: {e}") from e

        stored_dim = stored.get("embedding_dimension")
        expected_dim = self.dimension
        if expected_dim is None and self.embedder is not None:
            expected_dim = await self.get_embedding_dimension()

        if expected_dim is not None and expected_dim != stored_dim:
            raise DimensionMismatch(
                expected_dim,
                stored_dim,
                details={"stored_model": stored.get("embedding_model"), "hint": "rebuild the index"},
            )

        try:
            self.index = faiss.read_index(str(self.index_path))
        except RuntimeError as e:
            raise VectorStoreError(f"Failed to load FAISS index: {e}") from e

        self.dimension = stored_dim
        self._next_id = stored.get("next_id", 0)
        self._records = {}
        self._ids = {}
        self._keys = {}
        for key, entry in stored.get("records", {}).items():
            self._ids[key] = entry["int_id"]
            self._keys[entry["int_id"]] = key
            self._records[key] = entry["metadata"]

        self.metadata = {k: v for k, v in stored.items() if k not in ("records", "next_id")}

        logger.info(
            "faiss_index_loaded",
            dimension=self.dimension,
            vector_count=self.index.ntotal,
            model=stored.get("embedding_model"),
        )

    async def save_index(self) -> None:
        """Save the index and its metadata to disk.

        Raises:
            VectorStoreError: If there is no index or the save fails
        """
        index = self._require_index()

        self.index_dir.mkdir(parents=True, exist_ok=True)
        self.metadata["vector_count"] = index.ntotal

        payload = dict(self.metadata)
        payload["next_id"] = self._next_id
        payload["records"] = {
            key: {"int_id": self._ids[key], "metadata": metadata}
            for key, metadata in self._records.items()
        }

        try:
            faiss.write_index(index, str(self.index_path))
            with open(self.metadata_path, "w") as f:
                json.dump(payload, f)
        except (RuntimeError, OSError) as e:
            raise VectorStoreError(f"Failed to save vector index: {e}") from e

        logger.info(
            "faiss_index_saved",
            index_path=str(self.index_path),
            vector_count=index.ntotal,
        )

    async def upsert(self, records: Sequence[VectorRecord]) -> int:
        """Insert or replace records by id.

        All dimensions are checked before anything is written, so a bad
        record leaves the store unchanged. Records are written in batches;
        if the index rejects a batch, the batches already written are
        undone and replaced vectors are restored before the error is raised.

        Args:
            records: Records to write

        Returns:
            Number of distinct ids written

        Raises:
            DimensionMismatch: If any vector has the wrong dimension
            VectorStoreError: If the index rejects the write
        """
        index = self._require_index()

        if not records:
            return 0

        for record in records:
            if len(record.vector) != self.dimension:
                raise DimensionMismatch(
                    self.dimension, len(record.vector), details={"id": record.id}
                )

        # Last write wins for ids repeated within one call
        unique = list({record.id: record for record in records}.values())

        previous = {
            record.id: (
                self._ids[record.id],
                index.reconstruct(self._ids[record.id]),
                self._records[record.id],
            )
            for record in unique
            if record.id in self._ids
        }
        next_id = self._next_id
        touched: List[int] = []

        for start in range(0, len(unique), self.batch_size):
            batch = unique[start : start + self.batch_size]

            existing = [self._ids[r.id] for r in batch if r.id in self._ids]
            int_ids = []
            for record in batch:
                int_id = self._ids.get(record.id)
                if int_id is None:
                    int_id = self._next_id
                    self._next_id += 1
                int_ids.append(int_id)
            touched.extend(int_ids)

            vectors = _normalize(np.array([r.vector for r in batch], dtype=np.float32))

            try:
                if existing:
                    index.remove_ids(np.array(existing, dtype=np.int64))
                index.add_with_ids(vectors, np.array(int_ids, dtype=np.int64))
            except RuntimeError as e:
                logger.error("vector_upsert_failed", error=str(e), batch_size=len(batch))
                self._rollback_upsert(touched, previous, next_id)
                raise VectorStoreError(f"Failed to upsert vectors: {e}") from e

            for record, int_id in zip(batch, int_ids):
                self._ids[record.id] = int_id
                self._keys[int_id] = record.id
                self._records[record.id] = dict(record.metadata)

            logger.debug(
                "vector_batch_upserted",
                batch_size=len(batch),
                replaced=len(existing),
            )

        logger.info(
            "vectors_upserted",
            count=len(unique),
            total_vectors=index.ntotal,
        )

        return len(unique)

    def _rollback_upsert(
        self,
        int_ids: List[int],
        previous: Dict[str, Tuple[int, np.ndarray, Dict[str, Any]]],
        next_id: int,
    ) -> None:
        """Undo a partly written upsert."""
        index = self._require_index()

        try:
            index.remove_ids(np.array(int_ids, dtype=np.int64))
            if previous:
                index.add_with_ids(
                    np.array([vector for _, vector, _ in previous.values()], dtype=np.float32),
                    np.array([int_id for int_id, _, _ in previous.values()], dtype=np.int64),
                )
        except RuntimeError as e:
            logger.error("vector_upsert_rollback_failed", error=str(e))
            raise VectorStoreError(f"Failed to roll back vector upsert: {e}") from e

        for int_id in int_ids:
            key = self._keys.get(int_id)
            if key is not None and key not in previous:
                self._keys.pop(int_id)
                self._ids.pop(key, None)
                self._records.pop(key, None)
        for key, (int_id, _, metadata) in previous.items():
            self._ids[key] = int_id
            self._keys[int_id] = key
            self._records[key] = metadata
        self._next_id = next_id

        logger.warning("vector_upsert_rolled_back", removed=len(int_ids), restored=len(previous))

    async def query(
        self,
        vector: Sequence[float],
        top_k: int = None,
        filter: Optional[Dict[str, Any]] = None,
        threshold: Optional[float] = None,
    ) -> List[VectorMatch]:
        """Find the records most similar to ``vector``.

        The index is flat, so every vector is scored; filtered-out records
        are dropped before the top-K cut and never take a slot.

        Args:
            vector: Query vector
            top_k: Maximum number of matches (default from config)
            filter: Exact-match metadata constraints
            threshold: Minimum cosine similarity (inclusive)

        Returns:
            Matches ordered by similarity descending, then id ascending

        Raises:
            DimensionMismatch: If the query vector has the wrong dimension
            VectorStoreError: If the search fails
        """
        index = self._require_index()

        if top_k is None:
            top_k = config.RETRIEVAL_TOP_K

        if len(vector) != self.dimension:
            raise DimensionMismatch(self.dimension, len(vector))

        if top_k <= 0 or index.ntotal == 0:
            return []

        query_vector = _normalize(np.array([vector], dtype=np.float32))

        try:
            scores, labels = index.search(query_vector, index.ntotal)
        except RuntimeError as e:
            logger.error("vector_search_failed", error=str(e))
            raise VectorStoreError(f"Vector search failed: {e}") from e

        matches = []
        for score, label in zip(scores[0].tolist(), labels[0].tolist()):
            if label < 0:
                continue
            key = self._keys.get(label)
            if key is None:
                continue
            metadata = self._records[key]
            if not matches_filter(metadata, filter):
                continue
            similarity = max(-1.0, min(1.0, float(score)))
            if threshold is not None and similarity < threshold:
                continue
            matches.append(VectorMatch(id=key, metadata=dict(metadata), similarity=similarity))

        matches.sort(key=lambda m: (-m.similarity, m.id))
        matches = matches[:top_k]

        logger.info(
            "vector_search_completed",
            top_k=top_k,
            filtered=bool(filter),
            results_found=len(matches),
        )

        return matches

    async def delete(
        self,
        ids: Optional[Sequence[str]] = None,
        filter: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Delete records by id and/or by metadata filter.

        Returns:
            Number of records removed

        Raises:
            ValueError: If neither ids nor filter is given
            VectorStoreError: If the index rejects the removal
        """
        if ids is None and not filter:
            raise ValueError("delete() needs ids or a filter")

        index = self._require_index()

        keys = set()
        if ids is not None:
            keys.update(key for key in ids if key in self._records)
        if filter:
            keys.update(key for key, metadata in self._records.items() if matches_filter(metadata, filter))

        if not keys:
            return 0

        int_ids = np.array([self._ids[key] for key in keys], dtype=np.int64)
        try:
            index.remove_ids(int_ids)
        except RuntimeError as e:
            logger.error("vector_delete_failed", error=str(e), count=len(keys))
            raise VectorStoreError(f"Failed to delete vectors: {e}") from e

        for key in keys:
            int_id = self._ids.pop(key)
            self._keys.pop(int_id, None)
            self._records.pop(key, None)

        logger.info("vectors_deleted", count=len(keys), total_vectors=index.ntotal)

        return len(keys)

    async def init_or_load(self) -> None:
        """Load the index from disk if present, otherwise create a new one."""
        if self.index_path.exists() and self.metadata_path.exists():
            logger.info("existing_index_detected", path=str(self.index_path))
            await self.load_index()
        else:
            logger.info("no_index_found_initializing_new")
            await self.init_new_index()

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store."""
        if self.index is None:
            return {
                "initialized": False,
                "vector_count": 0,
                "dimension": self.dimension,
            }

        return {
            "initialized": True,
            "vector_count": self.index.ntotal,
            "dimension": self.dimension,
            "metric": METRIC,
            "embedding_model": self.embedding_model,
            "index_exists_on_disk": self.index_path.exists(),
        }

    async def rebuild_index(self) -> None:
        """Delete the on-disk index and start from an empty one."""
        logger.warning("rebuilding_index", index_dir=str(self.index_dir))

        for path in (self.index_path, self.metadata_path):
            if path.exists():
                path.unlink()
                logger.info("deleted_index_file", path=str(path))

        await self.init_new_index()

    def _require_index(self) -> faiss.Index:
        if self.index is None:
            raise VectorStoreError("No index initialized. Call init_or_load() first.")
        return self.index


# Singleton instance for convenience
_store_instance: Optional[FAISSVectorStore] = None


async def get_vector_store() -> FAISSVectorStore:
    """Get or create a singleton vector store instance.

    Note: This loads the index if it exists
    """
    global _store_instance
    if _store_instance is None:
        _store_instance = FAISSVectorStore(embedder=get_embedder())
        await _store_instance.init_or_load()
    return _store_instance
