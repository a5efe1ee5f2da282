"""Embedding client for chunks and queries.

Handles:
- Batching requests up to the provider batch limit
- Bounded concurrent dispatch of batches
- A per-client TTL + LRU cache keyed on exact text
- Dimension consistency checks
"""
import asyncio
import threading
import time
from collections import OrderedDict
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import httpx
import structlog

from groundrag import config
from groundrag.errors import DimensionMismatch, EmbeddingServiceError
from groundrag.llm_client import OllamaClient, OllamaResponseError

logger = structlog.get_logger()


class EmbeddingProvider(Protocol):
    """Anything that turns an ordered batch of texts into vectors."""

    async def embed(self, inputs: List[str], model: str = None) -> List[List[float]]:
        ...


class EmbeddingCache:
    """Thread-safe cache of embeddings with a TTL and LRU eviction."""

    def __init__(
        self,
        max_entries: Optional[int] = None,
        ttl_seconds: Optional[float] = None,
        clock=time.monotonic,
    ):
        """Initialize the cache.

        Args:
            max_entries: Entry limit before least-recently-used eviction
            ttl_seconds: Lifetime of an entry in seconds
            clock: Monotonic time source (injectable for tests)
        """
        self.max_entries = config.EMBEDDING_CACHE_SIZE if max_entries is None else max_entries
        self.ttl_seconds = config.EMBEDDING_CACHE_TTL if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str], Tuple[float, List[float]]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, model: str, text: str) -> Optional[List[float]]:
        key = (model, text)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            stored_at, vector = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return vector

    def put(self, model: str, text: str, vector: List[float]) -> None:
        if self.max_entries <= 0:
            return
        key = (model, text)
        with self._lock:
            self._entries[key] = (self._clock(), vector)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class EmbeddingClient:
    """Batched, cached, order-preserving embedding client."""

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        model: str = None,
        dimension: Optional[int] = None,
        batch_size: Optional[int] = None,
        max_concurrency: Optional[int] = None,
        cache: Optional[EmbeddingCache] = None,
    ):
        """Initialize the embedding client.

        Args:
            provider: Embedding backend (default: Ollama with the embedding timeout)
            model: Embedding model name (default from config)
            dimension: Expected vector dimension, ``None``/0 to accept the first one seen
            batch_size: Maximum texts per provider call (default from config)
            max_concurrency: Maximum batches in flight (default from config)
            cache: Embedding cache owned by this client (a fresh one by default)
        """
        self.provider = provider or OllamaClient(timeout=config.EMBEDDING_TIMEOUT)
        self.model = model or config.EMBEDDING_MODEL
        self.dimension = dimension if dimension is not None else (config.EMBEDDING_DIMENSION or None)
        self.batch_size = batch_size or config.EMBEDDING_BATCH_SIZE
        self.max_concurrency = max_concurrency or config.EMBEDDING_CONCURRENCY
        self.cache = cache if cache is not None else EmbeddingCache()
        self._semaphore: Optional[asyncio.Semaphore] = None

        self.stats = {"requests": 0, "texts_embedded": 0}

        logger.info(
            "embedding_client_initialized",
            model=self.model,
            dimension=self.dimension,
            batch_size=self.batch_size,
            max_concurrency=self.max_concurrency,
        )

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """Embed texts, returning one vector per input in input order.

        Args:
            texts: Texts to embed

        Returns:
            List of embedding vectors aligned with ``texts``

        Raises:
            EmbeddingServiceError: If the provider fails or times out
            DimensionMismatch: If the provider returns vectors of the wrong dimension
        """
        if not texts:
            return []

        vectors: List[Optional[List[float]]] = [None] * len(texts)
        pending: Dict[str, List[int]] = {}

        for position, text in enumerate(texts):
            cached = self.cache.get(self.model, text)
            if cached is not None:
                vectors[position] = cached
            else:
                pending.setdefault(text, []).append(position)

        if pending:
            unique_texts = list(pending)
            batches = [
                unique_texts[i : i + self.batch_size]
                for i in range(0, len(unique_texts), self.batch_size)
            ]

            results = await asyncio.gather(*(self._embed_batch(batch) for batch in batches))

            for batch, batch_vectors in zip(batches, results):
                for text, vector in zip(batch, batch_vectors):
                    self.cache.put(self.model, text, vector)
                    for position in pending[text]:
                        vectors[position] = vector

        logger.debug(
            "texts_embedded",
            count=len(texts),
            cache_hits=len(texts) - sum(len(p) for p in pending.values()),
            provider_texts=len(pending),
        )

        return vectors

    async def embed_query(self, query: str) -> List[float]:
        """Embed a single query string."""
        vectors = await self.embed([query])
        return vectors[0]

    async def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrency)

        async with self._semaphore:
            try:
                vectors = await self.provider.embed(batch, model=self.model)
            except (httpx.HTTPError, OllamaResponseError) as e:
                logger.error(
                    "embedding_generation_failed",
                    model=self.model,
                    batch_size=len(batch),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise EmbeddingServiceError(
                    f"Embedding provider failed: {e}",
                    details={"model": self.model, "batch_size": len(batch)},
                ) from e

        self.stats["requests"] += 1
        self.stats["texts_embedded"] += len(batch)

        if len(vectors) != len(batch):
            raise EmbeddingServiceError(
                f"Embedding provider returned {len(vectors)} vectors for {len(batch)} texts",
                details={"model": self.model},
            )

        for vector in vectors:
            if not vector:
                raise EmbeddingServiceError(
                    "Empty embedding returned by provider",
                    details={"model": self.model},
                )
            if self.dimension is None:
                self.dimension = len(vector)
                logger.info("embedding_dimension_detected", dimension=self.dimension)
            elif len(vector) != self.dimension:
                raise DimensionMismatch(self.dimension, len(vector), details={"model": self.model})

        return vectors


# Singleton instance for convenience
_embedder_instance: Optional[EmbeddingClient] = None


def get_embedder() -> EmbeddingClient:
    """Get a singleton embedding client configured from the environment."""
    global _embedder_instance
    if _embedder_instance is None:
        _embedder_instance = EmbeddingClient()
    return _embedder_instance
