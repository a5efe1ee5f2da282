"""Retriever for semantic search over ingested documents.

Handles:
- Query embedding generation
- Owner-scoped FAISS similarity search above a threshold
- Optional query expansion through the language model
- Optional hybrid ranking with SQLite full-text search
- Optional LLM re-ranking with a safe fallback
"""
import asyncio
import re
import sqlite3
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import structlog

from groundrag import config, db
from groundrag.errors import GenerationError, VectorStoreError
from groundrag.llm_client import OllamaClient, OllamaResponseError, ollama_client
from groundrag.rag.embedder import EmbeddingClient, get_embedder
from groundrag.rag.reranker import LLMReranker
from groundrag.rag.store_faiss import FAISSVectorStore, VectorMatch, get_vector_store, matches_filter
from groundrag.rag.types import RetrievedChunk, rank

logger = structlog.get_logger()

EXPANSION_PROMPT = """Rewrite the search query below in {count} different ways \
that could match relevant passages: use synonyms, expand abbreviations, or \
make implicit terms explicit. Write one query per line with no numbering \
and no extra text.

Query: {query}"""

_LIST_MARKER = re.compile(r"^\s*(?:\d+[.)]|[-*•])\s*")


def parse_expansions(text: str, query: str, count: int) -> List[str]:
    """Pull up to ``count`` distinct alternative queries out of a model answer."""
    seen = {query.strip().lower()}
    expansions = []
    for line in text.splitlines():
        candidate = _LIST_MARKER.sub("", line).strip().strip("\"'").strip()
        if not candidate or candidate.lower() in seen:
            continue
        seen.add(candidate.lower())
        expansions.append(candidate)
        if len(expansions) == count:
            break
    return expansions


def combine_scores(
    vector_hits: Sequence[RetrievedChunk],
    keyword_hits: Sequence[RetrievedChunk],
    vector_weight: float,
    keyword_weight: float,
) -> List[RetrievedChunk]:
    """Merge vector and keyword hits into one hybrid-ranked list.

    The keyword side contributes ``1 / rank`` (1-based position in the
    keyword list); a chunk missing from one side gets 0 for that side.
    """
    merged: Dict[str, RetrievedChunk] = {}
    keyword_scores: Dict[str, float] = {}

    for hit in vector_hits:
        merged[hit.chunk_id] = RetrievedChunk(
            chunk_id=hit.chunk_id,
            content=hit.content,
            metadata=hit.metadata,
            similarity=hit.similarity,
        )

    for position, hit in enumerate(keyword_hits, start=1):
        keyword_scores.setdefault(hit.chunk_id, 1.0 / position)
        if hit.chunk_id not in merged:
            merged[hit.chunk_id] = RetrievedChunk(
                chunk_id=hit.chunk_id,
                content=hit.content,
                metadata=hit.metadata,
            )

    for chunk_id, result in merged.items():
        vector_score = result.similarity if result.similarity is not None else 0.0
        result.combined_score = (
            vector_weight * vector_score + keyword_weight * keyword_scores.get(chunk_id, 0.0)
        )

    return rank(list(merged.values()))


class Retriever:
    """Semantic retriever for the RAG pipeline."""

    def __init__(
        self,
        vector_store: Optional[FAISSVectorStore] = None,
        embedder: Optional[EmbeddingClient] = None,
        llm: Optional[OllamaClient] = None,
        reranker: Optional[LLMReranker] = None,
        chunk_lookup: Callable[[List[str]], List[Dict[str, Any]]] = None,
        keyword_search: Callable[..., List[Dict[str, Any]]] = None,
        top_k: int = None,
        threshold: Optional[float] = None,
        expansion_count: int = None,
        vector_weight: Optional[float] = None,
        keyword_weight: Optional[float] = None,
        candidate_multiplier: int = None,
    ):
        """Initialize the retriever.

        Args:
            vector_store: FAISS vector store (will load default if not provided)
            embedder: Embedding client (default singleton)
            llm: Chat client used for query expansion
            reranker: Re-ranker (default: LLM re-ranker over ``llm``)
            chunk_lookup: Resolves chunk ids to stored chunks (default: SQLite)
            keyword_search: Full-text search function (default: SQLite FTS5)
            top_k: Number of results to retrieve (default from config)
            threshold: Minimum cosine similarity (default from config)
            expansion_count: Alternative queries generated when expanding
            vector_weight: Hybrid weight of the vector score
            keyword_weight: Hybrid weight of the keyword rank score
            candidate_multiplier: Candidates fetched per result when re-ranking
        """
        self.vector_store = vector_store
        self.embedder = embedder or get_embedder()
        self.llm = llm or ollama_client
        self.reranker = reranker or LLMReranker(llm=self.llm)
        self.chunk_lookup = chunk_lookup or db.get_chunks_by_ids
        self.keyword_search = keyword_search or db.keyword_search
        self.top_k = top_k or config.RETRIEVAL_TOP_K
        self.threshold = config.SIMILARITY_THRESHOLD if threshold is None else threshold
        self.expansion_count = expansion_count or config.QUERY_EXPANSION_COUNT
        self.vector_weight = config.HYBRID_VECTOR_WEIGHT if vector_weight is None else vector_weight
        self.keyword_weight = config.HYBRID_KEYWORD_WEIGHT if keyword_weight is None else keyword_weight
        self.candidate_multiplier = candidate_multiplier or config.RERANK_CANDIDATE_MULTIPLIER

        logger.info(
            "retriever_initialized",
            embedding_model=self.embedder.model,
            top_k=self.top_k,
            threshold=self.threshold,
        )

    async def _ensure_vector_store(self) -> FAISSVectorStore:
        """Ensure vector store is loaded."""
        if self.vector_store is None:
            self.vector_store = await get_vector_store()
        return self.vector_store

    async def retrieve(
        self,
        query: str,
        owner_id: str,
        top_k: Optional[int] = None,
        threshold: Optional[float] = None,
        filter: Optional[Dict[str, Any]] = None,
        expand: bool = False,
        hybrid: bool = False,
        rerank: bool = False,
    ) -> List[RetrievedChunk]:
        """Retrieve the chunks most relevant to a query.

        Args:
            query: User query text
            owner_id: Only this owner's chunks are searched
            top_k: Maximum number of results (overrides default)
            threshold: Minimum cosine similarity for vector hits (overrides default)
            filter: Extra exact-match metadata constraints
            expand: Also search with LLM-generated alternative queries
            hybrid: Combine vector scores with full-text keyword ranks
            rerank: Let the LLM pick and order the final results

        Returns:
            At most ``top_k`` RetrievedChunk objects, best first (empty if nothing qualifies)

        Raises:
            EmbeddingServiceError: If the query cannot be embedded
            VectorStoreError: If vector or keyword search fails
            GenerationError: If query expansion fails
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided")
            return []

        top_k = top_k or self.top_k
        threshold = self.threshold if threshold is None else threshold
        candidate_k = top_k * self.candidate_multiplier if rerank else top_k
        scope = dict(filter or {})
        scope["owner_id"] = owner_id

        logger.info(
            "retrieval_started",
            query_length=len(query),
            top_k=top_k,
            threshold=threshold,
            expand=expand,
            hybrid=hybrid,
            rerank=rerank,
        )

        store = await self._ensure_vector_store()

        queries = [query]
        if expand:
            queries.extend(await self.expand_query(query))

        query_vectors = await self.embedder.embed(queries)

        vector_search = self._vector_search(store, query_vectors, candidate_k, scope, threshold)
        if hybrid:
            vector_hits, keyword_hits = await asyncio.gather(
                vector_search,
                self._keyword_search(query, owner_id, candidate_k, filter),
            )
            candidates = combine_scores(
                vector_hits, keyword_hits, self.vector_weight, self.keyword_weight
            )
        else:
            candidates = rank(await vector_search)

        candidates = candidates[:candidate_k]

        if rerank and len(candidates) > top_k:
            results = await self.reranker.rerank(query, candidates, top_k)
        else:
            results = candidates[:top_k]

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            queries=len(queries),
            candidates=len(candidates),
            results_returned=len(results),
            top_score=results[0].score if results else None,
        )

        return results

    async def expand_query(self, query: str) -> List[str]:
        """Ask the language model for alternative phrasings of a query.

        Raises:
            GenerationError: If the model call fails
        """
        prompt = EXPANSION_PROMPT.format(count=self.expansion_count, query=query)
        try:
            response = await self.llm.chat([{"role": "user", "content": prompt}], temperature=0.3)
        except (httpx.HTTPError, OllamaResponseError) as e:
            logger.error("query_expansion_failed", error=str(e), error_type=type(e).__name__)
            raise GenerationError(f"Query expansion failed: {e}") from e

        answer = response.get("message", {}).get("content", "")
        expansions = parse_expansions(answer, query, self.expansion_count)

        logger.debug("query_expanded", expansions=len(expansions))
        return expansions

    async def _vector_search(
        self,
        store: FAISSVectorStore,
        vectors: List[List[float]],
        top_k: int,
        scope: Dict[str, Any],
        threshold: float,
    ) -> List[RetrievedChunk]:
        """Search once per query vector concurrently; keep each chunk's best similarity."""
        match_lists = await asyncio.gather(
            *(store.query(vector, top_k=top_k, filter=scope, threshold=threshold) for vector in vectors)
        )

        best: Dict[str, VectorMatch] = {}
        for matches in match_lists:
            for match in matches:
                current = best.get(match.id)
                if current is None or match.similarity > current.similarity:
                    best[match.id] = match

        if not best:
            return []

        chunks = await self._lookup_chunks(list(best))

        results = []
        for chunk_id, match in best.items():
            chunk = chunks.get(chunk_id)
            if chunk is None:
                logger.warning("chunk_not_found_for_vector", chunk_id=chunk_id)
                continue
            results.append(
                RetrievedChunk(
                    chunk_id=chunk_id,
                    content=chunk["content"],
                    metadata=match.metadata,
                    similarity=match.similarity,
                )
            )

        return results

    async def _keyword_search(
        self,
        query: str,
        owner_id: str,
        limit: int,
        filter: Optional[Dict[str, Any]],
    ) -> List[RetrievedChunk]:
        document_id = (filter or {}).get("document_id")
        try:
            rows = await asyncio.to_thread(
                self.keyword_search, query, owner_id, limit, document_id, filter or None
            )
        except sqlite3.Error as e:
            raise VectorStoreError(f"Keyword search failed: {e}") from e

        results = []
        for row in rows:
            metadata = row.get("metadata") or {}
            # Same exact-match scope as the vector search
            if not matches_filter(metadata, filter):
                continue
            results.append(RetrievedChunk(chunk_id=row["id"], content=row["content"], metadata=metadata))
        return results

    async def _lookup_chunks(self, chunk_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        try:
            rows = await asyncio.to_thread(self.chunk_lookup, chunk_ids)
        except sqlite3.Error as e:
            raise VectorStoreError(f"Chunk lookup failed: {e}") from e
        return {row["id"]: row for row in rows}


# Singleton instance for convenience
_retriever_instance: Optional[Retriever] = None


async def get_retriever() -> Retriever:
    """Get or create a singleton retriever instance."""
    global _retriever_instance
    if _retriever_instance is None:
        _retriever_instance = Retriever()
        # Pre-load vector store
        await _retriever_instance._ensure_vector_store()
    return _retriever_instance
