"""Tests for retrieval: vector search, expansion, hybrid ranking and re-ranking."""
import math

import pytest

from conftest import DIMENSION, FakeChatLLM, connect_error
from groundrag.errors import GenerationError
from groundrag.rag.retriever import Retriever, combine_scores, parse_expansions
from groundrag.rag.store_faiss import VectorRecord
from groundrag.rag.types import RetrievedChunk


def at_similarity(similarity: float, axis: int = 0, other: int = 1):
    """A unit vector whose cosine with the ``axis`` unit vector is ``similarity``."""
    vector = [0.0] * DIMENSION
    vector[axis] = similarity
    vector[other] = math.sqrt(max(0.0, 1.0 - similarity ** 2))
    return vector


def axis(index: int):
    vector = [0.0] * DIMENSION
    vector[index] = 1.0
    return vector


class Corpus:
    """Chunk rows and keyword ranking standing in for SQLite."""

    def __init__(self, store):
        self.store = store
        self.chunks = {}
        self.keyword_hits = []
        self.keyword_queries = []

    async def add(self, chunk_id, vector, owner_id="alice", content=None, **metadata):
        metadata.update({"owner_id": owner_id, "document_id": chunk_id.split(":")[0]})
        self.chunks[chunk_id] = {
            "id": chunk_id,
            "content": content or f"content of {chunk_id}",
            "metadata": dict(metadata),
        }
        await self.store.upsert([VectorRecord(id=chunk_id, vector=vector, metadata=metadata)])

    def lookup(self, chunk_ids):
        return [self.chunks[c] for c in chunk_ids if c in self.chunks]

    def keyword(self, query, owner_id, limit, document_id=None, filters=None):
        self.keyword_queries.append(query)
        rows = [
            self.chunks[c] for c in self.keyword_hits
            if self.chunks[c]["metadata"]["owner_id"] == owner_id
        ]
        return rows[:limit]


@pytest.fixture
def corpus(vector_store):
    return Corpus(vector_store)


@pytest.fixture
def make_retriever(vector_store, embedder, corpus, provider):
    provider.vectors["query"] = axis(0)

    def build(llm=None, **overrides):
        options = {"top_k": 5, "threshold": 0.7}
        options.update(overrides)
        return Retriever(
            vector_store=vector_store,
            embedder=embedder,
            llm=llm or FakeChatLLM(),
            chunk_lookup=corpus.lookup,
            keyword_search=corpus.keyword,
            **options,
        )

    return build


async def test_empty_store_returns_no_results(make_retriever):
    """Test that retrieving from an empty store returns an empty result."""
    assert await make_retriever().retrieve("query", "alice") == []


async def test_blank_query_returns_no_results(make_retriever):
    """Test that a blank query returns nothing without searching."""
    assert await make_retriever().retrieve("   ", "alice") == []


async def test_results_ordered_and_thresholded(make_retriever, corpus):
    """Test that results are above threshold and best first."""
    await corpus.add("d:0", at_similarity(0.75))
    await corpus.add("d:1", at_similarity(0.95))
    await corpus.add("d:2", at_similarity(0.5))

    results = await make_retriever().retrieve("query", "alice")

    assert [r.chunk_id for r in results] == ["d:1", "d:0"]
    assert results[0].similarity == pytest.approx(0.95, abs=1e-5)
    assert results[0].content == "content of d:1"
    assert results[0].combined_score is None


async def test_owner_scoping(make_retriever, corpus):
    """Test that another owner's chunks are never retrieved."""
    await corpus.add("mine:0", at_similarity(0.8), owner_id="alice")
    await corpus.add("theirs:0", at_similarity(0.99), owner_id="bob")

    results = await make_retriever().retrieve("query", "alice")

    assert [r.chunk_id for r in results] == ["mine:0"]


async def test_metadata_filter(make_retriever, corpus):
    """Test that an extra filter narrows the search."""
    await corpus.add("a:0", at_similarity(0.9))
    await corpus.add("b:0", at_similarity(0.95))

    results = await make_retriever().retrieve("query", "alice", filter={"document_id": "a"})

    assert [r.chunk_id for r in results] == ["a:0"]


async def test_raising_threshold_never_adds_results(make_retriever, corpus):
    """Test that result count is non-increasing in threshold and bounded by top_k."""
    for i, similarity in enumerate([0.2, 0.45, 0.6, 0.72, 0.8, 0.88, 0.93, 0.99]):
        await corpus.add(f"d:{i}", at_similarity(similarity))
    retriever = make_retriever(top_k=4)

    counts = []
    for threshold in [-1.0, 0.0, 0.5, 0.7, 0.85, 0.95, 1.0]:
        results = await retriever.retrieve("query", "alice", threshold=threshold)
        assert len(results) <= 4
        counts.append(len(results))

    assert counts == sorted(counts, reverse=True)
    assert counts[0] == 4


async def test_top_k_override(make_retriever, corpus):
    """Test that top_k limits the number of results."""
    for i in range(6):
        await corpus.add(f"d:{i}", at_similarity(0.8 + i * 0.01))

    results = await make_retriever().retrieve("query", "alice", top_k=2)

    assert [r.chunk_id for r in results] == ["d:5", "d:4"]


async def test_vectors_without_rows_are_skipped(make_retriever, corpus, vector_store):
    """Test that a vector whose chunk row is gone is not returned."""
    await corpus.add("d:0", at_similarity(0.9))
    await vector_store.upsert([VectorRecord(id="ghost:0", vector=at_similarity(0.95), metadata={"owner_id": "alice"})])

    results = await make_retriever().retrieve("query", "alice")

    assert [r.chunk_id for r in results] == ["d:0"]


async def test_hybrid_vector_hit_beats_keyword_only_hit(make_retriever, corpus):
    """Test that vector 0.9 alone (0.63) outranks a top keyword-only hit (0.3)."""
    await corpus.add("x:0", at_similarity(0.9))
    await corpus.add("y:0", axis(5))
    corpus.keyword_hits = ["y:0"]

    results = await make_retriever().retrieve("query", "alice", hybrid=True)

    assert [r.chunk_id for r in results] == ["x:0", "y:0"]
    assert results[0].combined_score == pytest.approx(0.63, abs=1e-4)
    assert results[1].combined_score == pytest.approx(0.3)
    assert results[1].similarity is None
    assert corpus.keyword_queries == ["query"]


async def test_hybrid_rewards_chunks_found_both_ways(make_retriever, corpus):
    """Test that a chunk found by both searches gets both contributions."""
    await corpus.add("x:0", at_similarity(0.9))
    await corpus.add("z:0", at_similarity(0.8))
    corpus.keyword_hits = ["z:0"]

    results = await make_retriever().retrieve("query", "alice", hybrid=True)

    assert [r.chunk_id for r in results] == ["z:0", "x:0"]
    assert results[0].combined_score == pytest.approx(0.7 * 0.8 + 0.3, abs=1e-4)


async def test_hybrid_respects_metadata_filter(make_retriever, corpus):
    """Test that keyword hits outside the filter are not returned."""
    await corpus.add("a:0", at_similarity(0.9), filename="a.txt")
    await corpus.add("b:0", axis(5), filename="b.txt")
    corpus.keyword_hits = ["b:0", "a:0"]

    results = await make_retriever().retrieve(
        "query", "alice", filter={"filename": "a.txt"}, hybrid=True
    )

    assert [r.chunk_id for r in results] == ["a:0"]
    assert results[0].combined_score == pytest.approx(0.7 * 0.9 + 0.3, abs=1e-4)


def test_combine_scores_uses_reciprocal_rank():
    """Test the keyword contribution of 1/rank at each position."""
    keyword = [RetrievedChunk(chunk_id=f"k{i}", content="") for i in range(3)]

    results = combine_scores([], keyword, vector_weight=0.7, keyword_weight=0.3)

    assert [r.combined_score for r in results] == pytest.approx([0.3, 0.15, 0.1])


def test_parse_expansions():
    """Test that numbering, bullets, quotes and repeats are cleaned up."""
    answer = '1. library card\n2) "borrowing rules"\n- query\n\n* library card\n- opening hours'

    assert parse_expansions(answer, "query", 3) == ["library card", "borrowing rules", "opening hours"]


async def test_expansion_searches_alternative_queries(make_retriever, corpus, provider):
    """Test that expanded queries find chunks the original misses, in one embed call."""
    provider.vectors["library card"] = axis(3)
    provider.vectors["borrowing rules"] = axis(4)
    await corpus.add("direct:0", at_similarity(0.8))
    await corpus.add("expanded:0", at_similarity(0.97, axis=3, other=6))
    llm = FakeChatLLM(replies=["library card\nborrowing rules"])

    results = await make_retriever(llm=llm, expansion_count=2).retrieve("query", "alice", expand=True)

    assert [r.chunk_id for r in results] == ["expanded:0", "direct:0"]
    assert provider.calls[-1] == ["query", "library card", "borrowing rules"]


async def test_expansion_keeps_best_similarity(make_retriever, corpus, provider):
    """Test that a chunk found by several queries keeps its best similarity."""
    provider.vectors["variant"] = at_similarity(0.99)
    await corpus.add("d:0", axis(0))
    llm = FakeChatLLM(replies=["variant"])

    results = await make_retriever(llm=llm).retrieve("query", "alice", expand=True)

    assert len(results) == 1
    assert results[0].similarity == pytest.approx(1.0, abs=1e-5)


async def test_expansion_failure_raises(make_retriever, corpus):
    """Test that a failed expansion call surfaces as GenerationError."""
    await corpus.add("d:0", at_similarity(0.9))
    retriever = make_retriever(llm=FakeChatLLM(error=connect_error()))

    with pytest.raises(GenerationError):
        await retriever.retrieve("query", "alice", expand=True)


async def test_rerank_reorders_candidates(make_retriever, corpus):
    """Test that re-ranking picks top_k from a wider candidate pool."""
    for i in range(6):
        await corpus.add(f"d:{i}", at_similarity(0.95 - i * 0.02))
    llm = FakeChatLLM(replies=["[5, 2]"])

    results = await make_retriever(llm=llm).retrieve("query", "alice", top_k=2, rerank=True)

    assert [r.chunk_id for r in results] == ["d:5", "d:2"]
    assert "[5]" in llm.calls[0][0]["content"]


async def test_rerank_failure_keeps_similarity_order(make_retriever, corpus):
    """Test that a broken re-rank answer still returns a valid result."""
    for i in range(4):
        await corpus.add(f"d:{i}", at_similarity(0.95 - i * 0.02))
    llm = FakeChatLLM(replies=["no idea"])

    results = await make_retriever(llm=llm).retrieve("query", "alice", top_k=2, rerank=True)

    assert [r.chunk_id for r in results] == ["d:0", "d:1"]
