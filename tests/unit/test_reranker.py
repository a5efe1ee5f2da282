"""Tests for LLM re-ranking."""
import pytest

from conftest import FakeChatLLM, connect_error
from groundrag.errors import RerankParseError
from groundrag.rag.reranker import LLMReranker, parse_rerank_indices
from groundrag.rag.types import RetrievedChunk


def candidates(count):
    return [
        RetrievedChunk(chunk_id=f"c{i}", content=f"passage {i}", similarity=0.9 - i * 0.01)
        for i in range(count)
    ]


@pytest.mark.parametrize(
    "answer,expected",
    [
        ("[2, 0, 1]", [2, 0, 1]),
        ("Here you go:\n```json\n[3, 1]\n```", [3, 1]),
        ("The best are [1, 1, 0] in that order.", [1, 0]),
    ],
)
def test_parse_indices(answer, expected):
    """Test that indices are parsed from plain, fenced and chatty answers."""
    assert parse_rerank_indices(answer, candidate_count=4) == expected


@pytest.mark.parametrize(
    "answer",
    [
        "I think passage two is best.",
        "[0, 9]",
        "[-1]",
        '["a", "b"]',
        "[true, 1]",
        "[1.5]",
        "[]",
        "[1, 2",
    ],
)
def test_parse_rejects_bad_answers(answer):
    """Test that unusable answers raise RerankParseError."""
    with pytest.raises(RerankParseError):
        parse_rerank_indices(answer, candidate_count=4)


async def test_rerank_uses_model_order():
    """Test that the model's chosen order is applied."""
    llm = FakeChatLLM(replies=["[3, 1]"])
    reranker = LLMReranker(llm=llm, model="fake-chat")

    result = await reranker.rerank("question", candidates(5), top_k=2)

    assert [r.chunk_id for r in result] == ["c3", "c1"]
    assert "[4] passage 4" in llm.calls[0][0]["content"]


async def test_rerank_fills_short_answers():
    """Test that a short pick list is topped up in the incoming order."""
    llm = FakeChatLLM(replies=["[4]"])
    reranker = LLMReranker(llm=llm)

    result = await reranker.rerank("question", candidates(5), top_k=3)

    assert [r.chunk_id for r in result] == ["c4", "c0", "c1"]


async def test_unparsable_answer_falls_back():
    """Test that garbage from the model keeps the pre-rerank order."""
    llm = FakeChatLLM(replies=["passage three looks good"])
    reranker = LLMReranker(llm=llm)

    result = await reranker.rerank("question", candidates(5), top_k=2)

    assert [r.chunk_id for r in result] == ["c0", "c1"]


async def test_model_failure_falls_back():
    """Test that a model error never fails re-ranking."""
    llm = FakeChatLLM(error=connect_error())
    reranker = LLMReranker(llm=llm)

    result = await reranker.rerank("question", candidates(5), top_k=2)

    assert [r.chunk_id for r in result] == ["c0", "c1"]


async def test_few_candidates_skip_the_model():
    """Test that nothing is sent to the model when there is nothing to choose."""
    llm = FakeChatLLM(replies=["[1, 0]"])
    reranker = LLMReranker(llm=llm)

    result = await reranker.rerank("question", candidates(2), top_k=3)

    assert [r.chunk_id for r in result] == ["c0", "c1"]
    assert llm.calls == []
