"""Tests for the Ollama client and how callers handle malformed responses."""
import json

import httpx
import pytest

from groundrag.errors import EmbeddingServiceError, GenerationError
from groundrag.llm_client import OllamaClient, OllamaResponseError
from groundrag.rag.chunker import TextChunker
from groundrag.rag.embedder import EmbeddingCache, EmbeddingClient
from groundrag.rag.extractors import DocumentProcessor
from groundrag.rag.generator import Generator
from groundrag.rag.ingest import IngestPipeline, IngestRequest
from groundrag.rag.reranker import LLMReranker
from groundrag.rag.types import RetrievedChunk

PROXY_PAGE = "<html>proxy error</html>"


def client_returning(body: str, status: int = 200) -> OllamaClient:
    transport = httpx.MockTransport(lambda request: httpx.Response(status, text=body))
    return OllamaClient(base_url="http://ollama.test", transport=transport)


@pytest.fixture
def broken_client():
    return client_returning(PROXY_PAGE)


def chunks(count=1):
    return [
        RetrievedChunk(chunk_id=f"d:{i}", content=f"passage {i}", similarity=0.9 - i * 0.01)
        for i in range(count)
    ]


async def test_chat_returns_message():
    """Test that a well-formed chat response is returned as a dict."""
    client = client_returning(json.dumps({"message": {"role": "assistant", "content": "hi"}}))

    response = await client.chat([{"role": "user", "content": "hello"}], model="m")

    assert response["message"]["content"] == "hi"


async def test_chat_stream_yields_fragments():
    """Test that NDJSON stream lines become text fragments."""
    lines = [
        {"message": {"content": "Hel"}, "done": False},
        {"message": {"content": "lo"}, "done": False},
        {"message": {"content": ""}, "done": True},
    ]
    client = client_returning("\n".join(json.dumps(line) for line in lines))

    fragments = [part async for part in client.chat_stream([{"role": "user", "content": "hi"}], model="m")]

    assert fragments == ["Hel", "lo"]


async def test_non_json_bodies_raise_response_error(broken_client):
    """Test that every call turns a non-JSON body into OllamaResponseError."""
    with pytest.raises(OllamaResponseError):
        await broken_client.chat([{"role": "user", "content": "hi"}], model="m")

    with pytest.raises(OllamaResponseError):
        async for _ in broken_client.chat_stream([{"role": "user", "content": "hi"}], model="m"):
            pass

    with pytest.raises(OllamaResponseError):
        await broken_client.embed(["text"], model="e")

    with pytest.raises(OllamaResponseError):
        await broken_client.list_models()


async def test_json_that_is_not_an_object_is_rejected():
    """Test that a JSON array body is not mistaken for a response."""
    with pytest.raises(OllamaResponseError):
        await client_returning("[1, 2]").chat([{"role": "user", "content": "hi"}], model="m")


async def test_generate_wraps_malformed_response(broken_client):
    """Test that a malformed chat response is a GenerationError carrying the results."""
    results = chunks()
    generator = Generator(retriever=object(), llm=broken_client, model="m", threshold=0.5)

    with pytest.raises(GenerationError) as exc_info:
        await generator.generate("q", results)

    assert exc_info.value.results == results


async def test_stream_generate_reports_malformed_stream(broken_client):
    """Test that a malformed stream ends with an error event."""
    generator = Generator(retriever=object(), llm=broken_client, model="m", threshold=0.5)

    events = [item async for item in generator.stream_generate("q", chunks())]

    assert [e["type"] for e in events] == ["status", "error"]
    assert events[-1]["payload"]["error"] == "GenerationError"


async def test_embedder_wraps_malformed_response(broken_client):
    """Test that a malformed embedding response is an EmbeddingServiceError."""
    embedder = EmbeddingClient(provider=broken_client, model="e", dimension=16, cache=EmbeddingCache())

    with pytest.raises(EmbeddingServiceError):
        await embedder.embed(["text"])


async def test_reranker_falls_back_on_malformed_response(broken_client):
    """Test that a malformed re-rank response keeps the incoming order."""
    reranker = LLMReranker(llm=broken_client, model="m")

    result = await reranker.rerank("q", chunks(4), top_k=2)

    assert [r.chunk_id for r in result] == ["d:0", "d:1"]


async def test_ingest_many_survives_malformed_embeddings(temp_db, vector_store, broken_client):
    """Test that malformed embedding responses fail documents, not the batch."""
    pipeline = IngestPipeline(
        processor=DocumentProcessor(),
        chunker=TextChunker(chunk_size=200, chunk_overlap=0),
        embedder=EmbeddingClient(provider=broken_client, model="e", dimension=16, cache=EmbeddingCache()),
        vector_store=vector_store,
    )
    requests = [
        IngestRequest(b"Library cards are free.", "text/plain", "alice", {"filename": "a.txt"}),
        IngestRequest(b"PK\x03\x04", "application/zip", "alice", {"filename": "b.zip"}),
    ]

    outcomes = await pipeline.ingest_many(requests)

    assert [o.ok for o in outcomes] == [False, False]
    assert [o.error_type for o in outcomes] == ["EmbeddingServiceError", "UnsupportedFormat"]
    assert vector_store.count == 0
