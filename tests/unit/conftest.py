"""Pytest configuration and fixtures for unit tests.

External services are replaced with in-process fakes: a deterministic
embedding provider and a scripted chat model. Storage goes to tmp_path.
"""
import os
import re
import tempfile
import zlib

# Keep the import-time database out of the source tree
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="groundrag-test-"))

import httpx
import pytest

from groundrag import db
from groundrag.rag.embedder import EmbeddingCache, EmbeddingClient
from groundrag.rag.store_faiss import FAISSVectorStore


DIMENSION = 16

_WORD = re.compile(r"\w+")


class FakeEmbeddingProvider:
    """Bag-of-words hashing embedder; texts sharing words point the same way."""

    def __init__(self, dimension: int = DIMENSION, vectors=None):
        self.dimension = dimension
        self.vectors = dict(vectors or {})
        self.calls = []
        self.error = None

    def vector_for(self, text: str):
        if text in self.vectors:
            return list(self.vectors[text])
        vector = [0.0] * self.dimension
        for word in _WORD.findall(text.lower()):
            vector[zlib.crc32(word.encode()) % self.dimension] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector

    async def embed(self, inputs, model=None):
        self.calls.append(list(inputs))
        if self.error is not None:
            raise self.error
        return [self.vector_for(text) for text in inputs]


class FakeChatLLM:
    """Scripted chat model with call recording and stream close tracking."""

    def __init__(self, replies=None, stream_parts=None, error=None, stream_error=None):
        self.replies = list(replies or [])
        self.stream_parts = list(stream_parts or [])
        self.error = error
        self.stream_error = stream_error
        self.calls = []
        self.stream_calls = []
        self.stream_closed = False
        self.fragments_sent = 0

    async def chat(self, messages, model=None, temperature=None):
        self.calls.append(messages)
        if self.error is not None:
            raise self.error
        reply = self.replies.pop(0) if self.replies else "ok"
        return {"message": {"role": "assistant", "content": reply}}

    async def chat_stream(self, messages, model=None, temperature=None):
        self.stream_calls.append(messages)
        try:
            for part in self.stream_parts:
                self.fragments_sent += 1
                yield part
            if self.stream_error is not None:
                raise self.stream_error
        finally:
            self.stream_closed = True


def connect_error(message: str = "connection refused") -> httpx.ConnectError:
    return httpx.ConnectError(message, request=httpx.Request("POST", "http://ollama.test"))


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the db module at a fresh SQLite file."""
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "test.sqlite")
    db.init_database()
    return tmp_path / "test.sqlite"


@pytest.fixture
def provider():
    return FakeEmbeddingProvider()


@pytest.fixture
def embedder(provider):
    return EmbeddingClient(
        provider=provider,
        model="fake-embed",
        dimension=DIMENSION,
        batch_size=4,
        max_concurrency=2,
        cache=EmbeddingCache(max_entries=100, ttl_seconds=60),
    )


@pytest.fixture
async def vector_store(tmp_path, embedder):
    store = FAISSVectorStore(
        index_dir=tmp_path / "index",
        dimension=DIMENSION,
        embedding_model="fake-embed",
        batch_size=3,
        embedder=embedder,
    )
    await store.init_new_index()
    return store


@pytest.fixture
def llm():
    return FakeChatLLM()
