"""Grounded answer generation.

Builds a system prompt from retrieved chunks, calls the chat model and
returns the answer together with the sources it was grounded in. Answers
are available whole or as an event stream.
"""
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx
import structlog

from groundrag import config
from groundrag.errors import GenerationError, GroundRAGError
from groundrag.llm_client import OllamaClient, OllamaResponseError, ollama_client
from groundrag.rag.retriever import Retriever, get_retriever
from groundrag.rag.types import RetrievedChunk

logger = structlog.get_logger()

NO_CONTEXT_ANSWER = (
    "I couldn't find any relevant information in your documents to answer that question."
)

SYSTEM_PROMPT = """You are a helpful assistant that answers questions using only the context below.

CONTEXT:
{context}

INSTRUCTIONS:
- Answer from the context above and nothing else
- Cite the passages you use by their label, for example [1] or [2][3]
- If the context does not contain enough information to answer, say so plainly
- Be concise
"""


@dataclass
class Answer:
    """A generated answer with its citations."""

    text: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    results: List[RetrievedChunk] = field(default_factory=list)


def event(event_type: str, payload: Any = None) -> Dict[str, Any]:
    return {"type": event_type, "payload": payload}


def error_event(error: Exception) -> Dict[str, Any]:
    return event("error", {"error": type(error).__name__, "message": getattr(error, "message", str(error))})


class Generator:
    """Orchestrates retrieval and grounded generation."""

    def __init__(
        self,
        retriever: Optional[Retriever] = None,
        llm: Optional[OllamaClient] = None,
        model: str = None,
        max_context_chars: int = None,
        threshold: Optional[float] = None,
        temperature: Optional[float] = None,
    ):
        """Initialize the generator.

        Args:
            retriever: Retriever (default singleton, loaded lazily)
            llm: Chat client (default: the shared Ollama client)
            model: Chat model name (default from config)
            max_context_chars: Character budget for context blocks
            threshold: Minimum similarity for a chunk to be cited
            temperature: Sampling temperature passed to the model
        """
        self.retriever = retriever
        self.llm = llm or ollama_client
        self.model = model or config.CHAT_MODEL
        self.max_context_chars = max_context_chars or config.MAX_CONTEXT_CHARS
        self.threshold = config.SIMILARITY_THRESHOLD if threshold is None else threshold
        self.temperature = temperature

    async def _ensure_retriever(self) -> Retriever:
        if self.retriever is None:
            self.retriever = await get_retriever()
        return self.retriever

    def build_context(self, results: List[RetrievedChunk]) -> Tuple[str, List[RetrievedChunk]]:
        """Format results as labelled context blocks within the character budget.

        The first block is always kept, so a single oversized chunk still
        grounds the answer.

        Returns:
            (context text, results that made it into the context)
        """
        blocks = []
        used = []
        total = 0

        for result in results:
            block = f"[{len(used) + 1}] Source: {result.source}\n{result.content.strip()}"
            if used and total + len(block) > self.max_context_chars:
                break
            blocks.append(block)
            used.append(result)
            total += len(block) + 2

        return "\n\n".join(blocks), used

    def build_messages(
        self,
        query: str,
        context: str,
        prior_messages: Optional[List[Dict[str, str]]] = None,
    ) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": SYSTEM_PROMPT.format(context=context)}]
        messages.extend(
            {"role": m["role"], "content": m["content"]} for m in (prior_messages or [])
        )
        messages.append({"role": "user", "content": query})
        return messages

    def select_sources(
        self, used: List[RetrievedChunk], threshold: Optional[float] = None
    ) -> List[Dict[str, Any]]:
        """Citations for the chunks placed in the context.

        Keyword-only hits have no similarity and are always cited.
        """
        threshold = self.threshold if threshold is None else threshold
        return [
            result.to_source(label)
            for label, result in enumerate(used, start=1)
            if result.similarity is None or result.similarity >= threshold
        ]

    async def answer(
        self,
        query: str,
        owner_id: str,
        prior_messages: Optional[List[Dict[str, str]]] = None,
        **retrieval_options: Any,
    ) -> Answer:
        """Retrieve context for a query and answer it.

        Args:
            query: User question
            owner_id: Owner whose documents are searched
            prior_messages: Earlier conversation turns (role/content dicts)
            **retrieval_options: top_k, threshold, filter, expand, hybrid, rerank

        Raises:
            EmbeddingServiceError, VectorStoreError: If retrieval fails
            GenerationError: If the model call fails (carries the retrieved results)
        """
        retriever = await self._ensure_retriever()
        results = await retriever.retrieve(query, owner_id, **retrieval_options)
        return await self.generate(
            query, results, prior_messages, threshold=retrieval_options.get("threshold")
        )

    async def generate(
        self,
        query: str,
        results: List[RetrievedChunk],
        prior_messages: Optional[List[Dict[str, str]]] = None,
        threshold: Optional[float] = None,
    ) -> Answer:
        """Answer a query from already-retrieved results.

        Raises:
            GenerationError: If the model call fails or returns nothing
        """
        if not results:
            logger.info("no_relevant_context_found", query_length=len(query))
            return Answer(text=NO_CONTEXT_ANSWER, sources=[], results=[])

        context, used = self.build_context(results)
        messages = self.build_messages(query, context, prior_messages)

        try:
            response = await self.llm.chat(messages, model=self.model, temperature=self.temperature)
        except (httpx.HTTPError, OllamaResponseError) as e:
            logger.error("generation_failed", error=str(e), error_type=type(e).__name__)
            raise GenerationError(f"Language model call failed: {e}", results=results) from e

        text = response.get("message", {}).get("content", "")
        if not text:
            logger.error("empty_generation_response", model=self.model)
            raise GenerationError("Empty response from language model", results=results)

        sources = self.select_sources(used, threshold)

        logger.info(
            "answer_generated",
            context_chunks=len(used),
            context_length=len(context),
            sources=len(sources),
            response_length=len(text),
        )

        return Answer(text=text, sources=sources, results=results)

    async def stream_answer(
        self,
        query: str,
        owner_id: str,
        prior_messages: Optional[List[Dict[str, str]]] = None,
        **retrieval_options: Any,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Retrieve and answer as a stream of events.

        Yields ``status``, ``content``, ``sources`` and ``done`` events. A
        failure yields a single ``error`` event and ends the stream.
        """
        yield event("status", "retrieving")

        try:
            retriever = await self._ensure_retriever()
            results = await retriever.retrieve(query, owner_id, **retrieval_options)
        except GroundRAGError as e:
            logger.error("stream_retrieval_failed", error=str(e), error_type=type(e).__name__)
            yield error_event(e)
            return

        stream = self.stream_generate(
            query, results, prior_messages, threshold=retrieval_options.get("threshold")
        )
        try:
            async for item in stream:
                yield item
        finally:
            await stream.aclose()

    async def stream_generate(
        self,
        query: str,
        results: List[RetrievedChunk],
        prior_messages: Optional[List[Dict[str, str]]] = None,
        threshold: Optional[float] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Stream an answer from already-retrieved results.

        Closing this iterator closes the upstream model stream.
        """
        if not results:
            logger.info("no_relevant_context_found", query_length=len(query))
            yield event("content", NO_CONTEXT_ANSWER)
            yield event("sources", [])
            yield event("done", {"response": NO_CONTEXT_ANSWER})
            return

        context, used = self.build_context(results)
        messages = self.build_messages(query, context, prior_messages)

        yield event("status", "generating")

        fragments = []
        upstream = self.llm.chat_stream(messages, model=self.model, temperature=self.temperature)
        try:
            async for fragment in upstream:
                fragments.append(fragment)
                yield event("content", fragment)
        except (httpx.HTTPError, OllamaResponseError) as e:
            logger.error(
                "stream_generation_failed",
                error=str(e),
                error_type=type(e).__name__,
                fragments=len(fragments),
            )
            yield error_event(GenerationError(f"Language model stream failed: {e}", results=results))
            return
        finally:
            await upstream.aclose()

        text = "".join(fragments)
        sources = self.select_sources(used, threshold)

        logger.info(
            "answer_streamed",
            context_chunks=len(used),
            sources=len(sources),
            response_length=len(text),
        )

        yield event("sources", sources)
        yield event("done", {"response": text})


# Singleton instance for convenience
_generator_instance: Optional[Generator] = None


async def get_generator() -> Generator:
    """Get or create a singleton generator instance."""
    global _generator_instance
    if _generator_instance is None:
        _generator_instance = Generator(retriever=await get_retriever())
    return _generator_instance
