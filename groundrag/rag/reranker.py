"""LLM re-ranking of retrieval candidates.

The model is asked for a JSON array of candidate indices. Its answer is
parsed defensively; anything unusable falls back to the incoming order so
that re-ranking can never fail a retrieval.
"""
import json
import re
from typing import List, Optional

import httpx
import structlog

from groundrag import config
from groundrag.errors import RerankParseError
from groundrag.llm_client import OllamaClient, OllamaResponseError, ollama_client
from groundrag.rag.types import RetrievedChunk

logger = structlog.get_logger()

RERANK_PROMPT = """You rank passages by how well they answer a question.

Question: {query}

Passages:
{passages}

Return the indices of the {top_k} most relevant passages, most relevant first, \
as a JSON array of integers such as [2, 0, 5]. Respond with the JSON array only."""

# Characters of each passage shown to the model
PASSAGE_PREVIEW_CHARS = 500

_CODE_BLOCK = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def parse_rerank_indices(text: str, candidate_count: int) -> List[int]:
    """Extract candidate indices from a model answer.

    Handles markdown code blocks and surrounding prose. Duplicates are
    dropped, keeping the first occurrence.

    Raises:
        RerankParseError: If no JSON array of in-range integers can be found
    """
    code_block = _CODE_BLOCK.search(text)
    if code_block:
        text = code_block.group(1)

    start = text.find("[")
    end = text.find("]", start + 1)
    if start == -1 or end == -1:
        raise RerankParseError("No JSON array in re-rank answer", {"preview": text[:100]})

    try:
        values = json.loads(text[start : end + 1])
    except ValueError as e:
        raise RerankParseError(f"Invalid JSON in re-rank answer: {e}", {"preview": text[:100]}) from e

    indices: List[int] = []
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int):
            raise RerankParseError("Re-rank answer contains a non-integer", {"value": repr(value)})
        if not 0 <= value < candidate_count:
            raise RerankParseError("Re-rank index out of range", {"value": value})
        if value not in indices:
            indices.append(value)

    if not indices:
        raise RerankParseError("Re-rank answer is empty")

    return indices


class LLMReranker:
    """Re-orders candidates with a language model."""

    def __init__(self, llm: Optional[OllamaClient] = None, model: str = None):
        """Initialize the re-ranker.

        Args:
            llm: Chat client (default: the shared Ollama client)
            model: Chat model name (default from config)
        """
        self.llm = llm or ollama_client
        self.model = model or config.CHAT_MODEL

    def build_prompt(self, query: str, candidates: List[RetrievedChunk], top_k: int) -> str:
        passages = "\n\n".join(
            f"[{i}] {c.content[:PASSAGE_PREVIEW_CHARS].strip()}" for i, c in enumerate(candidates)
        )
        return RERANK_PROMPT.format(query=query, passages=passages, top_k=top_k)

    async def rerank(
        self,
        query: str,
        candidates: List[RetrievedChunk],
        top_k: int,
    ) -> List[RetrievedChunk]:
        """Pick and order the ``top_k`` most relevant candidates.

        Returns the first ``top_k`` candidates unchanged when there is
        nothing to choose from or when the model's answer is unusable.
        """
        if len(candidates) <= top_k:
            return candidates[:top_k]

        messages = [{"role": "user", "content": self.build_prompt(query, candidates, top_k)}]

        try:
            response = await self.llm.chat(messages, model=self.model, temperature=0.0)
            answer = response.get("message", {}).get("content", "")
            indices = parse_rerank_indices(answer, len(candidates))
        except RerankParseError as e:
            logger.warning("rerank_parse_failed", error=str(e), candidates=len(candidates))
            return candidates[:top_k]
        except (httpx.HTTPError, OllamaResponseError) as e:
            logger.warning(
                "rerank_llm_failed",
                error=str(e),
                error_type=type(e).__name__,
                candidates=len(candidates),
            )
            return candidates[:top_k]

        chosen = [candidates[i] for i in indices[:top_k]]
        if len(chosen) < top_k:
            picked = set(indices)
            chosen.extend(c for i, c in enumerate(candidates) if i not in picked)

        logger.info(
            "rerank_completed",
            candidates=len(candidates),
            model_picks=len(indices),
            returned=min(top_k, len(chosen)),
        )

        return chosen[:top_k]
