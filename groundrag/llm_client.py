"""Ollama LLM client wrapper with error handling."""
import json
from typing import AsyncIterator, Dict, List, Optional

import httpx
import structlog

from groundrag import config

logger = structlog.get_logger()


class OllamaResponseError(RuntimeError):
    """Raised when Ollama answers 2xx but the payload is an error or not JSON."""


def _decode(text: str) -> Dict:
    try:
        data = json.loads(text)
    except ValueError as e:
        raise OllamaResponseError(f"Invalid JSON from Ollama: {e}") from e
    if not isinstance(data, dict):
        raise OllamaResponseError(f"Expected a JSON object from Ollama, got {type(data).__name__}")
    return data


class OllamaClient:
    """Async client for interacting with Ollama API."""

    def __init__(
        self,
        base_url: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            timeout: Request timeout in seconds (defaults to config.LLM_TIMEOUT)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url or config.OLLAMA_BASE_URL
        self.timeout = timeout or config.LLM_TIMEOUT
        self.transport = transport

    def _chat_payload(
        self,
        messages: List[Dict[str, str]],
        model: str,
        stream: bool,
        temperature: Optional[float],
    ) -> Dict:
        payload = {
            "model": model,
            "messages": messages,
            "stream": stream,
        }
        if temperature is not None:
            payload["options"] = {"temperature": temperature}
        return payload

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> Dict:
        """Send a non-streaming chat completion request to Ollama.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to config.CHAT_MODEL)
            temperature: Sampling temperature (0.0-2.0)

        Returns:
            Response dict with 'message' containing 'content'

        Raises:
            httpx.HTTPError: On API errors, timeouts, or if Ollama is unavailable
            OllamaResponseError: If the response body is not a JSON object
        """
        model = model or config.CHAT_MODEL
        payload = self._chat_payload(messages, model, False, temperature)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                logger.info(
                    "ollama_chat_request",
                    model=model,
                    message_count=len(messages),
                )

                response = await client.post(
                    f"{self.base_url}/api/chat",
                    json=payload,
                )
                response.raise_for_status()

                data = _decode(response.text)

                logger.info(
                    "ollama_chat_response",
                    model=model,
                    response_length=len(data.get("message", {}).get("content", "")),
                )

                return data

        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise
        except httpx.HTTPError as e:
            logger.error(
                "ollama_http_error",
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise

    async def chat_stream(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[str]:
        """Stream a chat completion from Ollama, yielding text fragments.

        Ollama streams newline-delimited JSON objects; each carries a
        ``message.content`` fragment and the last one has ``done: true``.
        Closing the iterator early closes the HTTP response, which stops
        generation upstream.

        Raises:
            httpx.HTTPError: On API errors or timeouts
            OllamaResponseError: If the stream reports an error or a line is not JSON
        """
        model = model or config.CHAT_MODEL
        payload = self._chat_payload(messages, model, True, temperature)

        logger.info(
            "ollama_chat_stream_request",
            model=model,
            message_count=len(messages),
        )

        fragments = 0
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                async with client.stream(
                    "POST", f"{self.base_url}/api/chat", json=payload
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        data = _decode(line)
                        if "error" in data:
                            raise OllamaResponseError(str(data["error"]))
                        content = data.get("message", {}).get("content", "")
                        if content:
                            fragments += 1
                            yield content
                        if data.get("done"):
                            break
        except httpx.HTTPError as e:
            logger.error("ollama_stream_error", error=str(e), fragments=fragments)
            raise
        finally:
            logger.info("ollama_chat_stream_closed", model=model, fragments=fragments)

    async def embed(
        self,
        inputs: List[str],
        model: str = None,
    ) -> List[List[float]]:
        """Generate embeddings for a batch of texts.

        Args:
            inputs: Texts to embed, in order
            model: Model to use (defaults to config.EMBEDDING_MODEL)

        Returns:
            One embedding per input, in input order

        Raises:
            httpx.HTTPError: On API errors or timeouts
            OllamaResponseError: If the response is not JSON or does not match the input
        """
        model = model or config.EMBEDDING_MODEL

        payload = {
            "model": model,
            "input": inputs,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                logger.debug(
                    "ollama_embedding_request",
                    model=model,
                    batch_size=len(inputs),
                )

                response = await client.post(
                    f"{self.base_url}/api/embed",
                    json=payload,
                )
                response.raise_for_status()

                data = _decode(response.text)

        except httpx.HTTPError as e:
            logger.error("ollama_embedding_error", error=str(e), batch_size=len(inputs))
            raise

        embeddings = data.get("embeddings") or []
        if len(embeddings) != len(inputs):
            raise OllamaResponseError(
                f"Expected {len(inputs)} embeddings, got {len(embeddings)}"
            )

        logger.debug(
            "ollama_embedding_response",
            model=model,
            dimension=len(embeddings[0]) if embeddings else 0,
        )

        return embeddings

    async def list_models(self) -> List[str]:
        """List all available Ollama models.

        Returns:
            List of model names

        Raises:
            httpx.HTTPError: On API errors
            OllamaResponseError: If the response body is not a JSON object
        """
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self.transport) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = _decode(response.text)
                return [m["name"] for m in data.get("models", [])]
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise


# Global client instance
ollama_client = OllamaClient()
