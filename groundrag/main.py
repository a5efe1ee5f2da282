"""Main Quart application for the grounded RAG service."""
import json
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator
from quart import Quart, jsonify, make_response, request

from groundrag import config, db
from groundrag.errors import (
    DimensionMismatch,
    EmbeddingServiceError,
    ExtractionError,
    GenerationError,
    GroundRAGError,
    UnsupportedFormat,
    VectorStoreError,
)
from groundrag.llm_client import OllamaResponseError, ollama_client
from groundrag.logging_config import configure_logging
from groundrag.memory import ConversationManager
from groundrag.rag.generator import Generator, event, get_generator
from groundrag.rag.ingest import IngestPipeline
from groundrag.rag.store_faiss import get_vector_store

configure_logging()

logger = structlog.get_logger()

# Initialize Quart app
app = Quart(__name__)
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES

# Initialize conversation manager
conversation_manager = ConversationManager()

# Pipeline components, created on first use
_pipeline: Optional[IngestPipeline] = None
_generator: Optional[Generator] = None

ERROR_STATUS = {
    UnsupportedFormat: 415,
    ExtractionError: 422,
    DimensionMismatch: 422,
    EmbeddingServiceError: 502,
    GenerationError: 502,
    VectorStoreError: 502,
}


class ChatRequest(BaseModel):
    """Body of a chat request."""
    message: str = Field(..., min_length=1, max_length=config.MAX_MESSAGE_LENGTH)
    owner_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    top_k: Optional[int] = Field(None, ge=1, le=50)
    threshold: Optional[float] = Field(None, ge=-1.0, le=1.0)
    expand: bool = False
    hybrid: bool = False
    rerank: bool = False
    stream: bool = False

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message cannot be empty")
        return value

    def retrieval_options(self) -> Dict[str, Any]:
        options = {
            "top_k": self.top_k,
            "threshold": self.threshold,
            "expand": self.expand,
            "hybrid": self.hybrid,
            "rerank": self.rerank,
        }
        return {key: value for key, value in options.items() if value is not None}


class SessionRequest(BaseModel):
    """Body of a session creation request."""
    owner_id: str = Field(..., min_length=1)
    title: Optional[str] = Field(None, max_length=200)


async def get_pipeline() -> IngestPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = IngestPipeline(vector_store=await get_vector_store())
    return _pipeline


async def get_chat_generator() -> Generator:
    global _generator
    if _generator is None:
        _generator = await get_generator()
    return _generator


def _validation_response(error: ValidationError):
    details = [
        {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
        for err in error.errors()
    ]
    return jsonify({"error": "Invalid request", "details": details}), 400


def _sse(item: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(item)}\n\n".encode("utf-8")


def _owned_session(session_id: str, owner_id: str) -> Optional[Dict[str, Any]]:
    session = conversation_manager.get_session(session_id)
    if not session or session["owner_id"] != owner_id:
        return None
    return session


@app.route("/api/documents", methods=["POST"])
async def upload_document():
    """Ingest one document sent as the raw request body.

    Query parameters: ``owner_id`` (required), ``filename`` (optional).
    The ``Content-Type`` header declares the document format.

    Returns JSON:
    {
        "document_id": "hex id",
        "chunk_count": 12
    }
    """
    owner_id = request.args.get("owner_id")
    if not owner_id:
        return jsonify({"error": "Missing 'owner_id' query parameter"}), 400

    data = await request.get_data()
    if not data:
        return jsonify({"error": "Empty document body"}), 400

    metadata = {}
    filename = request.args.get("filename")
    if filename:
        metadata["filename"] = filename

    pipeline = await get_pipeline()
    result = await pipeline.ingest_document(
        data, request.content_type or "", owner_id, metadata
    )

    logger.info(
        "document_upload_completed",
        document_id=result.document_id,
        owner_id=owner_id,
        chunk_count=result.chunk_count,
    )

    return jsonify({"document_id": result.document_id, "chunk_count": result.chunk_count}), 201


@app.route("/api/documents", methods=["GET"])
async def list_documents():
    """List an owner's documents."""
    owner_id = request.args.get("owner_id")
    if not owner_id:
        return jsonify({"error": "Missing 'owner_id' query parameter"}), 400

    return jsonify({"documents": db.list_documents(owner_id)})


@app.route("/api/documents/<document_id>", methods=["DELETE"])
async def delete_document(document_id: str):
    """Delete a document with its chunks and vectors.

    Returns:
        204 No Content if successful
        404 Not Found if the owner has no such document
    """
    owner_id = request.args.get("owner_id")
    if not owner_id:
        return jsonify({"error": "Missing 'owner_id' query parameter"}), 400

    pipeline = await get_pipeline()
    if await pipeline.delete_document(document_id, owner_id):
        return "", 204
    return jsonify({"error": "Document not found"}), 404


@app.route("/api/chat", methods=["POST"])
async def chat():
    """Answer a question grounded in the owner's documents.

    Expects JSON body:
    {
        "message": "user message text",
        "owner_id": "owner",
        "session_id": "optional-session-id",  // creates new if not provided
        "top_k": 5, "threshold": 0.7,         // optional overrides
        "expand": false, "hybrid": false, "rerank": false,
        "stream": false
    }

    Returns JSON:
    {
        "response": "assistant response text",
        "model": "model_name",
        "session_id": "session-id",
        "sources": [...]
    }

    With ``"stream": true`` the response is ``text/event-stream`` and each
    event is a JSON object with ``type`` and ``payload``.
    """
    data = await request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    try:
        chat_request = ChatRequest.model_validate(data)
    except ValidationError as e:
        logger.warning("invalid_chat_request", errors=len(e.errors()))
        return _validation_response(e)

    session_id = chat_request.session_id
    if session_id:
        if _owned_session(session_id, chat_request.owner_id) is None:
            return jsonify({"error": "Session not found"}), 404
    else:
        session_id = conversation_manager.create_session(
            chat_request.owner_id, title=chat_request.message[:80]
        )
        logger.info("new_session_created", session_id=session_id)

    logger.info(
        "chat_request_received",
        session_id=session_id,
        message_length=len(chat_request.message),
        stream=chat_request.stream,
        expand=chat_request.expand,
        hybrid=chat_request.hybrid,
        rerank=chat_request.rerank,
    )

    # History is read before the new turn is stored; the generator appends the query
    history = conversation_manager.format_conversation_history(session_id)
    conversation_manager.add_message(session_id, "user", chat_request.message)

    generator = await get_chat_generator()
    options = chat_request.retrieval_options()

    if chat_request.stream:
        return await _stream_chat(generator, chat_request, session_id, history, options)

    answer = await generator.answer(
        chat_request.message, chat_request.owner_id, history, **options
    )

    conversation_manager.add_message(session_id, "assistant", answer.text, answer.sources)

    logger.info(
        "chat_response_sent",
        session_id=session_id,
        response_length=len(answer.text),
        sources=len(answer.sources),
    )

    return jsonify({
        "response": answer.text,
        "model": generator.model,
        "session_id": session_id,
        "sources": answer.sources,
    })


async def _stream_chat(
    generator: Generator,
    chat_request: ChatRequest,
    session_id: str,
    history: List[Dict[str, str]],
    options: Dict[str, Any],
):
    async def send_events():
        stream = generator.stream_answer(
            chat_request.message, chat_request.owner_id, history, **options
        )
        sources: List[Dict[str, Any]] = []
        try:
            async for item in stream:
                if item["type"] == "sources":
                    sources = item["payload"]
                elif item["type"] == "done":
                    text = item["payload"]["response"]
                    conversation_manager.add_message(session_id, "assistant", text, sources)
                    item = event("done", {"response": text, "session_id": session_id})
                yield _sse(item)
        finally:
            await stream.aclose()
            logger.info("chat_stream_closed", session_id=session_id)

    response = await make_response(
        send_events(),
        {
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "X-Session-Id": session_id,
        },
    )
    response.timeout = None
    return response


@app.route("/api/sessions", methods=["POST"])
async def create_session():
    """Create a new chat session.

    Expects JSON body:
    {
        "owner_id": "owner",
        "title": "optional title"
    }
    """
    data = await request.get_json(silent=True) or {}
    try:
        session_request = SessionRequest.model_validate(data)
    except ValidationError as e:
        return _validation_response(e)

    session_id = conversation_manager.create_session(
        session_request.owner_id, session_request.title
    )
    return jsonify(conversation_manager.get_session(session_id)), 201


@app.route("/api/sessions", methods=["GET"])
async def list_sessions():
    """List an owner's sessions, most recent first."""
    owner_id = request.args.get("owner_id")
    if not owner_id:
        return jsonify({"error": "Missing 'owner_id' query parameter"}), 400

    return jsonify({"sessions": conversation_manager.list_sessions(owner_id)})


@app.route("/api/sessions/<session_id>", methods=["DELETE"])
async def delete_session_endpoint(session_id: str):
    """Delete a session and all its messages.

    Query parameters: ``owner_id`` (required).

    Returns:
        204 No Content if successful
        404 Not Found if the owner has no such session
    """
    owner_id = request.args.get("owner_id")
    if not owner_id:
        return jsonify({"error": "Missing 'owner_id' query parameter"}), 400

    if _owned_session(session_id, owner_id) is None:
        return jsonify({"error": "Session not found"}), 404

    conversation_manager.delete_session(session_id)
    return "", 204


@app.route("/api/sessions/<session_id>/messages", methods=["GET"])
async def get_session_messages(session_id: str):
    """Get all messages for a session, with the sources of each answer.

    Query parameters: ``owner_id`` (required).
    """
    owner_id = request.args.get("owner_id")
    if not owner_id:
        return jsonify({"error": "Missing 'owner_id' query parameter"}), 400

    if _owned_session(session_id, owner_id) is None:
        return jsonify({"error": "Session not found"}), 404

    return jsonify({"messages": conversation_manager.get_all_messages(session_id)})


@app.route("/health/ready")
async def health_ready():
    """Readiness check: whether the app can serve requests.

    Checks:
    - Ollama service is reachable
    - Chat and embedding models are available
    """
    checks = {
        "status": "healthy",
        "ollama": False,
        "models": False,
    }

    try:
        models = await ollama_client.list_models()
    except (httpx.HTTPError, OllamaResponseError) as e:
        logger.error("health_check_failed", error=str(e))
        checks["status"] = "unhealthy"
        checks["error"] = str(e)
        return jsonify(checks), 503

    checks["ollama"] = True
    missing = [m for m in (config.CHAT_MODEL, config.EMBEDDING_MODEL) if m not in models]
    if missing:
        checks["status"] = "unhealthy"
        checks["error"] = f"Missing models: {', '.join(missing)}"
    else:
        checks["models"] = True

    status_code = 200 if checks["status"] == "healthy" else 503
    return jsonify(checks), status_code


@app.route("/health/live")
async def health_live():
    """Liveness check: whether the app is running."""
    return jsonify({"status": "alive"}), 200


@app.errorhandler(GroundRAGError)
async def pipeline_error(error: GroundRAGError):
    """Map pipeline errors to HTTP responses."""
    status = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(error, error_type)),
        500,
    )
    logger.error(
        "pipeline_request_failed",
        error=str(error),
        error_type=type(error).__name__,
        status=status,
    )
    return jsonify({
        "error": type(error).__name__,
        "message": error.message,
        "details": error.details,
    }), status


@app.errorhandler(404)
async def not_found(error):
    """Handle 404 errors."""
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
async def internal_error(error):
    """Handle 500 errors."""
    logger.error("internal_server_error", error=str(error))
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    # For development - serve with hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
