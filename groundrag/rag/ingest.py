"""Ingest pipeline for indexing uploaded documents.

Orchestrates:
- Text extraction
- Text chunking
- Embedding generation
- Vector, chunk and full-text storage
- Document deletion across all stores
"""
import asyncio
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog

from groundrag import config, db
from groundrag.errors import GroundRAGError, VectorStoreError
from groundrag.rag.chunker import TextChunk, TextChunker
from groundrag.rag.embedder import EmbeddingClient, get_embedder
from groundrag.rag.extractors import DocumentProcessor, get_processor
from groundrag.rag.store_faiss import FAISSVectorStore, VectorRecord, get_vector_store

logger = structlog.get_logger()

SCALAR_TYPES = (str, int, float, bool)


@dataclass
class IngestRequest:
    """One document to ingest."""

    data: bytes
    mime_type: str
    owner_id: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestResult:
    document_id: str
    chunk_count: int


@dataclass
class IngestOutcome:
    """Per-document result of a batch ingestion."""

    filename: Optional[str]
    document_id: Optional[str] = None
    chunk_count: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def chunk_id_for(document_id: str, chunk_index: int) -> str:
    return f"{document_id}:{chunk_index}"


class IngestPipeline:
    """Pipeline for ingesting documents into the RAG system."""

    def __init__(
        self,
        processor: Optional[DocumentProcessor] = None,
        chunker: Optional[TextChunker] = None,
        embedder: Optional[EmbeddingClient] = None,
        vector_store: Optional[FAISSVectorStore] = None,
        chunk_size: int = None,
        chunk_overlap: int = None,
        max_concurrency: int = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            processor: Document processor (default singleton)
            chunker: Text chunker (built from chunk_size/chunk_overlap if not provided)
            embedder: Embedding client (default singleton)
            vector_store: Vector store (default singleton, loaded lazily)
            chunk_size: Chunk size in characters (default from config)
            chunk_overlap: Chunk overlap in characters (default from config)
            max_concurrency: Documents ingested at once by ingest_many
        """
        self.processor = processor or get_processor()
        self.chunker = chunker or TextChunker(chunk_size=chunk_size, chunk_overlap=chunk_overlap)
        self.embedder = embedder or get_embedder()
        self.vector_store = vector_store
        self.max_concurrency = max_concurrency or config.INGEST_CONCURRENCY

        self.stats = self._empty_stats()

        logger.info(
            "ingest_pipeline_initialized",
            embedding_model=self.embedder.model,
            chunk_size=self.chunker.chunk_size,
            chunk_overlap=self.chunker.chunk_overlap,
            max_concurrency=self.max_concurrency,
        )

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "documents_processed": 0,
            "documents_failed": 0,
            "chunks_created": 0,
            "embeddings_generated": 0,
        }

    async def _ensure_vector_store(self) -> FAISSVectorStore:
        if self.vector_store is None:
            self.vector_store = await get_vector_store()
        elif self.vector_store.index is None:
            await self.vector_store.init_or_load()
        return self.vector_store

    def _chunk_metadata(
        self,
        document_id: str,
        owner_id: str,
        doc_metadata: Dict[str, Any],
        chunk: TextChunk,
        total_chunks: int,
    ) -> Dict[str, Any]:
        metadata = {
            key: value for key, value in doc_metadata.items() if isinstance(value, SCALAR_TYPES)
        }
        metadata.update(
            {
                "document_id": document_id,
                "owner_id": owner_id,
                "chunk_index": chunk.chunk_index,
                "total_chunks": total_chunks,
                "char_start": chunk.char_start,
                "char_end": chunk.char_end,
            }
        )
        return metadata

    async def ingest_document(
        self,
        data: bytes,
        mime_type: str,
        owner_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        save: bool = True,
    ) -> IngestResult:
        """Ingest a single document.

        Args:
            data: Raw document bytes
            mime_type: Declared MIME type
            owner_id: Owning tenant/user
            metadata: Caller metadata (filename, ...)
            save: Persist the vector index when done

        Returns:
            IngestResult with the new document id and its chunk count

        Raises:
            UnsupportedFormat: If the MIME type is not supported
            ExtractionError: If no text can be extracted
            EmbeddingServiceError: If embedding fails
            DimensionMismatch: If embeddings do not fit the index
            VectorStoreError: If vectors or rows cannot be stored
        """
        metadata = dict(metadata or {})
        document_id = uuid.uuid4().hex

        logger.info(
            "ingesting_document",
            document_id=document_id,
            owner_id=owner_id,
            mime_type=mime_type,
            size_bytes=len(data),
        )

        extracted = await asyncio.to_thread(self.processor.extract, data, mime_type)

        doc_metadata = {**extracted.metadata, **metadata}
        doc_metadata.setdefault("uploaded_at", datetime.now(timezone.utc).isoformat())
        doc_metadata["format"] = extracted.format

        chunks = self.chunker.chunk_text(extracted.text)
        if not chunks:
            logger.warning("no_chunks_created", document_id=document_id)

        store = await self._ensure_vector_store()

        records = []
        rows = []
        if chunks:
            embeddings = await self.embedder.embed([chunk.content for chunk in chunks])
            self.stats["embeddings_generated"] += len(embeddings)

            for chunk, embedding in zip(chunks, embeddings):
                chunk_id = chunk_id_for(document_id, chunk.chunk_index)
                chunk_metadata = self._chunk_metadata(
                    document_id, owner_id, doc_metadata, chunk, len(chunks)
                )
                records.append(VectorRecord(id=chunk_id, vector=embedding, metadata=chunk_metadata))
                rows.append(
                    {
                        "id": chunk_id,
                        "chunk_index": chunk.chunk_index,
                        "content": chunk.content,
                        "char_start": chunk.char_start,
                        "char_end": chunk.char_end,
                        "metadata": chunk_metadata,
                    }
                )

            await store.upsert(records)

        try:
            await asyncio.to_thread(
                db.insert_document,
                document_id,
                owner_id,
                mime_type,
                rows,
                metadata.get("filename"),
                doc_metadata,
            )
        except sqlite3.Error as e:
            if records:
                await store.delete(ids=[r.id for r in records])
            raise VectorStoreError(
                f"Failed to store document rows: {e}", details={"document_id": document_id}
            ) from e

        if save:
            await store.save_index()

        self.stats["documents_processed"] += 1
        self.stats["chunks_created"] += len(chunks)

        logger.info(
            "document_ingested",
            document_id=document_id,
            owner_id=owner_id,
            chunks_created=len(chunks),
        )

        return IngestResult(document_id=document_id, chunk_count=len(chunks))

    async def ingest_many(
        self, requests: Sequence[IngestRequest], progress_callback=None
    ) -> List[IngestOutcome]:
        """Ingest several documents concurrently.

        A failing document is reported in its outcome and never affects
        the others.

        Args:
            requests: Documents to ingest
            progress_callback: Optional callback function(done, total, outcome)

        Returns:
            One IngestOutcome per request, in request order
        """
        semaphore = asyncio.Semaphore(self.max_concurrency)
        done = 0

        async def ingest_one(request: IngestRequest) -> IngestOutcome:
            nonlocal done
            filename = request.metadata.get("filename")
            async with semaphore:
                try:
                    result = await self.ingest_document(
                        request.data,
                        request.mime_type,
                        request.owner_id,
                        request.metadata,
                        save=False,
                    )
                    outcome = IngestOutcome(
                        filename=filename,
                        document_id=result.document_id,
                        chunk_count=result.chunk_count,
                    )
                except GroundRAGError as e:
                    logger.error(
                        "document_ingestion_failed",
                        filename=filename,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    self.stats["documents_failed"] += 1
                    outcome = IngestOutcome(
                        filename=filename,
                        error=e.message,
                        error_type=type(e).__name__,
                    )

            done += 1
            if progress_callback:
                progress_callback(done, len(requests), outcome)
            return outcome

        logger.info("ingest_many_started", documents=len(requests))

        # Load the index once before the documents race for it
        await self._ensure_vector_store()

        outcomes = await asyncio.gather(*(ingest_one(request) for request in requests))

        if any(outcome.ok and outcome.chunk_count for outcome in outcomes):
            store = await self._ensure_vector_store()
            await store.save_index()

        logger.info(
            "ingest_many_completed",
            succeeded=sum(1 for o in outcomes if o.ok),
            failed=sum(1 for o in outcomes if not o.ok),
            stats=self.stats,
        )

        return list(outcomes)

    async def delete_document(self, document_id: str, owner_id: str) -> bool:
        """Delete a document from every store.

        Returns:
            True if deleted, False if it does not exist or belongs to another owner
        """
        document = await asyncio.to_thread(db.get_document, document_id)
        if document is None or document["owner_id"] != owner_id:
            logger.warning("document_not_found_for_delete", document_id=document_id)
            return False

        store = await self._ensure_vector_store()

        await asyncio.to_thread(db.delete_document, document_id)
        removed = await store.delete(filter={"document_id": document_id})
        await store.save_index()

        logger.info("document_removed", document_id=document_id, vectors_removed=removed)
        return True

    def reset_stats(self) -> None:
        self.stats = self._empty_stats()
