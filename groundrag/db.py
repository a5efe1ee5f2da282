"""Database initialization and helpers.

SQLite database for storing:
- Ingested documents and their chunks (chunks cascade with their document)
- An FTS5 full-text index over chunk content for keyword search
- Conversation sessions and messages with their cited sources
"""
import json
import re
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from groundrag import config

logger = structlog.get_logger()

DB_PATH = config.DB_PATH

# Word characters only; FTS5 query syntax is never passed through from users
_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_connection() -> sqlite3.Connection:
    """Get a connection to the SQLite database.

    Returns:
        sqlite3.Connection with row_factory set to sqlite3.Row and foreign keys on
    """
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_database() -> None:
    """Initialize the database schema.

    Creates tables if they don't exist:
    - documents: one row per ingested document
    - chunks: chunk text and positions, cascading from documents
    - chunks_fts: full-text index over chunk content
    - sessions / messages: conversation history
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                mime_type TEXT NOT NULL,
                filename TEXT,
                chunk_count INTEGER NOT NULL,
                metadata_json TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS chunks (
                id TEXT PRIMARY KEY,
                document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                owner_id TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                content TEXT NOT NULL,
                char_start INTEGER NOT NULL,
                char_end INTEGER NOT NULL,
                metadata_json TEXT,
                created_at TEXT NOT NULL,
                UNIQUE(document_id, chunk_index)
            )
        """)

        cursor.execute("""
            CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
                content,
                chunk_id UNINDEXED,
                document_id UNINDEXED,
                owner_id UNINDEXED,
                tokenize = 'porter unicode61'
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                sources_json TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_documents_owner ON documents(owner_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_sessions_owner ON sessions(owner_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id)")

        conn.commit()
        logger.info("database_initialized", db_path=str(DB_PATH))

    except Exception as e:
        conn.rollback()
        logger.error("database_init_failed", error=str(e))
        raise
    finally:
        conn.close()


def _row_to_dict(row: sqlite3.Row, json_field: str, target: str) -> Dict[str, Any]:
    item = dict(row)
    raw = item.pop(json_field, None)
    item[target] = json.loads(raw) if raw else ({} if target == "metadata" else None)
    return item


# ---------------------------------------------------------------------------
# Documents and chunks
# ---------------------------------------------------------------------------


def insert_document(
    document_id: str,
    owner_id: str,
    mime_type: str,
    chunks: List[Dict[str, Any]],
    filename: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Insert a document with all of its chunks in one transaction.

    Args:
        document_id: Document identifier
        owner_id: Owning tenant/user
        mime_type: Declared MIME type
        chunks: Dicts with id, chunk_index, content, char_start, char_end, metadata
        filename: Optional original filename
        metadata: Optional document metadata
    """
    conn = get_connection()
    cursor = conn.cursor()
    created_at = _now()

    try:
        cursor.execute("""
            INSERT INTO documents (
                id, owner_id, mime_type, filename, chunk_count, metadata_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            document_id,
            owner_id,
            mime_type,
            filename,
            len(chunks),
            json.dumps(metadata, default=str) if metadata else None,
            created_at,
        ))

        cursor.executemany("""
            INSERT INTO chunks (
                id, document_id, owner_id, chunk_index, content,
                char_start, char_end, metadata_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            (
                chunk["id"],
                document_id,
                owner_id,
                chunk["chunk_index"],
                chunk["content"],
                chunk["char_start"],
                chunk["char_end"],
                json.dumps(chunk.get("metadata"), default=str) if chunk.get("metadata") else None,
                created_at,
            )
            for chunk in chunks
        ])

        cursor.executemany("""
            INSERT INTO chunks_fts (content, chunk_id, document_id, owner_id)
            VALUES (?, ?, ?, ?)
        """, [(chunk["content"], chunk["id"], document_id, owner_id) for chunk in chunks])

        conn.commit()
        logger.info("document_inserted", document_id=document_id, chunk_count=len(chunks))

    except Exception as e:
        conn.rollback()
        logger.error("document_insert_failed", error=str(e), document_id=document_id)
        raise
    finally:
        conn.close()


def get_document(document_id: str) -> Optional[Dict[str, Any]]:
    """Get a document row (without chunks), or None if not found."""
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        return _row_to_dict(row, "metadata_json", "metadata") if row else None
    finally:
        conn.close()


def list_documents(owner_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    """List an owner's documents, most recent first."""
    conn = get_connection()
    try:
        rows = conn.execute("""
            SELECT * FROM documents
            WHERE owner_id = ?
            ORDER BY created_at DESC
            LIMIT ?
        """, (owner_id, limit)).fetchall()
        return [_row_to_dict(row, "metadata_json", "metadata") for row in rows]
    finally:
        conn.close()


def delete_document(document_id: str) -> bool:
    """Delete a document, its chunks and their full-text rows.

    Returns:
        True if deleted, False if not found
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("DELETE FROM chunks_fts WHERE document_id = ?", (document_id,))
        cursor.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        deleted = cursor.rowcount > 0
        conn.commit()

        if deleted:
            logger.info("document_deleted", document_id=document_id)
        return deleted

    except Exception as e:
        conn.rollback()
        logger.error("document_delete_failed", error=str(e), document_id=document_id)
        raise
    finally:
        conn.close()


def get_chunks_by_ids(chunk_ids: List[str]) -> List[Dict[str, Any]]:
    """Retrieve chunks by id.

    Args:
        chunk_ids: Chunk identifiers

    Returns:
        List of chunk dictionaries (order not guaranteed)
    """
    if not chunk_ids:
        return []

    conn = get_connection()

    try:
        placeholders = ",".join("?" * len(chunk_ids))
        rows = conn.execute(f"""
            SELECT
                id, document_id, owner_id, chunk_index, content,
                char_start, char_end, metadata_json, created_at
            FROM chunks
            WHERE id IN ({placeholders})
        """, list(chunk_ids)).fetchall()

        return [_row_to_dict(row, "metadata_json", "metadata") for row in rows]

    except Exception as e:
        logger.error("chunks_retrieval_failed", error=str(e))
        raise
    finally:
        conn.close()


def build_match_query(text: str) -> Optional[str]:
    """Turn free text into an FTS5 query that ORs its quoted terms."""
    tokens = []
    for token in _TOKEN_PATTERN.findall(text.lower()):
        if token not in tokens:
            tokens.append(token)
    if not tokens:
        return None
    return " OR ".join(f'"{token}"' for token in tokens)


def keyword_search(
    query: str,
    owner_id: str,
    limit: int = 10,
    document_id: Optional[str] = None,
    filters: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """Full-text search over an owner's chunks ranked by BM25.

    Args:
        query: Free-text query
        owner_id: Only this owner's chunks are searched
        limit: Maximum number of chunks
        document_id: Optional restriction to one document
        filters: Exact-match constraints on chunk metadata

    Returns:
        Chunk dictionaries, best match first
    """
    match = build_match_query(query)
    if match is None or limit <= 0:
        return []

    sql = """
        SELECT chunk_id, bm25(chunks_fts) AS rank
        FROM chunks_fts
        WHERE chunks_fts MATCH ? AND owner_id = ?
    """
    params: List[Any] = [match, owner_id]
    if document_id is not None:
        sql += " AND document_id = ?"
        params.append(document_id)
    if filters:
        conditions = []
        for key, value in filters.items():
            conditions.append("json_extract(metadata_json, ?) = ?")
            params.append(f'$."{key}"')
            params.append(value if isinstance(value, (str, int, float)) else json.dumps(value))
        sql += " AND chunk_id IN (SELECT id FROM chunks WHERE " + " AND ".join(conditions) + ")"
    sql += " ORDER BY rank, chunk_id LIMIT ?"
    params.append(limit)

    conn = get_connection()
    try:
        ranked = [row["chunk_id"] for row in conn.execute(sql, params).fetchall()]
    except Exception as e:
        logger.error("keyword_search_failed", error=str(e), query_preview=query[:100])
        raise
    finally:
        conn.close()

    by_id = {chunk["id"]: chunk for chunk in get_chunks_by_ids(ranked)}
    results = [by_id[chunk_id] for chunk_id in ranked if chunk_id in by_id]

    logger.debug("keyword_search_completed", results_found=len(results))
    return results


def clear_all_documents() -> int:
    """Delete all documents, chunks and full-text rows.

    Used when rebuilding the vector index from scratch.

    Returns:
        Number of documents deleted
    """
    conn = get_connection()
    cursor = conn.cursor()

    try:
        cursor.execute("SELECT COUNT(*) FROM documents")
        count = cursor.fetchone()[0]

        cursor.execute("DELETE FROM chunks_fts")
        cursor.execute("DELETE FROM documents")
        conn.commit()

        logger.info("documents_cleared", count=count)
        return count

    except Exception as e:
        conn.rollback()
        logger.error("documents_clear_failed", error=str(e))
        raise
    finally:
        conn.close()


def get_chunk_count(owner_id: Optional[str] = None) -> int:
    """Get the total number of chunks, optionally for one owner."""
    conn = get_connection()
    try:
        if owner_id is None:
            return conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        return conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE owner_id = ?", (owner_id,)
        ).fetchone()[0]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


def create_session(session_id: str, owner_id: str, title: Optional[str] = None) -> None:
    """Create a conversation session."""
    conn = get_connection()
    try:
        conn.execute(
            "INSERT INTO sessions (id, owner_id, title, created_at) VALUES (?, ?, ?, ?)",
            (session_id, owner_id, title, _now()),
        )
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error("session_create_failed", error=str(e), session_id=session_id)
        raise
    finally:
        conn.close()


def get_session(session_id: str) -> Optional[Dict[str, Any]]:
    """Get a session row, or None if not found."""
    conn = get_connection()
    try:
        row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_sessions(owner_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """List an owner's sessions, most recent first."""
    conn = get_connection()
    try:
        rows = conn.execute("""
            SELECT * FROM sessions
            WHERE owner_id = ?
            ORDER BY created_at DESC
            LIMIT ?
        """, (owner_id, limit)).fetchall()
        return [dict(row) for row in rows]
    finally:
        conn.close()


def delete_session(session_id: str) -> bool:
    """Delete a session and (by cascade) its messages."""
    conn = get_connection()
    try:
        cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        conn.commit()
        return cursor.rowcount > 0
    except Exception as e:
        conn.rollback()
        logger.error("session_delete_failed", error=str(e), session_id=session_id)
        raise
    finally:
        conn.close()


def add_message(
    session_id: str,
    role: str,
    content: str,
    sources: Optional[List[Dict[str, Any]]] = None,
) -> int:
    """Append a message to a session.

    Returns:
        ID of the inserted message
    """
    conn = get_connection()
    try:
        cursor = conn.execute("""
            INSERT INTO messages (session_id, role, content, sources_json, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (
            session_id,
            role,
            content,
            json.dumps(sources) if sources else None,
            _now(),
        ))
        conn.commit()
        return cursor.lastrowid
    except Exception as e:
        conn.rollback()
        logger.error("message_insert_failed", error=str(e), session_id=session_id)
        raise
    finally:
        conn.close()


def get_messages(session_id: str) -> List[Dict[str, Any]]:
    """Get all messages for a session in chronological order."""
    conn = get_connection()
    try:
        rows = conn.execute("""
            SELECT id, role, content, sources_json, created_at
            FROM messages
            WHERE session_id = ?
            ORDER BY id
        """, (session_id,)).fetchall()
        return [_row_to_dict(row, "sources_json", "sources") for row in rows]
    finally:
        conn.close()


def get_recent_messages(session_id: str, limit: int) -> List[Dict[str, Any]]:
    """Get the most recent messages for a session in chronological order."""
    conn = get_connection()
    try:
        rows = conn.execute("""
            SELECT id, role, content, sources_json, created_at
            FROM messages
            WHERE session_id = ?
            ORDER BY id DESC
            LIMIT ?
        """, (session_id, limit)).fetchall()
        return [_row_to_dict(row, "sources_json", "sources") for row in reversed(rows)]
    finally:
        conn.close()


# Initialize database on module import if it doesn't exist
if not DB_PATH.exists():
    init_database()
    logger.info("database_auto_initialized", db_path=str(DB_PATH))
