"""Conversation memory manager.

Handles session creation, message persistence, and conversation history
for multi-turn grounded chat. Messages are append-only.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog

from groundrag import config, db

logger = structlog.get_logger()

ROLES = ("user", "assistant")


class ConversationManager:
    """Manages chat sessions and conversation history."""

    def __init__(self, context_window_size: int = None):
        """Initialize the conversation manager.

        Args:
            context_window_size: Number of recent messages to include in context
        """
        self.context_window_size = context_window_size or config.CONTEXT_WINDOW_MESSAGES

    def create_session(self, owner_id: str, title: Optional[str] = None) -> str:
        """Create a new chat session.

        Args:
            owner_id: Owner of the session
            title: Optional title for the session

        Returns:
            The created session ID
        """
        session_id = str(uuid.uuid4())
        db.create_session(session_id, owner_id, title)
        logger.info("conversation_session_created", session_id=session_id, owner_id=owner_id)
        return session_id

    def add_message(
        self,
        session_id: str,
        role: str,
        content: str,
        sources: Optional[List[Dict[str, Any]]] = None,
    ) -> int:
        """Append a message to a session.

        Args:
            session_id: The session to add the message to
            role: Message role ('user' or 'assistant')
            content: The message content
            sources: Citations for an assistant message

        Returns:
            ID of the inserted message
        """
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role}")

        message_id = db.add_message(session_id, role, content, sources)
        logger.info(
            "conversation_message_added",
            session_id=session_id,
            role=role,
            message_id=message_id,
            source_count=len(sources or []),
        )
        return message_id

    def get_recent_messages(
        self, session_id: str, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Get recent messages for a session in chronological order."""
        limit = limit or self.context_window_size
        return db.get_recent_messages(session_id, limit)

    def get_all_messages(self, session_id: str) -> List[Dict[str, Any]]:
        """Get all messages for a session in chronological order."""
        return db.get_messages(session_id)

    def format_conversation_history(self, session_id: str) -> List[Dict[str, str]]:
        """Format recent conversation history for LLM context.

        Returns:
            List of message dictionaries with 'role' and 'content' keys
        """
        messages = self.get_recent_messages(session_id)

        # Only role and content go to the model; sources stay in storage
        history = [{"role": msg["role"], "content": msg["content"]} for msg in messages]

        logger.debug(
            "conversation_history_formatted",
            session_id=session_id,
            message_count=len(history),
        )
        return history

    def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Get session details, or None if not found."""
        return db.get_session(session_id)

    def list_sessions(self, owner_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """List an owner's sessions, most recent first."""
        return db.list_sessions(owner_id, limit)

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and all its messages.

        Returns:
            True if deleted, False if not found
        """
        deleted = db.delete_session(session_id)
        if deleted:
            logger.info("conversation_session_deleted", session_id=session_id)
        return deleted
