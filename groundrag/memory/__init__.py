"""Conversation memory."""
from groundrag.memory.manager import ConversationManager

__all__ = ["ConversationManager"]
