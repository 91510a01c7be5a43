"""Conversation context for multi-turn question answering.

This module provides:
- In-memory sessions with idle expiry
- Entity tracking across turns
- Pronoun and back-reference resolution
- Query classification for prompt routing
"""

from pdfrag.context.models import (
    ConversationMessage,
    ConversationSession,
    EntityType,
    MessageRole,
    QueryClassification,
    ReferenceResolution,
    SessionStats,
    TrackedEntity,
)

__all__ = [
    # Models
    "ConversationMessage",
    "ConversationSession",
    "EntityType",
    "MessageRole",
    "QueryClassification",
    "ReferenceResolution",
    "SessionStats",
    "TrackedEntity",
]
