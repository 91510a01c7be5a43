"""Pydantic models for conversation context management."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class MessageRole(str, Enum):
    """Who authored a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class EntityType(str, Enum):
    """Kinds of entity tracked across a conversation."""

    PROCEDURES = "procedures"
    REQUIREMENTS = "requirements"
    MEASUREMENTS = "measurements"
    DOCUMENTS = "documents"
    DEFINITIONS = "definitions"


class ConversationMessage(BaseModel):
    """A single turn in a session. Messages are append-only."""

    id: str
    session_id: str
    user_id: str
    role: MessageRole
    content: str
    resolved_query: str | None = Field(
        default=None, description="Query after reference resolution (user turns)"
    )
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class TrackedEntity(BaseModel):
    """An entity mentioned in the conversation."""

    type: EntityType
    value: str
    mention_count: int = 1
    last_mentioned_seq: int = Field(
        ..., description="Monotonic sequence number of the most recent mention"
    )


class ConversationSession(BaseModel):
    """Per-user conversation state."""

    session_id: str
    user_id: str
    current_topic: str | None = None
    started_at: datetime
    last_activity_at: datetime
    messages: list[ConversationMessage] = Field(default_factory=list)
    entities: dict[str, TrackedEntity] = Field(
        default_factory=dict, description="Keyed by '{type}:{value}'"
    )


class ReferenceResolution(BaseModel):
    """Outcome of resolving pronouns and back-references in a query."""

    original_query: str
    resolved_query: str
    detected_references: list[str] = Field(default_factory=list)
    resolved_entities: dict[str, str] = Field(default_factory=dict)
    needs_context: bool = False
    context_summary: str = ""


class SessionStats(BaseModel):
    """Summary numbers for a session."""

    message_count: int
    entity_count: int
    duration_seconds: float
    last_activity: datetime


class QueryClassification(BaseModel):
    """Deterministic query-type classification used to pick prompt templates."""

    type: str = Field(..., description="procedural, definitional, analytical or general")
    confidence: float = Field(..., ge=0.0, le=1.0)
    matched_patterns: list[str] = Field(default_factory=list)
