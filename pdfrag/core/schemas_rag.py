"""Pydantic schemas for question answering and the conversational layer."""

from typing import Any, Literal

from pydantic import BaseModel, Field

IntentType = Literal[
    "question",
    "clarification",
    "comparison",
    "explanation",
    "procedure",
    "factual",
    "analytical",
]

ResponseStyle = Literal["concise", "detailed", "conversational", "adaptive"]


class RAGRequest(BaseModel):
    """A question against a user's documents."""

    query: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    session_id: str | None = None
    document_ids: list[str] | None = None
    max_results: int | None = None
    response_style: ResponseStyle = "adaptive"


class SourceReference(BaseModel):
    """A cited chunk backing an answer."""

    document_id: str
    document_name: str = ""
    page_number: int
    section_title: str | None = None
    excerpt: str
    similarity: float
    chunk_id: str | None = None


class RAGResponse(BaseModel):
    """Answer plus citations. ``degraded`` marks any fallback path taken."""

    answer: str
    sources: list[SourceReference] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)
    degraded: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class UserIntent(BaseModel):
    """Classified purpose of a conversational turn."""

    primary_intent: IntentType = "question"
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    entities: list[str] = Field(default_factory=list)
    context: str = ""
    requires_follow_up: bool = False
    suggested_actions: list[str] = Field(default_factory=list)


class ConversationalElements(BaseModel):
    """Conversational decorations around an answer."""

    greeting: str | None = None
    acknowledgment: str | None = None
    clarification: str | None = None
    follow_up_questions: list[str] = Field(default_factory=list)
    contextual_insight: str | None = None
    key_takeaways: list[str] = Field(default_factory=list)
    analysis_depth: Literal["comprehensive", "detailed", "basic", "limited"] = "limited"
    summary: str | None = None


class ConversationFlow(BaseModel):
    """Where a turn sits in the ongoing conversation."""

    is_follow_up: bool = False
    previous_context: str | None = None
    suggested_continuation: str | None = None


class ConversationalResponse(RAGResponse):
    """RAG answer enriched with intent, flow and conversational elements."""

    response_type: str = "conversational_response"
    intent: UserIntent = Field(default_factory=UserIntent)
    conversational_elements: ConversationalElements = Field(
        default_factory=ConversationalElements
    )
    conversation_flow: ConversationFlow = Field(default_factory=ConversationFlow)
    resolved_query: str | None = None
    session_id: str | None = None


class RAGStats(BaseModel):
    """Running aggregates over processed queries."""

    total_queries: int = 0
    avg_response_time_ms: float = 0.0
    avg_search_time_ms: float = 0.0
    avg_generation_time_ms: float = 0.0
    avg_sources_per_response: float = 0.0
    success_rate: float = 1.0


class PipelineCheck(BaseModel):
    """Outcome of an end-to-end smoke test of the answer pipeline."""

    success: bool
    stages: dict[str, bool] = Field(default_factory=dict)
    error: str | None = None


class QueryRecord(BaseModel):
    """One answered question, as kept in the ``user_queries`` history."""

    user_id: str
    query_text: str
    response_text: str
    sources: list[SourceReference] = Field(default_factory=list)
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_time_ms: float = 0.0
    session_id: str | None = None
    degraded: bool = False

    def to_row(self) -> dict[str, Any]:
        """Row for the ``user_queries`` table."""
        return {
            "user_id": self.user_id,
            "query_text": self.query_text,
            "response_text": self.response_text,
            "sources": [s.model_dump(mode="json") for s in self.sources],
            "confidence_score": self.confidence_score,
            "processing_time_ms": self.processing_time_ms,
        }
