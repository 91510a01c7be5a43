"""Tests for multi-turn conversational answering."""

import json

import pytest

from pdfrag.chains.conversational_rag import (
    ACKNOWLEDGMENTS,
    CLARIFICATION_REQUEST,
    CONTINUATIONS,
    DEFAULT_FOLLOW_UPS,
    GREETINGS,
    SUMMARY_FALLBACK,
    ConversationalRAG,
    TurnContext,
    analysis_depth,
    contextual_confidence,
    contextual_insight,
    determine_response_type,
    enhance_query,
    extract_recent_topics,
)
from pdfrag.chains.rag import RAGOrchestrator
from pdfrag.context import MessageRole
from pdfrag.context.conversation import ConversationContextManager
from pdfrag.core.errors import InputValidationError
from pdfrag.core.schemas_rag import RAGRequest, RAGResponse, SourceReference, UserIntent
from pdfrag.core.tokens import WordTokenCounter
from pdfrag.core.vector_search import VectorSearch
from tests.fakes.embedders import FakeEmbedder
from tests.fakes.generators import FailingGenerator, ScriptedGenerator
from tests.fakes.rows import chunk_row, seed

BASE_ANSWER = "The Landing Signal Officer guides aircraft onto the deck (manual.pdf, Page 1)."

INTENT_MARKER = "determine their intent"


@pytest.fixture
def seeded(repository):
    seed(
        repository,
        [
            chunk_row(
                "doc-1-chunk-0",
                "doc-1",
                "user-1",
                [1.0, 0.0, 0.0, 0.0],
                "The landing signal officer guides aircraft onto the deck.",
            )
        ],
    )
    return repository


@pytest.fixture
def rag_generator():
    """Answers every retrieval prompt in prose."""
    return ScriptedGenerator(default=BASE_ANSWER)


@pytest.fixture
def rag(registry, seeded, rag_generator):
    return RAGOrchestrator(
        registry,
        FakeEmbedder(dim=4),
        VectorSearch(seeded, vector_dim=4),
        rag_generator,
        counter=WordTokenCounter(),
    )


def _intent(primary: str, confidence: float) -> str:
    return json.dumps({"primary_intent": primary, "confidence": confidence})


def _response(sources: int, confidence: float, **metadata) -> RAGResponse:
    return RAGResponse(
        answer="answer",
        confidence=confidence,
        sources=[
            SourceReference(document_id=f"doc-{i}", page_number=1, excerpt="x", similarity=0.9)
            for i in range(sources)
        ],
        metadata=metadata,
    )


@pytest.mark.asyncio
async def test_first_turn_without_generator_uses_defaults(rag):
    """Without a conversational generator every element has its fixed default."""
    conversations = ConversationContextManager()
    chat = ConversationalRAG(rag, conversations)

    response = await chat.process_conversational_query(
        RAGRequest(query="What is LSO?", user_id="user-1")
    )

    assert response.answer == BASE_ANSWER
    assert response.intent.primary_intent == "question"
    assert response.response_type == "analytical_explanation"
    elements = response.conversational_elements
    assert elements.greeting == GREETINGS["question"]
    assert elements.acknowledgment is None
    assert elements.clarification is None
    assert elements.follow_up_questions == DEFAULT_FOLLOW_UPS["question"][:3]
    assert elements.key_takeaways == ["Information sourced from 1 document"]
    assert elements.analysis_depth == "basic"
    assert not response.conversation_flow.is_follow_up
    assert response.conversation_flow.suggested_continuation == CONTINUATIONS["question"]

    history = conversations.get_history("user-1", response.session_id)
    assert [m.role for m in history] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert history[0].resolved_query == "What is LSO?"
    assert history[1].content == BASE_ANSWER
    assert history[1].metadata["sources"] == ["manual.pdf"]


@pytest.mark.asyncio
async def test_follow_up_turn_resolves_references(rag, rag_generator):
    """A follow-up resolves its pronoun and carries the previous answer into retrieval."""
    chat = ConversationalRAG(rag, ConversationContextManager())
    first = await chat.process_conversational_query(
        RAGRequest(query="What is LSO?", user_id="user-1")
    )

    second = await chat.process_conversational_query(
        RAGRequest(query="what does it do?", user_id="user-1", session_id=first.session_id)
    )

    assert second.session_id == first.session_id
    assert second.resolved_query == "what does LSO do?"
    assert second.conversation_flow.is_follow_up
    assert second.conversation_flow.previous_context == BASE_ANSWER
    assert second.conversational_elements.greeting is None
    assert second.conversational_elements.acknowledgment == ACKNOWLEDGMENTS["question"]
    assert rag_generator.prompts_containing("Context from previous conversation")


@pytest.mark.asyncio
async def test_turn_with_generator(rag, rag_generator):
    """Intent, contextual synthesis and follow-ups all come from the generator."""
    generator = ScriptedGenerator(
        routes={
            INTENT_MARKER: _intent("procedure", 0.9),
            "DRAFT ANSWER:": "Priming fills the pump casing before start (manual.pdf, Page 1).",
            "follow-up questions": '["How long does priming take?", "Which valve is opened?", '
            '"What if air remains?", "Is a vacuum pump needed?"]',
        }
    )
    chat = ConversationalRAG(rag, ConversationContextManager(), generator)

    response = await chat.process_conversational_query(
        RAGRequest(query="How do I prime the pump?", user_id="user-1")
    )

    assert rag_generator.prompts_containing(
        "Provide step-by-step procedure for: How do I prime the pump?"
    )
    assert response.intent.primary_intent == "procedure"
    assert response.answer == "Priming fills the pump casing before start (manual.pdf, Page 1)."
    assert response.metadata["contextual_analysis"] is True
    assert response.response_type == "conversational_response"
    elements = response.conversational_elements
    assert elements.greeting == GREETINGS["procedure"]
    assert elements.follow_up_questions == [
        "How long does priming take?",
        "Which valve is opened?",
        "What if air remains?",
    ]
    assert "Response includes analytical insights beyond direct text extraction" in elements.key_takeaways
    assert response.conversation_flow.suggested_continuation == CONTINUATIONS["procedure"]

    contextual_prompt = generator.prompts_containing("DRAFT ANSWER:")[0]
    assert BASE_ANSWER in contextual_prompt
    assert "This is the start of the conversation" in contextual_prompt


@pytest.mark.asyncio
async def test_failing_generator_keeps_defaults(rag):
    """Generator failures never fail the turn."""
    chat = ConversationalRAG(rag, ConversationContextManager(), FailingGenerator())

    response = await chat.process_conversational_query(
        RAGRequest(query="What is LSO?", user_id="user-1")
    )

    assert response.answer == BASE_ANSWER
    assert response.intent.primary_intent == "question"
    assert response.intent.confidence == 0.7
    assert "contextual_analysis" not in response.metadata
    assert response.conversational_elements.follow_up_questions == DEFAULT_FOLLOW_UPS["question"][:3]


@pytest.mark.asyncio
async def test_low_intent_confidence_asks_for_clarification(rag):
    """Uncertain intents add a clarification request."""
    generator = ScriptedGenerator(routes={INTENT_MARKER: _intent("factual", 0.4)})
    chat = ConversationalRAG(rag, ConversationContextManager(), generator)

    response = await chat.process_conversational_query(
        RAGRequest(query="pump numbers", user_id="user-1")
    )

    elements = response.conversational_elements
    assert elements.clarification == CLARIFICATION_REQUEST
    # Empty contextual reply keeps the base answer; unparseable follow-ups use defaults
    assert response.answer == BASE_ANSWER
    assert elements.follow_up_questions == DEFAULT_FOLLOW_UPS["factual"][:3]


@pytest.mark.asyncio
async def test_many_sources_add_summary(registry, repository, rag_generator):
    """More than three sources add a summary."""
    seed(
        repository,
        [
            chunk_row(f"doc-{d}-chunk-{i}", f"doc-{d}", "user-1", [1.0, 0.0, 0.0, 0.0], f"Text {i}", i)
            for d in (1, 2)
            for i in range(2)
        ],
    )
    rag = RAGOrchestrator(
        registry,
        FakeEmbedder(dim=4),
        VectorSearch(repository, vector_dim=4),
        rag_generator,
        counter=WordTokenCounter(),
    )
    chat = ConversationalRAG(rag, ConversationContextManager())

    response = await chat.process_conversational_query(RAGRequest(query="Text?", user_id="user-1"))

    assert len(response.sources) == 4
    assert response.conversational_elements.summary == SUMMARY_FALLBACK


@pytest.mark.asyncio
async def test_disabled_features(rag, rag_generator):
    """Follow-ups and query rewriting can be switched off."""
    generator = ScriptedGenerator(routes={INTENT_MARKER: _intent("procedure", 0.9)})
    chat = ConversationalRAG(
        rag,
        ConversationContextManager(),
        generator,
        enable_conversational_mode=False,
        enable_follow_up_suggestions=False,
        enable_contextual_greetings=False,
    )

    response = await chat.process_conversational_query(
        RAGRequest(query="How do I prime the pump?", user_id="user-1")
    )

    assert response.conversational_elements.follow_up_questions == []
    assert response.conversational_elements.greeting is None
    assert not rag_generator.prompts_containing("Provide step-by-step procedure for")


@pytest.mark.asyncio
async def test_session_of_other_user_is_rejected(rag):
    """A session id belonging to another user is refused."""
    conversations = ConversationContextManager()
    session = conversations.get_session("user-1")
    chat = ConversationalRAG(rag, conversations)

    with pytest.raises(InputValidationError):
        await chat.process_conversational_query(
            RAGRequest(query="What is LSO?", user_id="user-2", session_id=session.session_id)
        )


def test_extract_recent_topics():
    """Topics are distinct long words in first-seen order."""
    conversations = ConversationContextManager()
    session = conversations.get_session("user-1")
    conversations.add_message("user-1", session.session_id, "user", "Hydraulic pump, hydraulic valve!")
    conversations.add_message("user-1", session.session_id, "assistant", "Check pressure gauges.")

    topics = extract_recent_topics(conversations.get_history("user-1", session.session_id))

    assert topics == ["hydraulic", "valve", "check", "pressure", "gauges"]


def test_enhance_query():
    """Follow-ups carry the last answer; otherwise the intent template applies."""
    follow_up = TurnContext(session_id="s", message_count=2, last_response="Prior.", is_follow_up=True)
    fresh = TurnContext(session_id="s")

    assert enhance_query("q", UserIntent(), follow_up) == (
        "q\n\nContext from previous conversation: Prior."
    )
    assert enhance_query("q", UserIntent(primary_intent="comparison"), fresh) == (
        "Compare and contrast the following: q"
    )
    assert enhance_query("q", UserIntent(primary_intent="question"), fresh) == "q"


def test_contextual_confidence():
    """Questions with sources and multi-source answers gain confidence up to a cap."""
    question = UserIntent(primary_intent="question")

    assert contextual_confidence(_response(1, 0.5), question) == pytest.approx(0.7)
    assert contextual_confidence(_response(2, 0.85), question) == pytest.approx(0.95)
    assert contextual_confidence(_response(0, 0.5), question) == 0.5


def test_determine_response_type():
    """Response type follows intent and source availability."""
    assert determine_response_type(UserIntent(), _response(0, 0.5)) == "clarification_request"
    assert (
        determine_response_type(UserIntent(primary_intent="clarification"), _response(1, 0.5))
        == "contextual_clarification"
    )


def test_analysis_depth_and_insight():
    """Depth and insight scale with sources and confidence."""
    assert analysis_depth(_response(3, 0.9)) == "comprehensive"
    assert analysis_depth(_response(2, 0.7)) == "detailed"
    assert analysis_depth(_response(1, 0.2)) == "basic"
    assert analysis_depth(_response(0, 0.9)) == "limited"
    assert contextual_insight(_response(2, 0.9)).startswith("Based on 2 relevant sources")
    assert contextual_insight(_response(1, 0.5)) == (
        "I found 1 relevant source that help explain this topic."
    )
