"""Conversational question answering on top of the RAG orchestrator.

One turn:
    1. resolve pronouns against the session ("what does it do?")
    2. classify intent and gather conversation context
    3. rewrite the query for retrieval
    4. answer with the base orchestrator
    5. synthesize a contextual answer over the sources
    6. add greeting, acknowledgment, insights, follow-ups and a continuation
    7. record the user and assistant turns

Every generator call has a fixed default, so a turn never fails because the
model is down.
"""

import re
from dataclasses import dataclass, field

from pdfrag.chains.rag import RAGOrchestrator
from pdfrag.context.conversation import ConversationContextManager
from pdfrag.context.intent_classifier import analyze_user_intent
from pdfrag.context.models import ConversationMessage, MessageRole
from pdfrag.core.llm import TextGenerator, parse_llm_json_list
from pdfrag.core.logging import get_logger
from pdfrag.core.result import Ok, call_external, unwrap_or
from pdfrag.core.schemas_rag import (
    ConversationalElements,
    ConversationalResponse,
    ConversationFlow,
    RAGRequest,
    RAGResponse,
    UserIntent,
)

logger = get_logger(__name__)

QUERY_REWRITES = {
    "clarification": "Please provide detailed clarification for: {query}",
    "comparison": "Compare and contrast the following: {query}",
    "procedure": "Provide step-by-step procedure for: {query}",
    "analytical": "Analyze and evaluate: {query}",
    "explanation": "Explain in detail: {query}",
    "factual": "Provide the specific facts, values and figures for: {query}",
}

GREETINGS = {
    "question": "I'd be happy to help you find that information!",
    "clarification": "Let me help clarify that for you.",
    "comparison": "I can help you compare those options.",
    "explanation": "I'll explain that in detail for you.",
    "procedure": "I can walk you through that procedure step by step.",
    "factual": "Let me find those specific details for you.",
    "analytical": "I'll analyze that for you and provide insights.",
}

ACKNOWLEDGMENTS = {
    "question": "Great follow-up question!",
    "clarification": "I understand you need more details.",
    "comparison": "Let me help you compare those.",
    "explanation": "I'll elaborate on that for you.",
    "procedure": "I can provide more details on that procedure.",
    "factual": "Let me get those specific facts for you.",
    "analytical": "I'll dive deeper into that analysis.",
}

CONTINUATIONS = {
    "question": "Would you like me to elaborate on any specific part?",
    "clarification": "Is there anything else you'd like me to clarify?",
    "comparison": "Would you like me to compare with other options?",
    "explanation": "Would you like me to explain any part in more detail?",
    "procedure": "Would you like me to walk through any specific steps?",
    "factual": "Would you like me to find more specific details?",
    "analytical": "Would you like me to analyze any other aspects?",
}

DEFAULT_FOLLOW_UPS = {
    "question": [
        "Can you provide more details about this?",
        "What are the key considerations?",
        "How does this apply in practice?",
    ],
    "clarification": [
        "Could you give me an example?",
        "What are the specific requirements?",
        "How does this work in different scenarios?",
    ],
    "comparison": [
        "What are the advantages of each option?",
        "Which approach is more effective?",
        "What are the trade-offs?",
    ],
    "explanation": [
        "Can you break this down further?",
        "What are the practical implications?",
        "How does this relate to other concepts?",
    ],
    "procedure": [
        "What are the prerequisites?",
        "What tools or resources are needed?",
        "What are common pitfalls to avoid?",
    ],
    "factual": [
        "What are the latest updates?",
        "How do these numbers compare to standards?",
        "What are the sources for this information?",
    ],
    "analytical": [
        "What are the key factors to consider?",
        "How would you evaluate the options?",
        "What are the potential outcomes?",
    ],
}

CLARIFICATION_REQUEST = (
    "I want to make sure I understand exactly what you're looking for. "
    "Could you provide a bit more context?"
)
SUMMARY_FALLBACK = "Here's a comprehensive answer to your question."

CONTEXTUAL_SYSTEM_PROMPT = (
    "You are an expert assistant that provides deep, contextual understanding rather than "
    "just extracting text from documents. Analyze, synthesize, and explain information in a "
    "comprehensive and insightful way, citing sources as (Document Name, Page X)."
)

CONTEXTUAL_PROMPT = """CONTEXT:
- User's original question: "{query}"
- User's intent: {intent} ({intent_confidence:.1f}% confidence)
- Conversation history: {history}

SOURCE DOCUMENTS:
{sources}

DRAFT ANSWER:
{draft}

INSTRUCTIONS:
1. ANALYZE the information from the source documents
2. SYNTHESIZE the key concepts and relationships
3. EXPLAIN the topic in a comprehensive, contextual manner
4. CONNECT related concepts and implications
5. ADDRESS the user's underlying intent, not just their literal question

RESPONSE GUIDELINES:
- Start with a clear introduction that shows you understand the context
- Explain "why" and "how", not just "what"
- Use a conversational tone while staying accurate to the sources
- If the information is incomplete, acknowledge the limitations

Generate a comprehensive, analytical response:"""

FOLLOW_UP_PROMPT = """Based on this conversation:

User Query: "{query}"
Response: "{answer}"

Generate 3-5 intelligent follow-up questions that would help the user explore this topic further. The questions should:
1. Be related to the original query and response
2. Help dive deeper into the topic
3. Explore different aspects or angles
4. Be natural and conversational
5. Build on the information already provided

Return as JSON array:
["Follow-up question 1", "Follow-up question 2", ...]"""

SUMMARY_PROMPT = """Summarize this response in 1-2 sentences:

"{answer}"

Focus on the key points and main takeaways."""

HISTORY_MESSAGES = 3
MAX_RECENT_TOPICS = 10


@dataclass
class TurnContext:
    """What the session looks like before the current turn."""

    session_id: str
    message_count: int = 0
    last_response: str | None = None
    is_follow_up: bool = False
    recent_topics: list[str] = field(default_factory=list)
    history: list[ConversationMessage] = field(default_factory=list)


def extract_recent_topics(messages: list[ConversationMessage]) -> list[str]:
    """Distinct words longer than four characters, in first-seen order, at most ten."""
    topics: dict[str, None] = {}
    for message in messages:
        for word in re.sub(r"[^\w\s]", " ", message.content.lower()).split():
            if len(word) > 4:
                topics.setdefault(word, None)
    return list(topics)[:MAX_RECENT_TOPICS]


def enhance_query(query: str, intent: UserIntent, context: TurnContext) -> str:
    """Rewrite a query for retrieval using the previous answer or the intent template."""
    if context.is_follow_up and context.last_response:
        return f"{query}\n\nContext from previous conversation: {context.last_response}"
    template = QUERY_REWRITES.get(intent.primary_intent)
    return template.format(query=query) if template else query


def contextual_confidence(base: RAGResponse, intent: UserIntent) -> float:
    confidence = base.confidence
    if intent.primary_intent == "question" and base.sources:
        confidence = min(0.9, confidence + 0.2)
    if len(base.sources) > 1:
        confidence = min(0.95, confidence + 0.1)
    return confidence


def determine_response_type(intent: UserIntent, response: RAGResponse) -> str:
    if intent.primary_intent == "question":
        return "analytical_explanation" if response.sources else "clarification_request"
    if intent.primary_intent == "clarification":
        return "contextual_clarification"
    return "conversational_response"


def contextual_insight(response: RAGResponse) -> str:
    count = len(response.sources)
    plural = "s" if count > 1 else ""
    if count == 0:
        return (
            "I notice this topic isn't covered in the available documents. "
            "Would you like me to help you find related information?"
        )
    if response.confidence > 0.8:
        return f"Based on {count} relevant source{plural}, I can provide a comprehensive explanation."
    return f"I found {count} relevant source{plural} that help explain this topic."


def key_takeaways(response: RAGResponse) -> list[str]:
    takeaways = []
    count = len(response.sources)
    if count:
        takeaways.append(f"Information sourced from {count} document{'s' if count > 1 else ''}")
    if response.metadata.get("contextual_analysis"):
        takeaways.append("Response includes analytical insights beyond direct text extraction")
    if response.confidence > 0.8:
        takeaways.append("High confidence in the accuracy of this information")
    return takeaways


def analysis_depth(response: RAGResponse) -> str:
    count = len(response.sources)
    if count >= 3 and response.confidence > 0.8:
        return "comprehensive"
    if count >= 2 and response.confidence > 0.6:
        return "detailed"
    if count >= 1:
        return "basic"
    return "limited"


class ConversationalRAG:
    """Multi-turn wrapper adding reference resolution, intent and conversational framing."""

    def __init__(
        self,
        rag: RAGOrchestrator,
        conversations: ConversationContextManager,
        generator: TextGenerator | None = None,
        max_follow_up_questions: int = 3,
        generation_timeout: float | None = 60.0,
        enable_intent_analysis: bool = True,
        enable_conversational_mode: bool = True,
        enable_follow_up_suggestions: bool = True,
        enable_contextual_greetings: bool = True,
    ):
        self.rag = rag
        self.conversations = conversations
        self.generator = generator
        self.max_follow_up_questions = max_follow_up_questions
        self.generation_timeout = generation_timeout
        self.enable_intent_analysis = enable_intent_analysis
        self.enable_conversational_mode = enable_conversational_mode
        self.enable_follow_up_suggestions = enable_follow_up_suggestions
        self.enable_contextual_greetings = enable_contextual_greetings

    async def process_conversational_query(self, request: RAGRequest) -> ConversationalResponse:
        """
        Answer one conversational turn and record it in the session.

        Raises:
            InputValidationError: If the session belongs to another user
        """
        session = self.conversations.get_session(request.user_id, request.session_id)
        session_id = session.session_id

        with self.conversations.session_in_use(session_id):
            resolution = await self.conversations.resolve_references(
                request.query, request.user_id, session_id
            )
            query = resolution.resolved_query
            context = self.get_conversation_context(request.user_id, session_id)

            intent = await analyze_user_intent(
                self.generator,
                query,
                self.conversations.get_context_for_query(request.user_id, session_id),
                timeout=self.generation_timeout,
                enabled=self.enable_intent_analysis,
            )
            logger.info(
                f"Conversational turn intent: {intent.primary_intent} ({intent.confidence:.2f})",
                extra={"session_id": session_id, "resolved": query != request.query},
            )

            retrieval_query = (
                enhance_query(query, intent, context)
                if self.enable_conversational_mode
                else query
            )
            base = await self.rag.process_query(
                request.model_copy(update={"query": retrieval_query, "session_id": session_id})
            )

            answered = await self._contextual_response(query, base, intent, context)
            elements = await self._conversational_elements(answered, intent, context)
            elements.follow_up_questions = await self._follow_up_questions(query, answered, intent)

            response = ConversationalResponse(
                **answered.model_dump(),
                response_type=determine_response_type(intent, answered),
                intent=intent,
                conversational_elements=elements,
                conversation_flow=ConversationFlow(
                    is_follow_up=context.is_follow_up,
                    previous_context=context.last_response,
                    suggested_continuation=CONTINUATIONS.get(
                        intent.primary_intent, "Is there anything else I can help you with?"
                    ),
                ),
                resolved_query=query,
                session_id=session_id,
            )

            self._record_turn(request, query, response)

        return response

    def get_conversation_context(self, user_id: str, session_id: str) -> TurnContext:
        messages = self.conversations.get_history(user_id, session_id)
        last_assistant = next(
            (m.content for m in reversed(messages) if m.role == MessageRole.ASSISTANT), None
        )
        return TurnContext(
            session_id=session_id,
            message_count=len(messages),
            last_response=last_assistant,
            is_follow_up=len(messages) > 1,
            recent_topics=extract_recent_topics(messages),
            history=messages[-HISTORY_MESSAGES:],
        )

    async def _contextual_response(
        self,
        query: str,
        base: RAGResponse,
        intent: UserIntent,
        context: TurnContext,
    ) -> RAGResponse:
        """Synthesize over the sources; the base answer is kept verbatim on any failure."""
        if self.generator is None or not base.sources:
            return base

        history = "\n".join(f"{m.role.value}: {m.content}" for m in context.history)
        sources = "\n\n".join(
            f"[{s.document_name}, Page {s.page_number}] {s.excerpt}" for s in base.sources
        )
        prompt = CONTEXTUAL_PROMPT.format(
            query=query,
            intent=intent.primary_intent,
            intent_confidence=intent.confidence * 100,
            history=f"\n{history}" if history else "This is the start of the conversation",
            sources=sources,
            draft=base.answer,
        )

        result = await call_external(
            "contextual_response",
            lambda: self.generator.generate(
                prompt,
                system_prompt=CONTEXTUAL_SYSTEM_PROMPT,
                max_tokens=self.rag.max_response_tokens,
                temperature=self.rag.temperature,
            ),
            self.generation_timeout,
        )
        if not isinstance(result, Ok) or not result.value.strip():
            logger.debug("Contextual response unavailable, keeping base answer")
            return base

        return base.model_copy(
            update={
                "answer": result.value.strip(),
                "confidence": contextual_confidence(base, intent),
                "metadata": {**base.metadata, "contextual_analysis": True},
            }
        )

    async def _conversational_elements(
        self, response: RAGResponse, intent: UserIntent, context: TurnContext
    ) -> ConversationalElements:
        elements = ConversationalElements(analysis_depth=analysis_depth(response))

        if context.message_count == 0 and self.enable_contextual_greetings:
            elements.greeting = GREETINGS.get(intent.primary_intent, "I'm here to help!")
        if context.is_follow_up:
            elements.acknowledgment = ACKNOWLEDGMENTS.get(
                intent.primary_intent, "Let me help you with that."
            )
        if response.sources:
            elements.contextual_insight = contextual_insight(response)
            elements.key_takeaways = key_takeaways(response)
        if intent.confidence < 0.7:
            elements.clarification = CLARIFICATION_REQUEST
        if len(response.sources) > 3:
            elements.summary = await self._summary(response)

        return elements

    async def _summary(self, response: RAGResponse) -> str:
        if self.generator is None:
            return SUMMARY_FALLBACK
        result = await call_external(
            "response_summary",
            lambda: self.generator.generate(
                SUMMARY_PROMPT.format(answer=response.answer), max_tokens=100, temperature=0.5
            ),
            self.generation_timeout,
        )
        return unwrap_or(result, "").strip() or SUMMARY_FALLBACK

    async def _follow_up_questions(
        self, query: str, response: RAGResponse, intent: UserIntent
    ) -> list[str]:
        if not self.enable_follow_up_suggestions:
            return []

        defaults = DEFAULT_FOLLOW_UPS.get(
            intent.primary_intent,
            [
                "Can you tell me more about this?",
                "What else should I know?",
                "How can I apply this information?",
            ],
        )[: self.max_follow_up_questions]
        if self.generator is None:
            return defaults

        result = await call_external(
            "follow_up_questions",
            lambda: self.generator.generate(
                FOLLOW_UP_PROMPT.format(query=query, answer=response.answer),
                max_tokens=400,
                temperature=0.7,
            ),
            self.generation_timeout,
        )
        if not isinstance(result, Ok):
            return defaults

        try:
            questions = [str(q).strip() for q in parse_llm_json_list(result.value) if str(q).strip()]
        except ValueError as e:
            logger.debug(f"Follow-up questions unparseable, using defaults: {e}")
            return defaults

        return questions[: self.max_follow_up_questions] or defaults

    def _record_turn(
        self, request: RAGRequest, resolved_query: str, response: ConversationalResponse
    ) -> None:
        session_id = response.session_id
        self.conversations.add_message(
            request.user_id,
            session_id,
            MessageRole.USER,
            request.query,
            resolved_query=resolved_query,
        )
        self.conversations.add_message(
            request.user_id,
            session_id,
            MessageRole.ASSISTANT,
            response.answer,
            metadata={
                "sources": [s.document_name or "unknown" for s in response.sources],
                "confidence": response.confidence,
            },
        )
