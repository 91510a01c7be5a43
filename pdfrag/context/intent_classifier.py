"""Query classification: deterministic regex routing plus LLM intent analysis.

``classify_query`` picks the prompt template for retrieval answers and never
calls out. ``analyze_user_intent`` asks the generator for the conversational
intent and falls back to ``question`` on any failure.
"""

import re
from typing import get_args

from pdfrag.context.models import QueryClassification
from pdfrag.core.llm import TextGenerator, parse_llm_json_dict
from pdfrag.core.logging import get_logger
from pdfrag.core.result import Ok, call_external
from pdfrag.core.schemas_rag import IntentType, UserIntent

logger = get_logger(__name__)

QUERY_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    "procedural": [
        re.compile(r"how\s+to\s+", re.I),
        re.compile(r"steps?\s+(to|for)", re.I),
        re.compile(r"procedure\s+(for|to)", re.I),
        re.compile(r"process\s+(for|to)", re.I),
        re.compile(r"instructions?\s+(for|to)", re.I),
        re.compile(r"\b(submit|complete|perform|execute|conduct)\b", re.I),
    ],
    "definitional": [
        re.compile(r"what\s+is\s+", re.I),
        re.compile(r"define\s+", re.I),
        re.compile(r"definition\s+of", re.I),
        re.compile(r"meaning\s+of", re.I),
        re.compile(r"\b(explain|describe)\b", re.I),
    ],
    "analytical": [
        re.compile(r"analyze\s+", re.I),
        re.compile(r"compare\s+", re.I),
        re.compile(r"relationship\s+between", re.I),
        re.compile(r"structure\s+of", re.I),
        re.compile(r"organization\s+of", re.I),
    ],
}

INTENT_TYPES: tuple[str, ...] = get_args(IntentType)

INTENT_PROMPT = """Analyze this user query and determine their intent:

Query: "{query}"
{context_block}
Classify the primary intent as one of:
- question: Direct question seeking information
- clarification: Asking for clarification or more details
- comparison: Comparing different options or approaches
- explanation: Requesting detailed explanation of a concept
- procedure: Asking about step-by-step processes
- factual: Seeking specific facts, numbers, or data
- analytical: Requiring analysis, evaluation, or synthesis

Also identify:
- Key entities mentioned
- Context clues
- Whether this seems like a follow-up question
- Suggested actions the user might want to take

Return as JSON:
{{
  "primary_intent": "question",
  "confidence": 0.9,
  "entities": ["entity1", "entity2"],
  "context": "short description of context clues",
  "requires_follow_up": true,
  "suggested_actions": ["action1", "action2"]
}}"""


def classify_query(query: str) -> QueryClassification:
    """
    Classify a query as procedural, definitional, analytical or general.

    The type with the most matching patterns wins; ties keep the earlier
    type in ``QUERY_PATTERNS`` order.
    """
    best_type, best_matches = "general", []
    for query_type, patterns in QUERY_PATTERNS.items():
        matches = [p.pattern for p in patterns if p.search(query)]
        if len(matches) > len(best_matches):
            best_type, best_matches = query_type, matches

    if not best_matches:
        return QueryClassification(type="general", confidence=0.5)

    return QueryClassification(
        type=best_type,
        confidence=min(0.95, 0.6 + 0.1 * len(best_matches)),
        matched_patterns=best_matches,
    )


def _as_str_list(value) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    if value:
        return [str(value)]
    return []


async def analyze_user_intent(
    generator: TextGenerator | None,
    query: str,
    context: str = "",
    timeout: float | None = 30.0,
    enabled: bool = True,
) -> UserIntent:
    """
    Classify the conversational intent of ``query``.

    Returns:
        ``question`` at 0.8 when analysis is disabled, the parsed intent on
        success, and ``question`` at 0.7 on any failure or unknown intent.
    """
    if not enabled:
        return UserIntent(primary_intent="question", confidence=0.8)

    fallback = UserIntent(primary_intent="question", confidence=0.7)
    if generator is None:
        return fallback

    context_block = f"\nConversation context:\n{context}\n" if context else ""
    prompt = INTENT_PROMPT.format(query=query, context_block=context_block)

    result = await call_external(
        "intent_analysis",
        lambda: generator.generate(
            prompt, max_tokens=500, temperature=0.3, response_format="json"
        ),
        timeout,
    )
    if not isinstance(result, Ok):
        return fallback

    try:
        parsed = parse_llm_json_dict(result.value)
    except ValueError as e:
        logger.debug(f"Intent analysis returned unparseable output, using default: {e}")
        return fallback

    intent = parsed.get("primary_intent") or parsed.get("primaryIntent")
    if intent not in INTENT_TYPES:
        logger.debug(f"Unknown intent {intent!r}, using default")
        return fallback

    try:
        confidence = float(parsed.get("confidence", 0.8))
    except (TypeError, ValueError):
        confidence = 0.8
    context_clues = parsed.get("context", "")
    if isinstance(context_clues, list):
        context_clues = "; ".join(str(c) for c in context_clues)

    return UserIntent(
        primary_intent=intent,
        confidence=min(1.0, max(0.0, confidence)),
        entities=_as_str_list(parsed.get("entities")),
        context=str(context_clues or ""),
        requires_follow_up=bool(parsed.get("requires_follow_up", False)),
        suggested_actions=_as_str_list(parsed.get("suggested_actions")),
    )
