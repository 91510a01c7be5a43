"""Prompt templates for document question answering.

Each query class gets its own system prompt, instructions, response schema
and sampling settings. Prompts put the document context first and the query
after a ``\\n\\nQUERY:`` marker so the context can be truncated safely.
"""

import json
import math
from typing import Any

from pydantic import BaseModel

from pdfrag.context.intent_classifier import classify_query
from pdfrag.context.models import QueryClassification
from pdfrag.core.llm import parse_llm_json_dict
from pdfrag.core.logging import get_logger

logger = get_logger(__name__)

QUERY_MARKER = "\n\nQUERY:"
TRUNCATION_MARKER = "\n\n[... context truncated for length ...]"

_CITATIONS_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "source": {"type": "string"},
            "page": {"type": "number"},
            "section": {"type": "string"},
        },
    },
}

QA_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "answer": {"type": "string", "description": "Concise answer grounded in provided context"},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "sections": {
            "type": "array",
            "items": {"type": "string"},
            "description": 'Section numbers referenced (e.g., ["1.2", "1.2.1"])',
        },
        "citations": _CITATIONS_SCHEMA,
    },
    "required": ["answer", "confidence", "citations"],
}

PROCEDURE_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "answer": {"type": "string", "description": "Brief summary of the procedure"},
        "steps": {
            "type": "array",
            "items": {"type": "string"},
            "description": "Step-by-step instructions, one per array item",
        },
        "sections": {"type": "array", "items": {"type": "string"}},
        "citations": _CITATIONS_SCHEMA,
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
    "required": ["answer", "steps", "confidence", "citations"],
}

DOCUMENT_QA_SYSTEM = """You are a documentation assistant that answers questions about the user's uploaded documents.

CORE RESPONSIBILITIES:
- Answer questions using ONLY the provided document context
- Preserve hierarchical numbering EXACTLY as written (e.g., "1.1", "1.1.1", "2.3.4.1")
- Never invent content that is not present in the source material
- Always provide accurate page and section citations

CITATION REQUIREMENTS:
- Include inline citations in your answer text using the format: (Document Name, Page X)
- Also provide structured citations in the "citations" array: {"source": "document_name", "page": 12, "section": "1.2.3"}
- Lower your confidence if the answer requires inference across multiple sections

If the provided context doesn't contain sufficient information to answer the question, respond with a low confidence score and explain what additional information would be needed."""

PROCEDURE_SYSTEM = """You are a procedure specialist who extracts step-by-step instructions from technical documentation.

CORE RESPONSIBILITIES:
- Extract complete, ordered procedures from the document context
- Preserve exact step numbering and sub-step hierarchies
- Keep safety warnings and critical notes exactly as written
- Never skip steps or combine separate actions

STEP FORMATTING:
- One action per step in the "steps" array
- Include conditional statements and decision points
- Include inline citations in each step using the format: (Document Name, Page X)

Return structured JSON with complete step lists and accurate section citations."""

DOCUMENT_ANALYSIS_SYSTEM = """You are a technical document analyst.

ANALYSIS SCOPE:
- Recognize and preserve chapter and section hierarchies
- Map relationships and cross-references between sections
- Identify ambiguities, missing dependencies or incomplete information

CITATION REQUIREMENTS:
- Support every analytical claim with inline citations using the format: (Document Name, Page X)
- Also provide structured citations in the "citations" array

Provide a structured analysis grounded in the provided context."""

PROCEDURAL_INSTRUCTIONS = """Analyze the provided context and extract the complete procedure with step-by-step instructions. Return ONLY valid JSON matching this exact schema:

{schema}

CRITICAL REQUIREMENTS:
- Extract ALL steps in the correct order
- Preserve exact numbering and hierarchy (e.g., "1.1.1", "1.1.2")
- Include one action per step in the "steps" array
- Provide accurate page and section citations for each referenced element
- Set confidence based on completeness and clarity of the procedure

If the procedure is incomplete or unclear, explain what additional information is needed in the answer field and set confidence accordingly."""

DEFINITIONAL_INSTRUCTIONS = """Provide a clear, comprehensive answer based on the provided context. Return ONLY valid JSON matching this exact schema:

{schema}

RESPONSE GUIDELINES:
- Answer should be complete but concise
- Preserve technical terminology exactly as written
- Reference specific sections and hierarchical numbers
- Provide accurate citations for all factual claims

If the context doesn't contain sufficient information to fully answer the question, indicate what additional information would be needed and adjust confidence accordingly."""

ANALYTICAL_INSTRUCTIONS = """Provide a thorough analysis based on the provided context. Return ONLY valid JSON matching this exact schema:

{schema}

ANALYSIS REQUIREMENTS:
- Examine relationships between different sections and concepts
- Identify patterns, dependencies, and hierarchical structures
- Support all analytical claims with specific citations
- Consider multiple perspectives if relevant"""

GENERAL_INSTRUCTIONS = """Answer the question based on the provided context. Return ONLY valid JSON matching this exact schema:

{schema}

RESPONSE GUIDELINES:
- Use only information from the provided context
- Include accurate page and section citations
- Preserve document hierarchy and numbering
- If uncertain, explain what additional context would help"""

# (system prompt, instructions, schema, temperature, max_tokens)
_TEMPLATES: dict[str, tuple[str, str, dict[str, Any], float, int]] = {
    "procedural": (PROCEDURE_SYSTEM, PROCEDURAL_INSTRUCTIONS, PROCEDURE_RESPONSE_SCHEMA, 0.05, 3000),
    "definitional": (DOCUMENT_QA_SYSTEM, DEFINITIONAL_INSTRUCTIONS, QA_RESPONSE_SCHEMA, 0.1, 2500),
    "analytical": (DOCUMENT_ANALYSIS_SYSTEM, ANALYTICAL_INSTRUCTIONS, QA_RESPONSE_SCHEMA, 0.15, 3500),
    "general": (DOCUMENT_QA_SYSTEM, GENERAL_INSTRUCTIONS, QA_RESPONSE_SCHEMA, 0.1, 2500),
}

CONTEXT_HEADERS = {
    "procedural": "Procedural information and steps from the documents:\n\n",
    "definitional": "Definitions and explanations from the documents:\n\n",
    "analytical": "Analytical information for comparison and analysis:\n\n",
    "general": "Relevant information from the documents:\n\n",
}

PARSE_FAILURE_ANSWER = (
    "I encountered an error processing the response. Please try rephrasing your question."
)


class PromptConfig(BaseModel):
    """Everything needed for one generation call."""

    system_prompt: str
    user_prompt: str
    response_schema: dict[str, Any]
    temperature: float
    max_tokens: int


class PromptTemplateManager:
    """Builds query-type-aware prompts and cleans up structured responses."""

    def classify_query(self, query: str) -> QueryClassification:
        return classify_query(query)

    def context_header(self, classification: QueryClassification | None) -> str:
        query_type = classification.type if classification else "general"
        return CONTEXT_HEADERS.get(query_type, CONTEXT_HEADERS["general"])

    def generate_prompt_config(
        self, query: str, context: str, classification: QueryClassification
    ) -> PromptConfig:
        system_prompt, instructions, schema, temperature, max_tokens = _TEMPLATES.get(
            classification.type, _TEMPLATES["general"]
        )
        user_prompt = (
            f"{context}{QUERY_MARKER} {query}\n\n"
            f"{instructions.format(schema=json.dumps(schema, indent=2))}"
        )
        return PromptConfig(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            response_schema=schema,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    def optimize_prompt_length(self, prompt: str, max_tokens: int) -> str:
        """
        Shrink the context section so the prompt fits ``max_tokens``.

        Token counts are estimated at four characters per token. The query
        and instructions after the ``QUERY:`` marker are never cut; a prompt
        without exactly one marker, or whose query part alone exceeds the
        budget, is returned unchanged.
        """
        if math.ceil(len(prompt) / 4) <= max_tokens:
            return prompt

        sections = prompt.split(QUERY_MARKER)
        if len(sections) != 2:
            return prompt

        context_section, query_section = sections
        available = max_tokens - math.ceil(len(query_section) / 4) - 100
        if available <= 0:
            return prompt

        max_chars = available * 4
        if len(context_section) > max_chars:
            context_section = context_section[:max_chars] + TRUNCATION_MARKER
        return context_section + QUERY_MARKER + query_section

    def validate_and_sanitize_response(
        self, raw: str, required_fields: list[str] | None = None
    ) -> dict[str, Any]:
        """
        Parse a structured model response and normalize its fields.

        Returns the fallback dict (confidence 0.1, no citations) when the
        output is not a JSON object or misses a required field.
        """
        try:
            parsed = parse_llm_json_dict(raw)
            for field in required_fields or []:
                if field not in parsed:
                    raise ValueError(f"Missing required field: {field}")
        except ValueError as e:
            logger.debug(f"Structured response rejected: {e}")
            return {
                "answer": PARSE_FAILURE_ANSWER,
                "confidence": 0.1,
                "citations": [],
                "sections": [],
            }

        if "confidence" in parsed:
            try:
                confidence = float(parsed["confidence"])
            except (TypeError, ValueError):
                confidence = 0.0
            parsed["confidence"] = max(0.0, min(1.0, confidence))

        if isinstance(parsed.get("citations"), list):
            citations = []
            for citation in parsed["citations"]:
                if not isinstance(citation, dict):
                    continue
                try:
                    page = int(citation.get("page") or 0)
                except (TypeError, ValueError):
                    page = 0
                citations.append(
                    {
                        "source": str(citation.get("source") or ""),
                        "page": page,
                        "section": str(citation.get("section") or ""),
                    }
                )
            parsed["citations"] = citations

        if isinstance(parsed.get("sections"), list):
            parsed["sections"] = [str(s) for s in parsed["sections"]]

        return parsed

    def generate_fallback_response(self, query: str, error: str) -> dict[str, Any]:
        shown = query[:100] + ("..." if len(query) > 100 else "")
        return {
            "answer": (
                f'I apologize, but I encountered an error while processing your question: "{shown}". '
                "Please try rephrasing your question or contact support if the issue persists."
            ),
            "confidence": 0.0,
            "citations": [],
            "sections": [],
            "error": error,
            "fallback": True,
        }


def required_fields(schema: dict[str, Any]) -> list[str]:
    return list(schema.get("required", []))
