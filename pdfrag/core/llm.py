"""LLM client utilities for LangChain integration."""

import json
import re
from abc import ABC, abstractmethod
from typing import Any, Literal

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from pdfrag.core.logging import get_logger

logger = get_logger(__name__)

ResponseFormat = Literal["text", "json"]


def get_llm(
    api_key: str,
    model: str,
    temperature: float = 0.1,
    max_tokens: int | None = None,
) -> ChatOpenAI:
    """
    Get configured LLM instance for LangChain chains.

    Args:
        api_key: OpenAI API key
        model: Model name
        temperature: Temperature for generation (default 0.1)
        max_tokens: Optional completion cap

    Returns:
        ChatOpenAI instance
    """
    return ChatOpenAI(
        api_key=api_key,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
    )


class TextGenerator(ABC):
    """Anything that turns a prompt into text."""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.1,
        response_format: ResponseFormat = "text",
    ) -> str:
        """Return the model's completion for ``prompt``."""


class ChatOpenAIGenerator(TextGenerator):
    """TextGenerator backed by langchain-openai's ChatOpenAI."""

    def __init__(self, api_key: str, model: str):
        self.api_key = api_key
        self.model = model

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int = 1000,
        temperature: float = 0.1,
        response_format: ResponseFormat = "text",
    ) -> str:
        llm: Any = get_llm(self.api_key, self.model, temperature, max_tokens)
        if response_format == "json":
            llm = llm.bind(response_format={"type": "json_object"})

        messages: list[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))

        response = await llm.ainvoke(messages)
        content = response.content
        if not isinstance(content, str):
            # Content blocks; keep the text parts
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part) for part in content
            )

        logger.debug(
            f"Generated {len(content)} chars with {self.model}",
            extra={"model": self.model, "max_tokens": max_tokens},
        )
        return content


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from LLM output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def parse_llm_json_dict(raw_output: str) -> dict:
    """
    Parse LLM output as a JSON object.

    Falls back to the span between the first ``{`` and the last ``}`` when the
    model wrapped the object in prose.

    Raises:
        json.JSONDecodeError: If no JSON object can be parsed
        ValueError: If the parsed value is not an object
    """
    cleaned = _strip_llm_fences(raw_output)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise
        parsed = json.loads(cleaned[start : end + 1])

    if not isinstance(parsed, dict):
        raise ValueError(f"Expected JSON object, got {type(parsed).__name__}")
    return parsed


def parse_llm_json_list(raw_output: str) -> list:
    """
    Parse the first JSON array found in LLM output.

    Raises:
        ValueError: If no array is present
        json.JSONDecodeError: If the array is malformed
    """
    cleaned = _strip_llm_fences(raw_output)
    match = re.search(r"\[[\s\S]*\]", cleaned)
    if not match:
        raise ValueError("No JSON array in LLM output")
    parsed = json.loads(match.group(0))
    if not isinstance(parsed, list):
        raise ValueError(f"Expected JSON array, got {type(parsed).__name__}")
    return parsed
