"""Tests for the LangChain generator and LLM output parsing."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from pdfrag.core.llm import (
    ChatOpenAIGenerator,
    _strip_llm_fences,
    parse_llm_json_dict,
    parse_llm_json_list,
)


def test_strip_fences():
    """Fenced output is unwrapped."""
    assert _strip_llm_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert _strip_llm_fences('```\n[1]\n```') == "[1]"
    assert _strip_llm_fences('  {"a": 1}  ') == '{"a": 1}'


def test_parse_llm_json_dict_from_prose():
    """An object wrapped in prose is recovered."""
    parsed = parse_llm_json_dict('Here you go: {"answer": "25 Nm"} Hope that helps.')
    assert parsed == {"answer": "25 Nm"}


def test_parse_llm_json_dict_rejects_non_objects():
    """Arrays and prose without an object are rejected."""
    with pytest.raises(ValueError):
        parse_llm_json_dict("[1, 2]")
    with pytest.raises(json.JSONDecodeError):
        parse_llm_json_dict("no json here")


def test_parse_llm_json_list():
    """The first array in the output is returned."""
    assert parse_llm_json_list('Questions:\n["A?", "B?"]') == ["A?", "B?"]
    with pytest.raises(ValueError):
        parse_llm_json_list("no array")


@pytest.mark.asyncio
async def test_generator_sends_system_and_user_messages():
    """The generator sends a system and a human message and returns the text."""
    mock_llm = MagicMock()
    mock_llm.ainvoke = AsyncMock(return_value=AIMessage(content="25 Nm"))

    with patch("pdfrag.core.llm.get_llm", return_value=mock_llm) as mock_get_llm:
        generator = ChatOpenAIGenerator("key", "gpt-4o-mini")
        text = await generator.generate(
            "What torque?", system_prompt="Be precise.", max_tokens=200, temperature=0.2
        )

    assert text == "25 Nm"
    mock_get_llm.assert_called_once_with("key", "gpt-4o-mini", 0.2, 200)
    mock_llm.bind.assert_not_called()
    messages = mock_llm.ainvoke.call_args.args[0]
    assert isinstance(messages[0], SystemMessage)
    assert isinstance(messages[1], HumanMessage)
    assert messages[1].content == "What torque?"


@pytest.mark.asyncio
async def test_generator_json_mode_binds_response_format():
    """JSON responses bind the json_object response format."""
    bound = MagicMock()
    bound.ainvoke = AsyncMock(return_value=AIMessage(content='{"answer": "x"}'))
    mock_llm = MagicMock()
    mock_llm.bind.return_value = bound

    with patch("pdfrag.core.llm.get_llm", return_value=mock_llm):
        text = await ChatOpenAIGenerator("key", "gpt-4o-mini").generate(
            "Answer in JSON", response_format="json"
        )

    assert text == '{"answer": "x"}'
    mock_llm.bind.assert_called_once_with(response_format={"type": "json_object"})
    assert len(bound.ainvoke.call_args.args[0]) == 1


@pytest.mark.asyncio
async def test_generator_joins_content_blocks():
    """List content is flattened to its text parts."""
    mock_llm = MagicMock()
    mock_llm.ainvoke = AsyncMock(
        return_value=AIMessage(content=[{"type": "text", "text": "Hello "}, "world"])
    )

    with patch("pdfrag.core.llm.get_llm", return_value=mock_llm):
        text = await ChatOpenAIGenerator("key", "gpt-4o-mini").generate("Hi")

    assert text == "Hello world"
