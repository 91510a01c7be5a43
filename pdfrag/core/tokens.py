"""Token counting and token-aware text splitting.

``TokenCounter`` uses tiktoken. If the encoding cannot be loaded (for
example when the BPE file cannot be fetched) it falls back to a word-count
heuristic of roughly 0.75 words per token. Anything with a
``count(text) -> int`` method can be handed to the chunking engine.
"""

import math
import re
from functools import lru_cache
from typing import Any, Protocol

import tiktoken

from pdfrag.core.logging import get_logger

logger = get_logger(__name__)

_WORD_RE = re.compile(r"\S+")
_SENTENCE_END_RE = re.compile(r"[.!?](?:\s|$)")


class TokenCounterLike(Protocol):
    def count(self, text: str) -> int: ...


def _word_estimate(text: str) -> int:
    words = text.split()
    return math.ceil(len(words) / 0.75)


class WordTokenCounter:
    """Deterministic word-based estimate: ceil(words / 0.75)."""

    def count(self, text: str) -> int:
        return _word_estimate(text)


class TokenCounter:
    """tiktoken-backed counter with a word-heuristic fallback."""

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._encoding = None
        self._unavailable = False

    def _get_encoding(self):
        if self._encoding is None and not self._unavailable:
            try:
                self._encoding = tiktoken.get_encoding(self.encoding_name)
            except Exception as e:
                self._unavailable = True
                logger.warning(
                    f"Tokenizer {self.encoding_name} unavailable, using word estimate: {e}",
                    extra={"encoding": self.encoding_name},
                )
        return self._encoding

    def count(self, text: str) -> int:
        if not text:
            return 0
        encoding = self._get_encoding()
        if encoding is None:
            return _word_estimate(text)
        try:
            return len(encoding.encode(text, disallowed_special=()))
        except Exception as e:
            logger.debug(f"Token encoding failed, using word estimate: {e}")
            return _word_estimate(text)


@lru_cache(maxsize=4)
def get_token_counter(encoding_name: str = "cl100k_base") -> TokenCounter:
    """Shared counter per encoding."""
    return TokenCounter(encoding_name)


def estimate_tokens(text: str) -> int:
    """Fast character-based estimate (about 4 characters per token)."""
    return math.ceil(len(text) / 4)


def find_token_cut(text: str, max_tokens: int, counter: TokenCounterLike | None = None) -> int:
    """
    Find the largest word-aligned prefix of ``text`` within ``max_tokens``.

    Args:
        text: Text to cut
        max_tokens: Token budget for the prefix
        counter: Token counter (defaults to the shared tiktoken counter)

    Returns:
        Character offset of the cut: ``text[:cut]`` is the fitting prefix.
        0 when not even the first word fits.
    """
    counter = counter or get_token_counter()
    if max_tokens <= 0 or not text:
        return 0
    if counter.count(text) <= max_tokens:
        return len(text)

    spans = [m.span() for m in _WORD_RE.finditer(text)]
    if not spans:
        return len(text)

    start = spans[0][0]
    left, right = 0, len(spans)
    best = 0
    # Binary search on the number of leading words that fit
    while left < right:
        mid = (left + right) // 2
        candidate = text[start : spans[mid][1]]
        if counter.count(candidate) <= max_tokens:
            best = mid + 1
            left = mid + 1
        else:
            right = mid

    return spans[best - 1][1] if best > 0 else 0


def split_text_at_token_count(
    text: str, max_tokens: int, counter: TokenCounterLike | None = None
) -> tuple[str, str]:
    """Split text into (head within max_tokens, remainder) at a word boundary."""
    cut = find_token_cut(text, max_tokens, counter)
    return text[:cut], text[cut:].lstrip()


def find_sentence_boundary(text: str, max_pos: int) -> int:
    """
    Find the last sentence boundary at or before ``max_pos``.

    Falls back to the last paragraph break, then the last space, then
    ``max_pos`` itself.
    """
    search_text = text[:max_pos]

    last_boundary = 0
    for match in _SENTENCE_END_RE.finditer(search_text):
        last_boundary = match.end()

    if last_boundary == 0:
        paragraph_break = search_text.rfind("\n\n")
        if paragraph_break > 0:
            last_boundary = paragraph_break + 2

    if last_boundary == 0:
        last_space = search_text.rfind(" ")
        if last_space > 0:
            last_boundary = last_space + 1

    return last_boundary or max_pos


def get_token_stats(text: str, counter: TokenCounterLike | None = None) -> dict[str, Any]:
    """Token statistics for tuning chunk sizes."""
    counter = counter or get_token_counter()
    tokens = counter.count(text)
    words = text.split()
    chars = len(text)

    return {
        "total_tokens": tokens,
        "avg_tokens_per_word": tokens / len(words) if words else 0,
        "avg_chars_per_token": chars / tokens if tokens else 0,
        "word_count": len(words),
        "char_count": chars,
    }


def is_within_token_limit(
    text: str, max_tokens: int, counter: TokenCounterLike | None = None
) -> bool:
    counter = counter or get_token_counter()
    return counter.count(text) <= max_tokens
