"""OpenAI embeddings generation with validation."""

import asyncio
from abc import ABC, abstractmethod

from openai import OpenAI
from pydantic import BaseModel, Field

from pdfrag.core.logging import get_logger
from pdfrag.core.result import Ok, call_external

logger = get_logger(__name__)


class Embedding(BaseModel):
    """A vector and the model that produced it."""

    vector: list[float]
    model: str


class BatchEmbeddingResult(BaseModel):
    """Per-input outcome of a batched embedding run; ``None`` marks a failed input."""

    embeddings: list[Embedding | None] = Field(default_factory=list)
    errors: dict[int, str] = Field(default_factory=dict, description="Input index -> error")

    @property
    def embedded_count(self) -> int:
        return sum(1 for e in self.embeddings if e is not None)


class EmbeddingProvider(ABC):
    """Anything that embeds text into vectors."""

    @abstractmethod
    async def embed_many(self, texts: list[str]) -> list[Embedding]:
        """Embed a batch of texts, preserving order."""

    async def embed(self, text: str) -> Embedding:
        """Embed a single text."""
        embeddings = await self.embed_many([text])
        return embeddings[0]


def embed_texts(
    client: OpenAI,
    texts: list[str],
    model: str,
    expected_dim: int | None = None,
) -> list[list[float]]:
    """
    Generate embeddings for a list of texts using OpenAI.

    Args:
        client: OpenAI client
        texts: List of text strings to embed
        model: Embedding model name
        expected_dim: Reject vectors of any other length when set

    Returns:
        List of embedding vectors (each vector is list of floats)

    Raises:
        ValueError: If embedding dimension doesn't match expected_dim
        Exception: If OpenAI API call fails
    """
    if not texts:
        return []

    try:
        response = client.embeddings.create(model=model, input=texts)

        embeddings = []
        for i, embedding_obj in enumerate(response.data):
            embedding = embedding_obj.embedding

            if expected_dim is not None and len(embedding) != expected_dim:
                raise ValueError(
                    f"Embedding dimension mismatch for text {i}: "
                    f"expected {expected_dim}, got {len(embedding)}"
                )

            embeddings.append(embedding)

        logger.info(
            f"Generated {len(embeddings)} embeddings using {model}",
            extra={"model": model, "count": len(embeddings)},
        )

        return embeddings

    except Exception as e:
        logger.error(f"Failed to generate embeddings: {e}")
        raise


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """EmbeddingProvider backed by the OpenAI embeddings endpoint."""

    # inputs per embeddings request
    MAX_BATCH = 100

    def __init__(self, client: OpenAI, model: str, expected_dim: int | None = None):
        self.client = client
        self.model = model
        self.expected_dim = expected_dim

    async def embed_many(self, texts: list[str]) -> list[Embedding]:
        vectors: list[list[float]] = []
        for i in range(0, len(texts), self.MAX_BATCH):
            batch = texts[i : i + self.MAX_BATCH]
            vectors.extend(
                await asyncio.to_thread(
                    embed_texts, self.client, batch, self.model, self.expected_dim
                )
            )
        return [Embedding(vector=v, model=self.model) for v in vectors]


async def embed_in_batches(
    provider: EmbeddingProvider,
    texts: list[str],
    batch_size: int = 100,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    timeout: float | None = None,
) -> BatchEmbeddingResult:
    """
    Embed texts batch by batch, retrying each failing batch with exponential backoff.

    A batch that still fails, or comes back with the wrong number of vectors,
    leaves ``None`` at each of its positions and an error per input. The
    other batches are unaffected.

    Args:
        provider: Embedding provider
        texts: Texts to embed
        batch_size: Inputs per provider call
        max_retries: Attempts per batch
        retry_delay: Initial backoff in seconds, doubled after each attempt
        timeout: Per-attempt timeout in seconds

    Returns:
        BatchEmbeddingResult aligned with ``texts``
    """
    batch_size = max(1, batch_size)
    max_retries = max(1, max_retries)
    embeddings: list[Embedding | None] = [None] * len(texts)
    errors: dict[int, str] = {}

    for batch_index, start in enumerate(range(0, len(texts), batch_size)):
        batch = texts[start : start + batch_size]
        last_error = "Unknown embedding error"

        for attempt in range(max_retries):
            result = await call_external(
                "chunk_embedding", lambda: provider.embed_many(batch), timeout
            )
            if isinstance(result, Ok) and len(result.value) == len(batch):
                embeddings[start : start + len(batch)] = result.value
                break

            if isinstance(result, Ok):
                last_error = f"expected {len(batch)} embeddings, got {len(result.value)}"
            else:
                last_error = result.failure.message
            if attempt < max_retries - 1:
                delay = retry_delay * (2**attempt)
                logger.warning(
                    f"Embedding batch {batch_index + 1} failed (attempt {attempt + 1}/{max_retries}), "
                    f"retrying in {delay:.1f}s: {last_error}"
                )
                await asyncio.sleep(delay)
        else:
            logger.error(
                f"Embedding batch {batch_index + 1} failed after {max_retries} attempts: {last_error}",
                extra={"batch_size": len(batch)},
            )
            for offset in range(len(batch)):
                errors[start + offset] = last_error

    return BatchEmbeddingResult(embeddings=embeddings, errors=errors)
