"""Tests for embeddings generation with mocked OpenAI API."""

from unittest.mock import MagicMock

import pytest

from pdfrag.core.embeddings import OpenAIEmbeddingProvider, embed_in_batches, embed_texts
from tests.fakes.embedders import FakeEmbedder


@pytest.fixture
def mock_openai_response():
    """Create a mock OpenAI embeddings response."""

    def _create_response(num_embeddings: int, dimension: int = 1536):
        mock_response = MagicMock()
        mock_response.data = []

        for i in range(num_embeddings):
            mock_embedding = MagicMock()
            mock_embedding.embedding = [0.1 * (i + 1)] * dimension
            mock_response.data.append(mock_embedding)

        return mock_response

    return _create_response


def test_embed_texts_single(mock_openai_response):
    """Test embedding a single text."""
    mock_client = MagicMock()
    mock_client.embeddings.create.return_value = mock_openai_response(1)

    embeddings = embed_texts(mock_client, ["Hello world"], "text-embedding-3-small", 1536)

    assert len(embeddings) == 1
    assert len(embeddings[0]) == 1536
    mock_client.embeddings.create.assert_called_once_with(
        model="text-embedding-3-small", input=["Hello world"]
    )


def test_embed_texts_empty():
    """Test that empty input makes no API call."""
    mock_client = MagicMock()

    assert embed_texts(mock_client, [], "text-embedding-3-small") == []
    mock_client.embeddings.create.assert_not_called()


def test_embed_texts_dimension_mismatch(mock_openai_response):
    """Test that vectors of the wrong size are rejected."""
    mock_client = MagicMock()
    mock_client.embeddings.create.return_value = mock_openai_response(1, dimension=768)

    with pytest.raises(ValueError, match="expected 1536, got 768"):
        embed_texts(mock_client, ["Hello"], "text-embedding-3-small", 1536)


def test_embed_texts_api_error():
    """Test that API errors propagate."""
    mock_client = MagicMock()
    mock_client.embeddings.create.side_effect = RuntimeError("rate limited")

    with pytest.raises(RuntimeError, match="rate limited"):
        embed_texts(mock_client, ["Hello"], "text-embedding-3-small")


@pytest.mark.asyncio
async def test_provider_preserves_order_and_model(mock_openai_response):
    """Test the provider wraps vectors with the model name in input order."""
    mock_client = MagicMock()
    mock_client.embeddings.create.return_value = mock_openai_response(2, dimension=3)
    provider = OpenAIEmbeddingProvider(mock_client, "text-embedding-3-small", expected_dim=3)

    embeddings = await provider.embed_many(["first", "second"])

    assert [e.vector[0] for e in embeddings] == pytest.approx([0.1, 0.2])
    assert all(e.model == "text-embedding-3-small" for e in embeddings)


@pytest.mark.asyncio
async def test_provider_splits_large_batches(mock_openai_response, monkeypatch):
    """Test inputs above the request limit are sent in several calls."""
    mock_client = MagicMock()
    mock_client.embeddings.create.side_effect = [
        mock_openai_response(2, dimension=3),
        mock_openai_response(1, dimension=3),
    ]
    provider = OpenAIEmbeddingProvider(mock_client, "text-embedding-3-small")
    monkeypatch.setattr(provider, "MAX_BATCH", 2)

    embeddings = await provider.embed_many(["a", "b", "c"])

    assert len(embeddings) == 3
    assert mock_client.embeddings.create.call_count == 2
    assert mock_client.embeddings.create.call_args_list[1].kwargs["input"] == ["c"]


@pytest.mark.asyncio
async def test_provider_embed_single(mock_openai_response):
    """Test embedding one text returns one Embedding."""
    mock_client = MagicMock()
    mock_client.embeddings.create.return_value = mock_openai_response(1, dimension=3)

    embedding = await OpenAIEmbeddingProvider(mock_client, "m").embed("hello")

    assert embedding.vector == pytest.approx([0.1, 0.1, 0.1])


def test_provider_requests_hold_at_most_100_texts():
    """Test the provider sends no more than 100 inputs per request."""
    assert OpenAIEmbeddingProvider.MAX_BATCH == 100


class FlakyEmbedder(FakeEmbedder):
    """Raises for the first ``failures`` calls."""

    def __init__(self, failures: int):
        super().__init__(dim=2)
        self.failures = failures

    async def embed_many(self, texts):
        if len(self.calls) < self.failures:
            self.calls.append(list(texts))
            raise RuntimeError("rate limited")
        return await super().embed_many(texts)


@pytest.mark.asyncio
async def test_embed_in_batches_splits_and_keeps_order():
    """Test texts are sent in fixed-size batches and results stay aligned."""
    embedder = FakeEmbedder(dim=2, vectors={"b": [0.0, 1.0]})

    result = await embed_in_batches(embedder, ["a", "b", "c"], batch_size=2, retry_delay=0)

    assert embedder.calls == [["a", "b"], ["c"]]
    assert [e.vector for e in result.embeddings] == [[1.0, 0.0], [0.0, 1.0], [1.0, 0.0]]
    assert result.errors == {}
    assert result.embedded_count == 3


@pytest.mark.asyncio
async def test_embed_in_batches_retries_transient_failures():
    """Test a batch that fails once succeeds on the retry."""
    embedder = FlakyEmbedder(failures=1)

    result = await embed_in_batches(embedder, ["a", "b"], max_retries=3, retry_delay=0)

    assert len(embedder.calls) == 2
    assert result.embedded_count == 2
    assert result.errors == {}


@pytest.mark.asyncio
async def test_embed_in_batches_reports_failed_items():
    """Test a batch failing every attempt marks each of its inputs and spares the others."""
    embedder = FlakyEmbedder(failures=2)

    result = await embed_in_batches(
        embedder, ["a", "b", "c"], batch_size=2, max_retries=2, retry_delay=0
    )

    assert result.embeddings[0] is None
    assert result.embeddings[1] is None
    assert result.embeddings[2].vector == [1.0, 0.0]
    assert result.errors == {0: "rate limited", 1: "rate limited"}
