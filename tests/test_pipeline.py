"""Tests for document ingestion and service wiring."""

from unittest.mock import patch

import pytest

from pdfrag.core.chunking import ChunkingEngine
from pdfrag.core.config import Settings
from pdfrag.core.errors import InputValidationError, OwnershipError, PageExtractionError
from pdfrag.core.facts import FactExtractor
from pdfrag.core.pages import PageExtractor, PdfPageExtractor
from pdfrag.core.schemas_chunks import ChunkingOptions, FactType, Page
from pdfrag.core.tokens import WordTokenCounter
from pdfrag.core.vector_store import VectorStore
from pdfrag.db.memory import InMemoryChunkRepository
from pdfrag.pipeline import IngestionPipeline, build_services
from tests.fakes.embedders import FakeEmbedder

OPTIONS = ChunkingOptions(chunk_size_tokens=40, chunk_overlap_tokens=5)


def _page_text(count: int) -> str:
    return " ".join(f"The pump seal number {i} must be inspected weekly." for i in range(count))


PAGES = [Page(page_number=1, text=_page_text(12)), Page(page_number=2, text=_page_text(12))]


class ShortEmbedder(FakeEmbedder):
    """Drops the last vector of any batch holding the first text it ever saw."""

    def __init__(self):
        super().__init__(dim=4)
        self.poisoned = None

    async def embed_many(self, texts):
        embeddings = await super().embed_many(texts)
        if self.poisoned is None:
            self.poisoned = texts[0]
        if self.poisoned in texts:
            return embeddings[:-1]
        return embeddings


class StaticExtractor(PageExtractor):
    """Returns fixed pages, or raises when given an error."""

    def __init__(self, pages=None, error=None):
        self.pages = pages or []
        self.error = error

    async def extract_pages(self, data):
        if self.error:
            raise self.error
        return self.pages


def build_pipeline(
    registry, repository, extractor=None, embedder=None, batch_size=100, embedding_batch_size=100
):
    store = VectorStore(
        registry, repository, batch_size=batch_size, retry_delay=0, max_retries=1, embedding_dim=4
    )
    return IngestionPipeline(
        registry,
        extractor or StaticExtractor(PAGES),
        ChunkingEngine(WordTokenCounter()),
        embedder or FakeEmbedder(dim=4),
        store,
        chunking_options=OPTIONS,
        embedding_batch_size=embedding_batch_size,
        embedding_retry_delay=0,
    )


@pytest.mark.asyncio
async def test_ingest_pages_end_to_end(registry, repository):
    """Pre-extracted pages are chunked, embedded and stored."""
    pipeline = build_pipeline(registry, repository)

    result = await pipeline.ingest("doc-1", "user-1", pages=PAGES)

    assert result.status == "completed"
    assert result.stage == "completed"
    assert result.stored_count == result.chunking.total_chunks > 1
    assert len(repository.rows) == result.stored_count
    record = registry.documents["doc-1"]
    assert record.history == [
        "processing:chunking",
        "processing:embedding",
        "processing:storing",
        "completed:completed",
    ]
    assert record.total_chunks == result.stored_count
    assert all(row["embedding_model"] == "fake-embedding" for row in repository.rows.values())


@pytest.mark.asyncio
async def test_tolerance_on_page_two_end_to_end(registry, repository):
    """A three-page manual keeps the page-2 tolerance on page 2 with its facts."""
    pages = [
        Page(page_number=1, text=_page_text(8)),
        Page(
            page_number=2,
            text=f"{_page_text(3)} The tolerance is ±0.05mm at 25°C. {_page_text(3)}",
        ),
        Page(page_number=3, text=_page_text(8)),
    ]
    options = ChunkingOptions(
        chunk_size_tokens=50,
        chunk_overlap_tokens=10,
        dual_layer=True,
        detail_chunk_size=20,
        detail_chunk_overlap=5,
    )
    pipeline = build_pipeline(registry, repository)

    result = await pipeline.ingest("doc-1", "user-1", pages=pages, options=options)

    assert result.status == "completed"
    page_two = [c for c in result.chunking.chunks if c.page_number == 2 and not c.is_detail]
    assert page_two
    assert all("tolerance" not in c.text for c in result.chunking.chunks if c.page_number != 2)

    chunk = next(c for c in page_two if "±0.05mm at 25°C" in c.text)
    facts = FactExtractor().extract_sync(chunk.text).facts
    tolerance = next(f for f in facts if f.type == FactType.TOLERANCE)
    temperature = next(f for f in facts if f.type == FactType.TEMPERATURE)
    assert tolerance.value == "±0.05"
    assert (temperature.value, temperature.unit) == ("25", "C")

    stored_detail_facts = [
        fact["type"]
        for row in repository.rows.values()
        if row["chunk_layer"] == "detail" and row["page_number"] == 2
        for fact in row["extracted_facts"]
    ]
    assert "tolerance" in stored_detail_facts


@pytest.mark.asyncio
async def test_ingest_pdf_bytes_extracts_first(registry, repository):
    """Raw bytes go through page extraction."""
    pipeline = build_pipeline(registry, repository)

    result = await pipeline.ingest("doc-1", "user-1", data=b"%PDF-fake")

    assert result.status == "completed"
    assert registry.documents["doc-1"].history[0] == "processing:extracting"


@pytest.mark.asyncio
async def test_extraction_failure_marks_document_failed(registry, repository):
    """An unreadable PDF fails at the extracting stage."""
    extractor = StaticExtractor(error=PageExtractionError("Could not open PDF: broken"))
    pipeline = build_pipeline(registry, repository, extractor=extractor)

    result = await pipeline.ingest("doc-1", "user-1", data=b"broken")

    assert result.status == "failed"
    assert result.stage == "extracting"
    assert registry.documents["doc-1"].status == "failed"
    assert registry.documents["doc-1"].processing_message == "Could not open PDF: broken"


@pytest.mark.asyncio
async def test_ingest_requires_input(registry, repository):
    """Either bytes or pages must be given."""
    with pytest.raises(InputValidationError):
        await build_pipeline(registry, repository).ingest("doc-1", "user-1")


@pytest.mark.asyncio
async def test_ingest_checks_ownership(registry, repository):
    """Documents of other users are refused before any work."""
    with pytest.raises(OwnershipError):
        await build_pipeline(registry, repository).ingest("doc-3", "user-1", pages=PAGES)
    assert registry.documents["doc-3"].history == []


@pytest.mark.asyncio
async def test_blank_pages_fail_chunking(registry, repository):
    """A document without text fails with a clear message."""
    blank = [Page(page_number=1, text="   ")]

    result = await build_pipeline(registry, repository).ingest("doc-1", "user-1", pages=blank)

    assert result.status == "failed"
    assert result.stage == "chunking"
    assert result.message == "No text content extracted"


@pytest.mark.asyncio
async def test_embedding_failure(registry, repository):
    """An embedding outage fails the document and stores nothing."""
    embedder = FakeEmbedder(dim=4, fail=True)
    pipeline = build_pipeline(registry, repository, embedder=embedder)

    result = await pipeline.ingest("doc-1", "user-1", pages=PAGES)

    assert result.status == "failed"
    assert result.stage == "embedding"
    assert result.message == "Embedding failed: embedding service down"
    assert repository.rows == {}
    assert len(embedder.calls) == 3


@pytest.mark.asyncio
async def test_short_embedding_batch_fails_its_chunks(registry, repository):
    """A batch that returns fewer vectors than texts fails its chunks; the rest are stored."""
    pipeline = build_pipeline(
        registry, repository, embedder=ShortEmbedder(), embedding_batch_size=2
    )

    result = await pipeline.ingest("doc-1", "user-1", pages=PAGES)

    total = result.chunking.total_chunks
    assert total > 2
    assert result.status == "partial"
    assert result.failed_count == 2
    assert result.stored_count == total - 2
    assert [e.chunk_index for e in result.storage.errors] == [0, 1]
    assert all(
        e.error == "Embedding failed: expected 2 embeddings, got 1" for e in result.storage.errors
    )
    assert sorted(row["chunk_index"] for row in repository.rows.values()) == list(range(2, total))


@pytest.mark.asyncio
async def test_short_embedding_of_every_chunk_fails_ingest(registry, repository):
    """When no batch returns a full set of vectors nothing is stored."""
    pipeline = build_pipeline(registry, repository, embedder=ShortEmbedder())

    result = await pipeline.ingest("doc-1", "user-1", pages=PAGES)

    assert result.status == "failed"
    assert result.stage == "embedding"
    assert result.message.startswith("Embedding failed: expected")
    assert repository.rows == {}


@pytest.mark.asyncio
async def test_bad_options_raise_and_mark_failed(registry, repository):
    """Inconsistent chunking options are rejected."""
    pipeline = build_pipeline(registry, repository)
    options = ChunkingOptions(chunk_size_tokens=10, chunk_overlap_tokens=10)

    with pytest.raises(InputValidationError):
        await pipeline.ingest("doc-1", "user-1", pages=PAGES, options=options)
    assert registry.documents["doc-1"].status == "failed"


@pytest.mark.asyncio
async def test_partial_storage(registry, repository, monkeypatch):
    """Some failed batches leave the document partially stored."""
    original = repository.insert_chunks

    async def flaky(rows):
        if rows[0]["chunk_index"] == 0:
            raise RuntimeError("db down")
        await original(rows)

    monkeypatch.setattr(repository, "insert_chunks", flaky)
    pipeline = build_pipeline(registry, repository, batch_size=1)

    result = await pipeline.ingest("doc-1", "user-1", pages=PAGES)

    assert result.status == "partial"
    assert result.failed_count == 1
    assert result.stored_count == result.chunking.total_chunks - 1
    assert registry.documents["doc-1"].history[-1] == "partial:storing"


@pytest.mark.asyncio
async def test_pdf_extractor_rejects_garbage():
    """Bytes that are not a PDF raise PageExtractionError."""
    with pytest.raises(PageExtractionError):
        await PdfPageExtractor().extract_pages(b"definitely not a pdf")


@pytest.mark.asyncio
async def test_pdf_extractor_reads_pages():
    """Text comes back one Page per PDF page."""
    import fitz

    doc = fitz.open()
    for text in ("Hydraulic pump overview", "Seal replacement"):
        page = doc.new_page()
        page.insert_text((72, 72), text)
    data = doc.tobytes()
    doc.close()

    pages = await PdfPageExtractor().extract_pages(data)

    assert [p.page_number for p in pages] == [1, 2]
    assert "Hydraulic pump overview" in pages[0].text
    assert "Seal replacement" in pages[1].text

    truncated = await PdfPageExtractor(max_pages=1).extract_pages(data)
    assert len(truncated) == 1


def test_build_services_memory_backend():
    """The memory backend wires every service without a database."""
    settings = Settings(VECTOR_BACKEND="memory", SEARCH_DEFAULT_TOP_K=7)

    with patch("pdfrag.pipeline.get_token_counter", return_value=WordTokenCounter()):
        services = build_services(settings)

    assert isinstance(services.repository, InMemoryChunkRepository)
    assert services.search.default_top_k == 7
    assert services.rag.search is services.search
    assert services.conversational.rag is services.rag
    assert services.pipeline.store is services.store
    assert services.rag.query_history is services.query_history
