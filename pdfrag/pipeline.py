"""Document ingestion and service wiring.

``IngestionPipeline`` takes a PDF (or already-extracted pages) through
extract -> chunk -> embed -> store and pushes its progress to the document
registry. ``build_services`` is the only place that reads settings and
constructs SDK clients.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Literal

from openai import OpenAI
from pydantic import BaseModel

from pdfrag.chains.conversational_rag import ConversationalRAG
from pdfrag.chains.rag import RAGOrchestrator
from pdfrag.context.conversation import ConversationContextManager
from pdfrag.core.chunking import ChunkingEngine
from pdfrag.core.config import Settings, get_settings
from pdfrag.core.embeddings import EmbeddingProvider, OpenAIEmbeddingProvider, embed_in_batches
from pdfrag.core.errors import InputValidationError, OwnershipError, PageExtractionError
from pdfrag.core.facts import FactExtractor
from pdfrag.core.llm import ChatOpenAIGenerator, TextGenerator
from pdfrag.core.logging import get_logger, log_with_context
from pdfrag.core.pages import PageExtractor, PdfPageExtractor
from pdfrag.core.schemas_chunks import ChunkingOptions, ChunkingResult, Page
from pdfrag.core.schemas_search import StorageError, StorageResult
from pdfrag.core.tokens import get_token_counter
from pdfrag.core.vector_search import VectorSearch
from pdfrag.core.vector_store import VectorStore
from pdfrag.db.base import ChunkRepository, DocumentRegistry, QueryHistoryRepository

logger = get_logger(__name__)

IngestionStatus = Literal["completed", "partial", "failed"]
IngestionStage = Literal["extracting", "chunking", "embedding", "storing", "completed"]


class IngestionResult(BaseModel):
    """Outcome of ingesting one document."""

    document_id: str
    status: IngestionStatus
    stage: IngestionStage
    message: str = ""
    stored_count: int = 0
    failed_count: int = 0
    chunking: ChunkingResult | None = None
    storage: StorageResult | None = None


def _with_embedding_errors(storage: StorageResult, failures: dict[int, str]) -> StorageResult:
    errors = [
        StorageError(chunk_index=e.chunk_index, error=f"Embedding failed: {failures[e.chunk_index]}")
        if e.chunk_index in failures
        else e
        for e in storage.errors
    ]
    return storage.model_copy(update={"errors": errors})


class IngestionPipeline:
    """Extracts, chunks, embeds and stores one document at a time."""

    def __init__(
        self,
        registry: DocumentRegistry,
        extractor: PageExtractor,
        chunker: ChunkingEngine,
        embedder: EmbeddingProvider,
        store: VectorStore,
        chunking_options: ChunkingOptions | None = None,
        embedding_timeout: float | None = 30.0,
        embedding_batch_size: int = 100,
        embedding_max_retries: int = 3,
        embedding_retry_delay: float = 1.0,
    ):
        self.registry = registry
        self.extractor = extractor
        self.chunker = chunker
        self.embedder = embedder
        self.store = store
        self.chunking_options = chunking_options or ChunkingOptions()
        self.embedding_timeout = embedding_timeout
        self.embedding_batch_size = embedding_batch_size
        self.embedding_max_retries = embedding_max_retries
        self.embedding_retry_delay = embedding_retry_delay

    async def ingest(
        self,
        document_id: str,
        user_id: str,
        data: bytes | None = None,
        pages: list[Page] | None = None,
        options: ChunkingOptions | None = None,
    ) -> IngestionResult:
        """
        Ingest a document from raw PDF bytes or pre-extracted pages.

        Returns:
            IngestionResult; ``partial`` when some chunks failed to store.

        Raises:
            InputValidationError: If neither data nor pages is given, or the
                chunking options are inconsistent
            OwnershipError: If the document does not belong to ``user_id``
        """
        if data is None and pages is None:
            raise InputValidationError("Either PDF data or pages are required")
        if not await self.registry.document_exists(document_id, user_id):
            raise OwnershipError(document_id, user_id)

        options = options or self.chunking_options

        if pages is None:
            await self._set_status(document_id, "processing", "extracting", "Extracting pages")
            try:
                pages = await self.extractor.extract_pages(data)
            except PageExtractionError as e:
                return await self._fail(document_id, "extracting", str(e))

        await self._set_status(
            document_id, "processing", "chunking", f"Chunking {len(pages)} pages"
        )
        try:
            if options.use_llm_facts:
                chunking = await self.chunker.chunk_with_llm_facts(
                    pages, document_id, user_id, options
                )
            else:
                chunking = self.chunker.chunk(pages, document_id, user_id, options)
        except InputValidationError as e:
            logger.error(f"Chunking options rejected for document {document_id}: {e}")
            await self._fail(document_id, "chunking", str(e))
            raise

        if not chunking.chunks:
            return await self._fail(
                document_id, "chunking", "No text content extracted", chunking=chunking
            )

        await self._set_status(
            document_id, "processing", "embedding", f"Embedding {chunking.total_chunks} chunks"
        )
        embedded = await embed_in_batches(
            self.embedder,
            [c.text for c in chunking.chunks],
            batch_size=self.embedding_batch_size,
            max_retries=self.embedding_max_retries,
            retry_delay=self.embedding_retry_delay,
            timeout=self.embedding_timeout,
        )
        if embedded.embedded_count == 0:
            return await self._fail(
                document_id,
                "embedding",
                f"Embedding failed: {next(iter(embedded.errors.values()))}",
                chunking=chunking,
            )

        # unembedded chunks go through so the store reports them per chunk
        chunks = [
            chunk.with_embedding(embedding.vector, embedding.model) if embedding else chunk
            for chunk, embedding in zip(chunking.chunks, embedded.embeddings, strict=True)
        ]

        await self._set_status(document_id, "processing", "storing", "Storing chunks")
        storage = await self.store.store(chunks, document_id, user_id)
        if embedded.errors:
            storage = _with_embedding_errors(storage, embedded.errors)

        if storage.success:
            status, stage = "completed", "completed"
            message = f"Stored {storage.stored_count} chunks"
        elif storage.stored_count > 0:
            status, stage = "partial", "storing"
            message = f"Stored {storage.stored_count} of {len(chunks)} chunks"
        else:
            status, stage = "failed", "storing"
            message = storage.errors[0].error if storage.errors else "No chunks stored"

        await self._set_status(document_id, status, stage, message)
        log_with_context(
            logger,
            logging.INFO,
            f"Ingested document {document_id}: {status}",
            document_id=document_id,
            stored=storage.stored_count,
            failed=storage.failed_count,
            unembedded=len(embedded.errors),
        )
        return IngestionResult(
            document_id=document_id,
            status=status,
            stage=stage,
            message=message,
            stored_count=storage.stored_count,
            failed_count=storage.failed_count,
            chunking=chunking,
            storage=storage,
        )

    async def _fail(
        self,
        document_id: str,
        stage: IngestionStage,
        message: str,
        chunking: ChunkingResult | None = None,
    ) -> IngestionResult:
        logger.warning(
            f"Ingestion failed for document {document_id} at {stage}: {message}",
            extra={"document_id": document_id, "stage": stage},
        )
        await self._set_status(document_id, "failed", stage, message)
        return IngestionResult(
            document_id=document_id,
            status="failed",
            stage=stage,
            message=message,
            chunking=chunking,
        )

    async def _set_status(self, document_id: str, status: str, stage: str, message: str) -> None:
        try:
            await self.registry.update_document_status(document_id, status, stage, message)
        except Exception as e:
            logger.warning(f"Could not update status for document {document_id}: {e}")


@dataclass
class Services:
    """Fully wired service graph."""

    settings: Settings
    registry: DocumentRegistry
    repository: ChunkRepository
    query_history: QueryHistoryRepository
    store: VectorStore
    search: VectorSearch
    embedder: EmbeddingProvider
    generator: TextGenerator
    chunker: ChunkingEngine
    conversations: ConversationContextManager
    rag: RAGOrchestrator
    conversational: ConversationalRAG
    pipeline: IngestionPipeline


def build_services(settings: Settings | None = None) -> Services:
    """
    Wire every service from settings.

    ``VECTOR_BACKEND=memory`` keeps documents, chunks and query history in
    process memory;
    anything else uses Supabase.
    """
    settings = settings or get_settings()

    if settings.VECTOR_BACKEND == "memory":
        from pdfrag.db.memory import (
            InMemoryChunkRepository,
            InMemoryDocumentRegistry,
            InMemoryQueryHistory,
        )

        registry = InMemoryDocumentRegistry()
        repository = InMemoryChunkRepository(registry)
        query_history = InMemoryQueryHistory()
    else:
        from pdfrag.db.chunks import SupabaseChunkRepository
        from pdfrag.db.documents import SupabaseDocumentRegistry
        from pdfrag.db.queries import SupabaseQueryHistory
        from pdfrag.db.supabase_client import get_supabase

        client = get_supabase()
        registry = SupabaseDocumentRegistry(client)
        repository = SupabaseChunkRepository(client)
        query_history = SupabaseQueryHistory(client)

    embedder = OpenAIEmbeddingProvider(
        OpenAI(api_key=settings.OPENAI_API_KEY),
        settings.EMBEDDING_MODEL,
        expected_dim=settings.EMBEDDING_DIM,
    )
    generator = ChatOpenAIGenerator(settings.OPENAI_API_KEY, settings.GENERATION_MODEL)
    counter = get_token_counter(settings.TOKENIZER_ENCODING)

    store = VectorStore(
        registry,
        repository,
        batch_size=settings.STORE_BATCH_SIZE,
        max_retries=settings.STORE_MAX_RETRIES,
        retry_delay=settings.STORE_RETRY_DELAY_SECONDS,
        timeout=settings.STORE_TIMEOUT_SECONDS,
        embedding_dim=settings.EMBEDDING_DIM,
    )
    search = VectorSearch(
        repository,
        vector_dim=settings.VECTOR_DIM,
        default_top_k=settings.SEARCH_DEFAULT_TOP_K,
        max_top_k=settings.SEARCH_MAX_TOP_K,
        default_threshold=settings.SEARCH_SIMILARITY_THRESHOLD,
        relaxed_threshold=settings.SEARCH_RELAXED_THRESHOLD,
        cache_ttl_seconds=settings.SEARCH_CACHE_TTL_SECONDS,
        cache_max_entries=settings.SEARCH_CACHE_MAX_ENTRIES,
        cache_evict_count=settings.SEARCH_CACHE_EVICT_COUNT,
        degraded_fallback=settings.SEARCH_DEGRADED_FALLBACK,
        timeout=settings.SEARCH_TIMEOUT_SECONDS,
    )
    chunker = ChunkingEngine(
        counter, FactExtractor(generator, llm_timeout=settings.GENERATION_TIMEOUT_SECONDS)
    )
    conversations = ConversationContextManager(
        generator,
        idle_window=timedelta(hours=settings.SESSION_IDLE_HOURS),
        llm_timeout=settings.GENERATION_TIMEOUT_SECONDS,
    )
    rag = RAGOrchestrator(
        registry,
        embedder,
        search,
        generator,
        counter=counter,
        max_context_tokens=settings.RAG_MAX_CONTEXT_TOKENS,
        max_sources=settings.RAG_MAX_SOURCES,
        max_response_tokens=settings.RAG_MAX_RESPONSE_TOKENS,
        temperature=settings.RAG_TEMPERATURE,
        embedding_timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
        generation_timeout=settings.GENERATION_TIMEOUT_SECONDS,
        query_history=query_history if settings.QUERY_HISTORY_ENABLED else None,
    )
    conversational = ConversationalRAG(
        rag,
        conversations,
        generator,
        max_follow_up_questions=settings.MAX_FOLLOW_UP_QUESTIONS,
        generation_timeout=settings.GENERATION_TIMEOUT_SECONDS,
    )
    pipeline = IngestionPipeline(
        registry,
        PdfPageExtractor(),
        chunker,
        embedder,
        store,
        chunking_options=ChunkingOptions(
            chunk_size_tokens=settings.CHUNK_SIZE_TOKENS,
            chunk_overlap_tokens=settings.CHUNK_OVERLAP_TOKENS,
            detail_chunk_size=settings.DETAIL_CHUNK_SIZE,
            detail_chunk_overlap=settings.DETAIL_CHUNK_OVERLAP,
        ),
        embedding_timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
        embedding_batch_size=settings.EMBEDDING_BATCH_SIZE,
        embedding_max_retries=settings.EMBEDDING_MAX_RETRIES,
        embedding_retry_delay=settings.EMBEDDING_RETRY_DELAY_SECONDS,
    )

    logger.info(
        f"Services ready ({settings.VECTOR_BACKEND} backend)",
        extra={"embedding_model": settings.EMBEDDING_MODEL, "generation_model": settings.GENERATION_MODEL},
    )
    return Services(
        settings=settings,
        registry=registry,
        repository=repository,
        query_history=query_history,
        store=store,
        search=search,
        embedder=embedder,
        generator=generator,
        chunker=chunker,
        conversations=conversations,
        rag=rag,
        conversational=conversational,
        pipeline=pipeline,
    )
