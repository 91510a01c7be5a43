"""Retrieval-augmented answering over a user's documents.

Flow: scope the document allowlist to the user's own documents, embed the
query, search, pack a token-bounded context that spreads across documents,
generate an answer with a query-type prompt, and attach cited sources with a
confidence score.

Nothing here raises on an external failure. Embedding, search and
generation failures each have a deterministic fallback answer, and every
fallback path marks the response ``degraded``.
"""

import asyncio
import threading
import time
from collections import deque

from pdfrag.chains.prompt_templates import (
    PARSE_FAILURE_ANSWER,
    PromptTemplateManager,
    required_fields,
)
from pdfrag.context.models import QueryClassification
from pdfrag.core.embeddings import EmbeddingProvider
from pdfrag.core.errors import SearchUnavailableError
from pdfrag.core.llm import TextGenerator
from pdfrag.core.logging import get_logger
from pdfrag.core.result import Ok, call_external
from pdfrag.core.schemas_rag import (
    PipelineCheck,
    RAGRequest,
    RAGResponse,
    QueryRecord,
    RAGStats,
    SourceReference,
)
from pdfrag.core.schemas_search import SearchResult
from pdfrag.core.tokens import TokenCounterLike, get_token_counter
from pdfrag.core.vector_search import VectorSearch
from pdfrag.db.base import DocumentRegistry, QueryHistoryRepository

logger = get_logger(__name__)

NO_INFORMATION_ANSWER = (
    "I couldn't find any relevant information in your documents to answer that question."
)
GENERATION_FAILED_ANSWER = (
    "I could not generate a full answer right now. "
    "These are the most relevant excerpts from your documents:"
)
NO_CONTEXT = "No relevant information found in the documents."

MAX_PROMPT_TOKENS = 6000
EXCERPT_LENGTH = 200

BASE_SYSTEM_PROMPT = """You are an AI assistant that answers questions based on provided document excerpts.

Your responsibilities:
1. Answer questions accurately using only the provided information
2. Always cite your sources with page numbers when making claims
3. If information is not in the documents, clearly state that
4. Be precise and professional in your responses
5. When referencing information, use the format: "(Document Name, Page X)"

"""

CITATION_REMINDER = (
    "IMPORTANT: You must include page citations for all factual claims. "
    "Use the exact document names and page numbers provided.\n\n"
)


def extract_excerpt(text: str, max_length: int = EXCERPT_LENGTH) -> str:
    """Cut ``text`` to ``max_length`` chars, at a sentence end when one falls past 70%."""
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    last_period = truncated.rfind(".")
    if last_period > max_length * 0.7:
        return truncated[: last_period + 1]
    return truncated + "..."


def calculate_confidence(results: list[SearchResult], answer: str) -> float:
    """Blend top-3 similarity, source count and answer length into [0.1, 1.0]."""
    if not results:
        return 0.1
    top = results[:3]
    avg_similarity = sum(r.similarity for r in top) / len(top)
    sources_factor = min(len(results) / 5, 1.0)
    length_factor = min(len(answer) / 100, 1.0)
    confidence = avg_similarity * 0.5 + sources_factor * 0.3 + length_factor * 0.2
    return max(0.1, min(1.0, confidence))


def select_diverse_sources(results: list[SearchResult], max_sources: int) -> list[SearchResult]:
    """Pick results round-robin across documents, best-first within each document."""
    queues: dict[str, deque[SearchResult]] = {}
    for result in results:
        queues.setdefault(result.document_id, deque()).append(result)

    selected: list[SearchResult] = []
    while len(selected) < max_sources and any(queues.values()):
        for queue in queues.values():
            if queue and len(selected) < max_sources:
                selected.append(queue.popleft())

    selected.sort(key=lambda r: r.similarity, reverse=True)
    return selected


def format_excerpt(result: SearchResult, query_type: str) -> str:
    if query_type == "procedural":
        excerpt = f"[PROCEDURE SOURCE]\nDocument: {result.document_name}\nPage: {result.page_number}"
        if result.section_title:
            excerpt += f"\nSection: {result.section_title}"
        return excerpt + f"\nSimilarity: {result.similarity * 100:.1f}%\nContent:\n{result.text}\n\n"
    if query_type == "definitional":
        excerpt = f"[DEFINITION SOURCE]\nDocument: {result.document_name} (Page {result.page_number})"
        if result.section_title:
            excerpt += f'\n"{result.section_title}"'
        return excerpt + f"\nContent: {result.text}\n\n"

    section = f" - {result.section_title}" if result.section_title else ""
    return (
        f"Document: {result.document_name}\n"
        f"Page {result.page_number}{section}\n"
        f"Content: {result.text}\n\n"
    )


class RAGOrchestrator:
    """Answers questions from a user's documents with page citations."""

    def __init__(
        self,
        registry: DocumentRegistry,
        embedder: EmbeddingProvider,
        search: VectorSearch,
        generator: TextGenerator,
        counter: TokenCounterLike | None = None,
        prompts: PromptTemplateManager | None = None,
        max_context_tokens: int = 3000,
        max_sources: int = 5,
        max_response_tokens: int = 1000,
        temperature: float = 0.7,
        embedding_timeout: float | None = 30.0,
        generation_timeout: float | None = 60.0,
        structured_responses: bool = True,
        query_history: QueryHistoryRepository | None = None,
        history_timeout: float | None = 10.0,
    ):
        self.registry = registry
        self.embedder = embedder
        self.search = search
        self.generator = generator
        self.counter = counter or get_token_counter()
        self.prompts = prompts or PromptTemplateManager()
        self.max_context_tokens = max_context_tokens
        self.max_sources = max_sources
        self.max_response_tokens = max_response_tokens
        self.temperature = temperature
        self.embedding_timeout = embedding_timeout
        self.generation_timeout = generation_timeout
        self.structured_responses = structured_responses
        self.query_history = query_history
        self.history_timeout = history_timeout

        self._lock = threading.Lock()
        self._stats = RAGStats()
        self._successes = 0

    async def process_query(self, request: RAGRequest) -> RAGResponse:
        """
        Answer ``request.query`` from the requesting user's documents.

        Every answer is appended to the query history when one is configured;
        a failed save is logged and does not affect the response.

        Returns:
            RAGResponse. With no usable sources the answer is the fixed
            no-information sentence at confidence 0.1. Embedding, search or
            generation failures set ``degraded=True``.
        """
        response = await self._answer(request)
        if self.query_history is not None:
            await self._save_query(request, response)
        return response

    async def _answer(self, request: RAGRequest) -> RAGResponse:
        started = time.perf_counter()
        timing = {"embedding_time_ms": 0.0, "search_time_ms": 0.0, "generation_time_ms": 0.0}
        logger.info(
            f"RAG query: {request.query[:100]!r}",
            extra={"user_id": request.user_id, "session_id": request.session_id},
        )

        classification = self.prompts.classify_query(request.query)

        document_ids = request.document_ids
        if document_ids:
            document_ids = await self._owned_documents(document_ids, request.user_id)
            if not document_ids:
                logger.warning(
                    "No requested documents belong to the user",
                    extra={"user_id": request.user_id},
                )
                return self._finish(
                    self._no_information(classification), started, timing, degraded=False
                )

        embed_started = time.perf_counter()
        embedded = await call_external(
            "query_embedding", lambda: self.embedder.embed(request.query), self.embedding_timeout
        )
        timing["embedding_time_ms"] = (time.perf_counter() - embed_started) * 1000
        if not isinstance(embedded, Ok):
            return self._finish(
                self._no_information(classification), started, timing, degraded=True
            )

        search_started = time.perf_counter()
        results, search_degraded = await self._search(
            embedded.value.vector, request, document_ids
        )
        timing["search_time_ms"] = (time.perf_counter() - search_started) * 1000

        selected = select_diverse_sources(results, self.max_sources)
        context, included = self.build_context(selected, classification)
        if not included:
            return self._finish(
                self._no_information(classification), started, timing, degraded=search_degraded
            )

        generation_started = time.perf_counter()
        generated = await self._generate(
            request.query, context, classification, request.response_style
        )
        timing["generation_time_ms"] = (time.perf_counter() - generation_started) * 1000

        sources = [self._to_source(r) for r in included]
        if isinstance(generated, Ok):
            answer, structured = generated.value
            response = RAGResponse(
                answer=answer,
                sources=sources,
                confidence=calculate_confidence(results, answer),
                degraded=search_degraded,
                metadata={
                    "query_type": classification.type,
                    "query_confidence": classification.confidence,
                    "sources_found": len(results),
                    "structured_response": structured is not None,
                    **({"sections_referenced": structured.get("sections", [])} if structured else {}),
                },
            )
        else:
            answer = self._extractive_answer(included)
            response = RAGResponse(
                answer=answer,
                sources=sources,
                confidence=calculate_confidence(results, answer) / 2,
                degraded=True,
                metadata={
                    "query_type": classification.type,
                    "query_confidence": classification.confidence,
                    "sources_found": len(results),
                    "generation_error": generated.failure.message,
                },
            )

        return self._finish(response, started, timing, degraded=response.degraded)

    async def _save_query(self, request: RAGRequest, response: RAGResponse) -> None:
        record = QueryRecord(
            user_id=request.user_id,
            query_text=request.query,
            response_text=response.answer,
            sources=response.sources,
            confidence_score=response.confidence,
            processing_time_ms=response.metadata.get("processing_time_ms", 0.0),
            session_id=request.session_id,
            degraded=response.degraded,
        )
        saved = await call_external(
            "save_query", lambda: self.query_history.save_query(record), self.history_timeout
        )
        if not isinstance(saved, Ok):
            logger.warning(
                f"Failed to save query to history: {saved.failure.message}",
                extra={"user_id": request.user_id},
            )

    # -- stages ---------------------------------------------------------

    async def _owned_documents(self, document_ids: list[str], user_id: str) -> list[str]:
        checks = await asyncio.gather(
            *(self.registry.document_exists(doc_id, user_id) for doc_id in document_ids),
            return_exceptions=True,
        )
        owned = []
        for doc_id, check in zip(document_ids, checks):
            if check is True:
                owned.append(doc_id)
            else:
                logger.debug(f"Dropping document {doc_id} from allowlist", extra={"user_id": user_id})
        return owned

    async def _search(
        self,
        embedding: list[float],
        request: RAGRequest,
        document_ids: list[str] | None,
    ) -> tuple[list[SearchResult], bool]:
        options = self.search.default_options(document_ids)
        if request.max_results:
            top_k = max(1, min(request.max_results, self.search.max_top_k))
            options = options.model_copy(update={"top_k": top_k})

        try:
            results = await self.search.search(embedding, request.user_id, options)
        except SearchUnavailableError as e:
            logger.warning(f"Search unavailable, answering without sources: {e}")
            return [], True
        return results, any(r.degraded for r in results)

    def build_context(
        self, results: list[SearchResult], classification: QueryClassification
    ) -> tuple[str, list[SearchResult]]:
        """Pack excerpts into the token budget. Returns the context and the results it holds."""
        if not results:
            return NO_CONTEXT, []

        context = self.prompts.context_header(classification)
        included: list[SearchResult] = []
        used = 0
        for result in results:
            excerpt = format_excerpt(result, classification.type)
            tokens = self.counter.count(excerpt)
            if used + tokens > self.max_context_tokens:
                logger.debug(
                    f"Context budget reached at {used} tokens ({len(included)} sources)",
                    extra={"chunk_id": result.chunk_id},
                )
                continue
            context += excerpt
            used += tokens
            included.append(result)

        return context, included

    async def _generate(
        self,
        query: str,
        context: str,
        classification: QueryClassification,
        response_style: str | None,
    ):
        """Returns Ok((answer, structured_dict_or_None)) or Err."""
        if not self.structured_responses:
            result = await call_external(
                "answer_generation",
                lambda: self.generator.generate(
                    self._build_user_prompt(query, context),
                    system_prompt=self._build_system_prompt(response_style),
                    max_tokens=self.max_response_tokens,
                    temperature=self.temperature,
                ),
                self.generation_timeout,
            )
            if isinstance(result, Ok):
                return Ok((result.value.strip(), None))
            return result

        config = self.prompts.generate_prompt_config(query, context, classification)
        prompt = self.prompts.optimize_prompt_length(config.user_prompt, MAX_PROMPT_TOKENS)
        result = await call_external(
            "answer_generation",
            lambda: self.generator.generate(
                prompt,
                system_prompt=config.system_prompt,
                max_tokens=config.max_tokens,
                temperature=config.temperature,
                response_format="json",
            ),
            self.generation_timeout,
        )
        if not isinstance(result, Ok):
            return result

        raw = result.value
        parsed = self.prompts.validate_and_sanitize_response(
            raw, required_fields(config.response_schema)
        )
        if parsed.get("answer") == PARSE_FAILURE_ANSWER:
            # Model answered in prose instead of JSON
            return Ok((raw.strip(), None))

        answer = str(parsed.get("answer") or "").strip()
        steps = parsed.get("steps")
        if isinstance(steps, list) and steps:
            answer += "\n\nSteps:\n" + "".join(f"{i}. {step}\n" for i, step in enumerate(steps, 1))
        return Ok((answer.strip() or raw.strip(), parsed))

    def _build_system_prompt(self, response_style: str | None) -> str:
        prompt = BASE_SYSTEM_PROMPT
        if response_style:
            prompt += f"Response style: {response_style}\n\n"
        return prompt + CITATION_REMINDER

    @staticmethod
    def _build_user_prompt(query: str, context: str) -> str:
        return (
            f"{context}\n\nQuestion: {query}\n\n"
            "Please answer the question based on the information provided above. "
            "Remember to cite your sources with page numbers."
        )

    @staticmethod
    def _extractive_answer(results: list[SearchResult]) -> str:
        lines = [GENERATION_FAILED_ANSWER, ""]
        for result in results:
            lines.append(
                f"- {extract_excerpt(result.text)} ({result.document_name}, Page {result.page_number})"
            )
        return "\n".join(lines)

    @staticmethod
    def _to_source(result: SearchResult) -> SourceReference:
        return SourceReference(
            document_id=result.document_id,
            document_name=result.document_name,
            page_number=result.page_number,
            section_title=result.section_title,
            excerpt=extract_excerpt(result.text),
            similarity=result.similarity,
            chunk_id=result.chunk_id,
        )

    @staticmethod
    def _no_information(classification: QueryClassification) -> RAGResponse:
        return RAGResponse(
            answer=NO_INFORMATION_ANSWER,
            sources=[],
            confidence=0.1,
            metadata={"query_type": classification.type, "sources_found": 0},
        )

    # -- stats ----------------------------------------------------------

    def _finish(
        self,
        response: RAGResponse,
        started: float,
        timing: dict[str, float],
        degraded: bool,
    ) -> RAGResponse:
        total_ms = (time.perf_counter() - started) * 1000
        response = response.model_copy(
            update={
                "degraded": degraded,
                "metadata": {
                    **response.metadata,
                    "processing_time_ms": round(total_ms, 1),
                    **{k: round(v, 1) for k, v in timing.items()},
                },
            }
        )
        self._update_stats(response, total_ms, timing, success=not degraded)

        logger.info(
            f"RAG query completed in {total_ms:.0f}ms",
            extra={
                "sources": len(response.sources),
                "confidence": round(response.confidence, 3),
                "degraded": degraded,
            },
        )
        return response

    def _update_stats(
        self, response: RAGResponse, total_ms: float, timing: dict[str, float], success: bool
    ) -> None:
        with self._lock:
            stats = self._stats
            n = stats.total_queries + 1

            def running(prev: float, value: float) -> float:
                return (prev * (n - 1) + value) / n

            self._successes += 1 if success else 0
            self._stats = RAGStats(
                total_queries=n,
                avg_response_time_ms=running(stats.avg_response_time_ms, total_ms),
                avg_search_time_ms=running(stats.avg_search_time_ms, timing["search_time_ms"]),
                avg_generation_time_ms=running(
                    stats.avg_generation_time_ms, timing["generation_time_ms"]
                ),
                avg_sources_per_response=running(
                    stats.avg_sources_per_response, len(response.sources)
                ),
                success_rate=self._successes / n,
            )

    def get_stats(self) -> RAGStats:
        with self._lock:
            return self._stats.model_copy()

    async def test_pipeline(self, user_id: str = "pipeline-check") -> PipelineCheck:
        """Exercise embedding, search and generation once each."""
        stages = {"embedding": False, "search": False, "generation": False}
        try:
            embedding = await self.embedder.embed("test query")
            stages["embedding"] = True
            await self.search.search(
                embedding.vector, user_id, self.search.default_options().model_copy(update={"top_k": 1})
            )
            stages["search"] = True
            await self.generator.generate("What is 2+2?", max_tokens=10)
            stages["generation"] = True
        except Exception as e:
            logger.warning(f"Pipeline check failed: {e}", extra={"stages": stages})
            return PipelineCheck(success=False, stages=stages, error=str(e))
        return PipelineCheck(success=True, stages=stages)
