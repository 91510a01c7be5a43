"""Similarity search over a user's chunks with caching and fallback tiers.

Search order:
    1. validate inputs
    2. in-process TTL cache
    3. normalize the query vector to the store's dimension
    4. vector query restricted to the user's chunks
    5. one retry at the relaxed threshold when nothing came back
    6. degraded listing with synthetic scores when the vector query fails

Only real vector results are cached. The cache and the running statistics
share one lock that is never held across an await.
"""

import asyncio
import hashlib
import json
import threading
import time
from typing import Any, Awaitable, Callable

from pdfrag.core.errors import InputValidationError, SearchUnavailableError
from pdfrag.core.logging import get_logger
from pdfrag.core.result import Ok, call_external
from pdfrag.core.schemas_search import SearchOptions, SearchResult, SearchStats
from pdfrag.db.base import ChunkRepository

logger = get_logger(__name__)

FALLBACK_MODEL = "fallback_mock_similarity"
Reranker = Callable[[list[SearchResult]], Awaitable[list[SearchResult]]]


def normalize_dimension(embedding: list[float], dim: int) -> list[float]:
    """Truncate or zero-pad ``embedding`` to ``dim`` components."""
    if len(embedding) == dim:
        return list(embedding)
    if len(embedding) > dim:
        return list(embedding[:dim])
    return list(embedding) + [0.0] * (dim - len(embedding))


class VectorSearch:
    """Vector similarity search with validation, caching and degradation."""

    def __init__(
        self,
        repository: ChunkRepository,
        vector_dim: int = 1536,
        default_top_k: int = 10,
        max_top_k: int = 50,
        default_threshold: float = 0.65,
        relaxed_threshold: float = 0.5,
        cache_ttl_seconds: float = 300.0,
        cache_max_entries: int = 1000,
        cache_evict_count: int = 100,
        degraded_fallback: bool = True,
        timeout: float | None = 15.0,
    ):
        self.repository = repository
        self.vector_dim = vector_dim
        self.default_top_k = default_top_k
        self.max_top_k = max_top_k
        self.default_threshold = default_threshold
        self.relaxed_threshold = relaxed_threshold
        self.cache_ttl_seconds = cache_ttl_seconds
        self.cache_max_entries = cache_max_entries
        self.cache_evict_count = cache_evict_count
        self.degraded_fallback = degraded_fallback
        self.timeout = timeout

        self._lock = threading.Lock()
        # Insertion-ordered: the first keys are the oldest
        self._cache: dict[str, tuple[float, list[SearchResult]]] = {}
        self._total_searches = 0
        self._total_time_ms = 0.0
        self._total_results = 0
        self._cache_hits = 0

    def default_options(self, document_ids: list[str] | None = None) -> SearchOptions:
        return SearchOptions(
            top_k=self.default_top_k,
            similarity_threshold=self.default_threshold,
            document_ids=document_ids,
        )

    # -- public API -----------------------------------------------------

    async def search(
        self,
        query_embedding: list[float],
        user_id: str,
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        """
        Find the user's chunks most similar to ``query_embedding``.

        Args:
            query_embedding: Query vector (any length; normalized internally)
            user_id: Owner whose chunks are searched
            options: top_k, similarity_threshold and optional document allowlist

        Returns:
            Results sorted by descending similarity. Degraded results carry
            ``degraded=True``.

        Raises:
            InputValidationError: On malformed input
            SearchUnavailableError: When the vector query fails and no
                fallback is possible
        """
        options = options or self.default_options()
        self._validate(query_embedding, user_id, options)
        started = time.perf_counter()

        key = self._cache_key(query_embedding, user_id, options)
        cached = self._cache_get(key)
        if cached is not None:
            logger.debug("Search cache hit", extra={"user_id": user_id})
            self._record(started, len(cached), cache_hit=True)
            return [r.model_copy() for r in cached]

        embedding = normalize_dimension(query_embedding, self.vector_dim)
        threshold = options.similarity_threshold

        result = await call_external(
            "vector_search",
            lambda: self.repository.similarity_search(
                embedding, user_id, threshold, options.top_k, options.document_ids
            ),
            self.timeout,
        )

        if isinstance(result, Ok):
            rows = result.value
            if not rows and threshold > self.relaxed_threshold:
                rows = await self._relaxed_search(embedding, user_id, options)
            results = self._to_results(rows, user_id, options)
            self._cache_put(key, results)
        else:
            results = await self._degraded_search(user_id, options, result.failure.message)

        self._record(started, len(results), cache_hit=False)
        logger.info(
            f"Search returned {len(results)} results",
            extra={
                "user_id": user_id,
                "top_k": options.top_k,
                "threshold": threshold,
                "degraded": bool(results) and results[0].degraded,
            },
        )
        return results

    async def multi_search(
        self,
        query_embeddings: list[list[float]],
        user_id: str,
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        """Run several query variants concurrently and merge by chunk id."""
        options = options or self.default_options()
        if not query_embeddings:
            raise InputValidationError("At least one query embedding is required")

        outcomes = await asyncio.gather(
            *(self.search(e, user_id, options) for e in query_embeddings),
            return_exceptions=True,
        )

        merged: dict[str, SearchResult] = {}
        failures: list[BaseException] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                if isinstance(outcome, InputValidationError):
                    raise outcome
                logger.debug(f"Query variant failed during multi-search: {outcome}")
                failures.append(outcome)
                continue
            for item in outcome:
                existing = merged.get(item.chunk_id)
                if existing is None or item.similarity > existing.similarity:
                    merged[item.chunk_id] = item

        if failures and len(failures) == len(outcomes):
            raise failures[0]

        results = sorted(merged.values(), key=lambda r: r.similarity, reverse=True)
        return results[: options.top_k]

    async def search_with_reranking(
        self,
        query_embedding: list[float],
        user_id: str,
        options: SearchOptions | None = None,
        rerank: Reranker | None = None,
    ) -> list[SearchResult]:
        """Over-fetch 3x candidates, optionally rerank them, and truncate to top_k."""
        options = options or self.default_options()
        wide = options.model_copy(update={"top_k": min(options.top_k * 3, self.max_top_k)})
        candidates = await self.search(query_embedding, user_id, wide)

        if rerank is not None and candidates:
            try:
                candidates = await rerank(candidates)
            except Exception as e:
                logger.debug(f"Reranking failed, keeping vector order: {e}")

        return candidates[: options.top_k]

    def get_stats(self) -> SearchStats:
        with self._lock:
            total = self._total_searches
            return SearchStats(
                total_searches=total,
                avg_search_time_ms=self._total_time_ms / total if total else 0.0,
                avg_results_returned=self._total_results / total if total else 0.0,
                cache_hit_rate=self._cache_hits / total if total else 0.0,
                cache_size=len(self._cache),
            )

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("Search cache cleared")

    # -- pipeline stages ------------------------------------------------

    def _validate(self, embedding: list[float], user_id: str, options: SearchOptions) -> None:
        if not embedding:
            raise InputValidationError("Query embedding is required")
        if not user_id:
            raise InputValidationError("User ID is required")
        if options.top_k < 1 or options.top_k > self.max_top_k:
            raise InputValidationError(f"topK must be between 1 and {self.max_top_k}")
        if options.similarity_threshold < 0 or options.similarity_threshold > 1:
            raise InputValidationError("Similarity threshold must be between 0 and 1")

    async def _relaxed_search(
        self, embedding: list[float], user_id: str, options: SearchOptions
    ) -> list[dict[str, Any]]:
        logger.debug(
            f"No results at {options.similarity_threshold}, retrying at {self.relaxed_threshold}",
            extra={"user_id": user_id},
        )
        relaxed = await call_external(
            "vector_search_relaxed",
            lambda: self.repository.similarity_search(
                embedding, user_id, self.relaxed_threshold, options.top_k, options.document_ids
            ),
            self.timeout,
        )
        if not isinstance(relaxed, Ok):
            return []
        return [
            r for r in relaxed.value if float(r.get("similarity", 0)) >= options.similarity_threshold
        ]

    async def _degraded_search(
        self, user_id: str, options: SearchOptions, reason: str
    ) -> list[SearchResult]:
        if not self.degraded_fallback:
            raise SearchUnavailableError(f"Vector search failed: {reason}")

        logger.warning(
            f"Vector search failed, serving degraded listing: {reason}",
            extra={"user_id": user_id},
        )
        listing = await call_external(
            "vector_search_fallback",
            lambda: self.repository.list_user_chunks(
                user_id, options.top_k, options.document_ids
            ),
            self.timeout,
        )
        if not isinstance(listing, Ok):
            raise SearchUnavailableError(
                f"Both vector search and fallback failed: {reason} | {listing.failure.message}"
            )

        rows = []
        for i, row in enumerate(listing.value):
            row = dict(row)
            row["similarity"] = max(0.5, 1 - i * 0.1)
            rows.append(row)

        return self._to_results(rows, user_id, options, degraded=True)

    def _to_results(
        self,
        rows: list[dict[str, Any]],
        user_id: str,
        options: SearchOptions,
        degraded: bool = False,
    ) -> list[SearchResult]:
        allowed = set(options.document_ids) if options.document_ids else None
        results = []
        for row in rows:
            if row.get("user_id", user_id) != user_id:
                logger.error(
                    "Dropping search row owned by another user",
                    extra={"chunk_id": row.get("chunk_id")},
                )
                continue
            if allowed is not None and row["document_id"] not in allowed:
                continue
            similarity = min(1.0, max(0.0, float(row.get("similarity", 0.0))))
            if similarity < options.similarity_threshold:
                continue
            results.append(
                SearchResult(
                    chunk_id=row["chunk_id"],
                    document_id=row["document_id"],
                    document_name=row.get("filename") or "Unknown",
                    text=row.get("chunk_text") or "",
                    page_number=row.get("page_number") or 1,
                    section_title=row.get("section_title"),
                    similarity=similarity,
                    degraded=degraded,
                    search_model=FALLBACK_MODEL if degraded else "vector_search",
                )
            )

        results.sort(key=lambda r: r.similarity, reverse=True)
        return results[: options.top_k]

    # -- cache and stats ------------------------------------------------

    @staticmethod
    def _cache_key(embedding: list[float], user_id: str, options: SearchOptions) -> str:
        digest = hashlib.sha1(json.dumps([float(v) for v in embedding]).encode()).hexdigest()
        opts = json.dumps(
            {
                "top_k": options.top_k,
                "threshold": options.similarity_threshold,
                "document_ids": sorted(options.document_ids or []),
            },
            sort_keys=True,
        )
        return f"{user_id}:{digest}:{opts}"

    def _cache_get(self, key: str) -> list[SearchResult] | None:
        now = time.monotonic()
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            stored_at, results = entry
            if now - stored_at > self.cache_ttl_seconds:
                del self._cache[key]
                return None
            return results

    def _cache_put(self, key: str, results: list[SearchResult]) -> None:
        with self._lock:
            self._cache.pop(key, None)
            self._cache[key] = (time.monotonic(), [r.model_copy() for r in results])
            if len(self._cache) > self.cache_max_entries:
                for old_key in list(self._cache)[: self.cache_evict_count]:
                    del self._cache[old_key]

    def _record(self, started: float, result_count: int, cache_hit: bool) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        with self._lock:
            self._total_searches += 1
            self._total_time_ms += elapsed_ms
            self._total_results += result_count
            if cache_hit:
                self._cache_hits += 1
