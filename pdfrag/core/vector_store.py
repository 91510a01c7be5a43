"""Batched, ownership-checked persistence of embedded chunks."""

import asyncio
import time

from pdfrag.core.errors import InputValidationError
from pdfrag.core.logging import get_logger
from pdfrag.core.result import Ok, call_external
from pdfrag.core.schemas_chunks import Chunk
from pdfrag.core.schemas_search import (
    DocumentStorageStats,
    IntegrityReport,
    StorageCapacity,
    StorageError,
    StorageResult,
)
from pdfrag.db.base import ChunkRepository, DocumentRegistry

logger = get_logger(__name__)

OWNERSHIP_ERROR = "Invalid document or user mismatch"

# Per-user limits used for capacity reporting
MAX_DOCUMENTS_PER_USER = 8
MAX_CHUNKS_PER_USER = 30_000
BYTES_PER_FLOAT = 4


class VectorStore:
    """Writes chunks with embeddings to the chunk repository."""

    def __init__(
        self,
        registry: DocumentRegistry,
        repository: ChunkRepository,
        batch_size: int = 100,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float | None = 30.0,
        embedding_dim: int = 1536,
    ):
        if batch_size < 1:
            raise InputValidationError("batch_size must be at least 1")
        self.registry = registry
        self.repository = repository
        self.batch_size = batch_size
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.embedding_dim = embedding_dim

    async def store(
        self,
        chunks: list[Chunk],
        document_id: str,
        user_id: str,
        embedding_model: str | None = None,
    ) -> StorageResult:
        """
        Store chunks in sequential batches.

        Args:
            chunks: Chunks carrying embeddings
            document_id: Document the chunks belong to
            user_id: Requesting user; must own the document
            embedding_model: Model name recorded when a chunk has none

        Returns:
            StorageResult. Ownership failure writes nothing and reports a
            single error at chunk_index -1. Failed batches report every chunk
            in them; other batches still run.
        """
        started = time.perf_counter()

        if not await self.registry.document_exists(document_id, user_id):
            logger.warning(
                f"Refusing to store chunks for document {document_id}: ownership check failed",
                extra={"document_id": document_id, "user_id": user_id},
            )
            return StorageResult(
                success=False,
                stored_count=0,
                failed_count=len(chunks),
                errors=[StorageError(chunk_index=-1, error=OWNERSHIP_ERROR)],
                processing_time_ms=(time.perf_counter() - started) * 1000,
            )

        stored = 0
        errors: list[StorageError] = []
        batch_count = (len(chunks) + self.batch_size - 1) // self.batch_size

        for batch_index in range(batch_count):
            offset = batch_index * self.batch_size
            batch = chunks[offset : offset + self.batch_size]

            rows, row_indices = [], []
            for idx, chunk in enumerate(batch):
                try:
                    rows.append(self._to_row(chunk, document_id, user_id, embedding_model))
                    row_indices.append(offset + idx)
                except InputValidationError as e:
                    errors.append(StorageError(chunk_index=offset + idx, error=str(e)))

            if not rows:
                continue

            logger.debug(
                f"Storing batch {batch_index + 1}/{batch_count} ({len(rows)} chunks)",
                extra={"document_id": document_id, "batch": batch_index},
            )
            failure = await self._insert_with_retry(rows, batch_index)
            if failure is None:
                stored += len(rows)
            else:
                errors.extend(StorageError(chunk_index=i, error=failure) for i in row_indices)

        if stored > 0:
            try:
                await self.registry.update_document_stats(document_id, stored)
            except Exception as e:
                logger.warning(f"Stored chunks but could not update document stats: {e}")

        result = StorageResult(
            success=stored == len(chunks),
            stored_count=stored,
            failed_count=len(errors),
            errors=errors,
            processing_time_ms=(time.perf_counter() - started) * 1000,
        )

        logger.info(
            f"Stored {stored}/{len(chunks)} chunks for document {document_id}",
            extra={
                "document_id": document_id,
                "stored": stored,
                "failed": len(errors),
                "time_ms": round(result.processing_time_ms, 1),
            },
        )
        return result

    async def _insert_with_retry(self, rows: list[dict], batch_index: int) -> str | None:
        """Insert a batch, retrying with exponential backoff. Returns the last error or None."""
        last_error = "Unknown batch error"
        for attempt in range(self.max_retries):
            result = await call_external(
                "store_batch", lambda: self.repository.insert_chunks(rows), self.timeout
            )
            if isinstance(result, Ok):
                return None

            last_error = result.failure.message
            if attempt < self.max_retries - 1:
                delay = self.retry_delay * (2**attempt)
                logger.warning(
                    f"Batch {batch_index + 1} failed (attempt {attempt + 1}/{self.max_retries}), "
                    f"retrying in {delay:.1f}s: {last_error}"
                )
                await asyncio.sleep(delay)

        logger.error(
            f"Batch {batch_index + 1} failed after {self.max_retries} attempts: {last_error}"
        )
        return last_error

    @staticmethod
    def _to_row(
        chunk: Chunk,
        document_id: str,
        user_id: str,
        embedding_model: str | None,
    ) -> dict:
        if not chunk.embedding:
            raise InputValidationError("Chunk missing embedding")
        if not chunk.text.strip():
            raise InputValidationError("Chunk missing text content")

        row = chunk.to_row()
        row["document_id"] = document_id
        row["user_id"] = user_id
        row["embedding_model"] = chunk.embedding_model or embedding_model
        return row

    async def delete_document_chunks(self, document_id: str, user_id: str) -> bool:
        """Delete a document's chunks after checking ownership."""
        if not await self.registry.document_exists(document_id, user_id):
            logger.warning(
                f"Refusing to delete chunks for document {document_id}: ownership check failed",
                extra={"document_id": document_id, "user_id": user_id},
            )
            return False

        try:
            await self.repository.delete_document_chunks(document_id, user_id)
            return True
        except Exception as e:
            logger.error(f"Failed to delete chunks for document {document_id}: {e}")
            return False

    async def get_document_storage_stats(self, document_id: str) -> DocumentStorageStats | None:
        try:
            rows = await self.repository.list_document_chunks(document_id)
        except Exception as e:
            logger.error(f"Failed to get document storage stats: {e}")
            return None

        sizes = [len(r["embedding"]) for r in rows if r.get("embedding")]
        return DocumentStorageStats(
            document_id=document_id,
            total_chunks=len(rows),
            stored_chunks=len(sizes),
            failed_chunks=len(rows) - len(sizes),
            avg_embedding_size=sum(sizes) / len(sizes) if sizes else 0.0,
        )

    async def verify_storage_integrity(self, document_id: str) -> IntegrityReport:
        """
        Audit a document's stored chunks.

        Reports missing embeddings, index gaps, duplicate indices and mixed
        embedding dimensions. Nothing is repaired.
        """
        try:
            rows = await self.repository.list_document_chunks(document_id)
        except Exception as e:
            logger.error(f"Integrity check could not read document {document_id}: {e}")
            return IntegrityReport(valid=False, issues=["Failed to retrieve chunks"])

        issues: list[str] = []

        missing = [r for r in rows if not r.get("embedding")]
        if missing:
            issues.append(f"{len(missing)} chunks missing embeddings")

        indices = sorted(r["chunk_index"] for r in rows)
        for prev, cur in zip(indices, indices[1:]):
            if cur != prev + 1 and cur != prev:
                issues.append(f"Chunk index gap between {prev} and {cur}")

        counts: dict[int, int] = {}
        for index in indices:
            counts[index] = counts.get(index, 0) + 1
        for index, count in counts.items():
            if count > 1:
                issues.append(f"Duplicate chunks found for index {index}")

        dimensions = sorted({len(r["embedding"]) for r in rows if r.get("embedding")})
        if len(dimensions) > 1:
            issues.append(f"Inconsistent embedding dimensions: {', '.join(map(str, dimensions))}")

        if issues:
            logger.warning(
                f"Integrity issues for document {document_id}: {len(issues)}",
                extra={"document_id": document_id, "issues": issues},
            )
        return IntegrityReport(valid=not issues, issues=issues)

    async def get_storage_capacity(self, user_id: str) -> StorageCapacity:
        """Estimate vector storage used by a user against the per-user limits."""
        try:
            documents = await self.registry.count_user_documents(user_id)
            chunks = await self.repository.count_user_chunks(user_id)
        except Exception as e:
            logger.error(f"Failed to get storage capacity: {e}")
            return StorageCapacity(user_id=user_id)

        estimated_bytes = chunks * self.embedding_dim * BYTES_PER_FLOAT
        percent = max(
            documents / MAX_DOCUMENTS_PER_USER * 100,
            chunks / MAX_CHUNKS_PER_USER * 100,
        )
        return StorageCapacity(
            user_id=user_id,
            documents_count=documents,
            chunks_count=chunks,
            estimated_bytes=estimated_bytes,
            estimated_vectors_gb=round(estimated_bytes / 1024**3, 3),
            percent_of_limit=round(percent, 1),
        )
