"""In-process document registry, chunk repository and query history.

Used for local runs (``VECTOR_BACKEND=memory``) and tests. Similarity is
cosine similarity computed with scikit-learn over a numpy matrix of the
user's stored embeddings.
"""

import copy
import threading
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity

from pdfrag.core.schemas_rag import QueryRecord
from pdfrag.db.base import ChunkRepository, DocumentRegistry, QueryHistoryRepository


@dataclass
class DocumentRecord:
    document_id: str
    user_id: str
    filename: str = "Unknown"
    status: str = "pending"
    processing_stage: str | None = None
    processing_message: str | None = None
    total_chunks: int = 0
    history: list[str] = field(default_factory=list)


class InMemoryDocumentRegistry(DocumentRegistry):
    """DocumentRegistry held in a dict."""

    def __init__(self):
        self.documents: dict[str, DocumentRecord] = {}

    def add_document(self, document_id: str, user_id: str, filename: str = "Unknown") -> None:
        self.documents[document_id] = DocumentRecord(document_id, user_id, filename)

    async def document_exists(self, document_id: str, user_id: str) -> bool:
        record = self.documents.get(document_id)
        return record is not None and record.user_id == user_id

    async def update_document_stats(self, document_id: str, total_chunks: int) -> None:
        record = self.documents.get(document_id)
        if record is not None:
            record.total_chunks = total_chunks
            record.status = "completed"

    async def update_document_status(
        self,
        document_id: str,
        status: str,
        stage: str | None = None,
        message: str | None = None,
    ) -> None:
        record = self.documents.get(document_id)
        if record is None:
            return
        record.status = status
        record.processing_stage = stage
        record.processing_message = message
        record.history.append(status if stage is None else f"{status}:{stage}")

    async def get_document_name(self, document_id: str) -> str | None:
        record = self.documents.get(document_id)
        return record.filename if record else None

    async def count_user_documents(self, user_id: str) -> int:
        return sum(1 for r in self.documents.values() if r.user_id == user_id)


class InMemoryChunkRepository(ChunkRepository):
    """ChunkRepository held in a dict keyed by chunk id."""

    def __init__(self, registry: InMemoryDocumentRegistry | None = None):
        self.registry = registry
        self.rows: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _filename(self, document_id: str) -> str:
        if self.registry is not None and document_id in self.registry.documents:
            return self.registry.documents[document_id].filename
        return "Unknown"

    def _search_row(self, row: dict[str, Any]) -> dict[str, Any]:
        return {
            "chunk_id": row["chunk_id"],
            "document_id": row["document_id"],
            "user_id": row["user_id"],
            "chunk_text": row["chunk_text"],
            "page_number": row["page_number"],
            "section_title": row.get("section_title"),
            "filename": self._filename(row["document_id"]),
        }

    def _user_rows(self, user_id: str, document_ids: list[str] | None) -> list[dict[str, Any]]:
        allowed = set(document_ids) if document_ids else None
        with self._lock:
            rows = [
                r
                for r in self.rows.values()
                if r["user_id"] == user_id and (allowed is None or r["document_id"] in allowed)
            ]
        return sorted(rows, key=lambda r: (r["document_id"], r["chunk_index"]))

    async def insert_chunks(self, rows: list[dict[str, Any]]) -> None:
        with self._lock:
            for row in rows:
                self.rows[row["chunk_id"]] = copy.deepcopy(row)

    async def delete_document_chunks(self, document_id: str, user_id: str) -> int:
        with self._lock:
            doomed = [
                cid
                for cid, r in self.rows.items()
                if r["document_id"] == document_id and r["user_id"] == user_id
            ]
            for cid in doomed:
                del self.rows[cid]
        return len(doomed)

    async def list_document_chunks(self, document_id: str) -> list[dict[str, Any]]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self.rows.values() if r["document_id"] == document_id]
        return sorted(rows, key=lambda r: r["chunk_index"])

    async def similarity_search(
        self,
        embedding: list[float],
        user_id: str,
        threshold: float,
        limit: int,
        document_ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        candidates = [
            r
            for r in self._user_rows(user_id, document_ids)
            if r.get("embedding") and len(r["embedding"]) == len(embedding)
        ]
        if not candidates:
            return []

        matrix = np.array([r["embedding"] for r in candidates], dtype=float)
        query = np.array([embedding], dtype=float)
        scores = cosine_similarity(query, matrix)[0]

        results = []
        for row, score in zip(candidates, scores):
            similarity = float(np.clip(score, 0.0, 1.0))
            if similarity >= threshold:
                result = self._search_row(row)
                result["similarity"] = similarity
                results.append(result)

        results.sort(key=lambda r: r["similarity"], reverse=True)
        return results[:limit]

    async def list_user_chunks(
        self,
        user_id: str,
        limit: int,
        document_ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        return [self._search_row(r) for r in self._user_rows(user_id, document_ids)[:limit]]

    async def count_user_chunks(self, user_id: str) -> int:
        return len(self._user_rows(user_id, None))


class InMemoryQueryHistory(QueryHistoryRepository):
    """QueryHistoryRepository held in a list, oldest first."""

    def __init__(self):
        self.records: list[QueryRecord] = []
        self._lock = threading.Lock()

    async def save_query(self, record: QueryRecord) -> None:
        with self._lock:
            self.records.append(record)

    async def list_user_queries(self, user_id: str, limit: int = 20) -> list[QueryRecord]:
        with self._lock:
            mine = [r for r in self.records if r.user_id == user_id]
        return list(reversed(mine))[:limit]
