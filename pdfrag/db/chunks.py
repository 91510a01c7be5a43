"""Chunk repository backed by the Supabase ``document_chunks`` table.

Similarity queries go through the ``vector_search`` SQL function::

    vector_search(query_embedding, user_id_param, similarity_threshold, match_count,
                  document_ids_param text[] default null)
      -> chunk_id, document_id, chunk_text, page_number, section_title,
         filename, similarity_score

A null ``document_ids_param`` searches all of the user's documents.
"""

import asyncio
import json
from typing import Any

from supabase import Client

from pdfrag.core.logging import get_logger
from pdfrag.db.base import ChunkRepository

logger = get_logger(__name__)

TABLE = "document_chunks"
SEARCH_RPC = "vector_search"

_LIST_COLUMNS = "chunk_id, document_id, user_id, chunk_text, page_number, section_title"


def _parse_embedding(value: Any) -> list[float] | None:
    # PostgREST serializes pgvector columns as "[0.1,0.2,...]"
    if value is None or isinstance(value, list):
        return value
    if isinstance(value, str):
        return json.loads(value)
    return list(value)


def _filename_from_join(row: dict[str, Any]) -> str:
    joined = row.get("user_documents")
    if isinstance(joined, list) and joined:
        joined = joined[0]
    if isinstance(joined, dict):
        return joined.get("filename") or "Unknown"
    return row.get("filename") or "Unknown"


class SupabaseChunkRepository(ChunkRepository):
    """ChunkRepository over ``document_chunks`` and the ``vector_search`` RPC."""

    def __init__(self, client: Client):
        self.client = client

    # -- writes ---------------------------------------------------------

    def _insert_chunks(self, rows: list[dict[str, Any]]) -> None:
        self.client.table(TABLE).upsert(rows, on_conflict="chunk_id").execute()

    async def insert_chunks(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        await asyncio.to_thread(self._insert_chunks, rows)
        logger.debug(f"Upserted {len(rows)} chunk rows", extra={"count": len(rows)})

    def _delete_document_chunks(self, document_id: str, user_id: str) -> int:
        response = (
            self.client.table(TABLE)
            .delete()
            .eq("document_id", document_id)
            .eq("user_id", user_id)
            .execute()
        )
        return len(response.data or [])

    async def delete_document_chunks(self, document_id: str, user_id: str) -> int:
        try:
            deleted = await asyncio.to_thread(self._delete_document_chunks, document_id, user_id)
        except Exception as e:
            logger.error(f"Failed to delete chunks for document {document_id}: {e}")
            raise
        logger.info(
            f"Deleted {deleted} chunks for document {document_id}",
            extra={"document_id": document_id, "deleted": deleted},
        )
        return deleted

    # -- reads ----------------------------------------------------------

    def _list_document_chunks(self, document_id: str) -> list[dict[str, Any]]:
        response = (
            self.client.table(TABLE)
            .select("*")
            .eq("document_id", document_id)
            .order("chunk_index")
            .execute()
        )
        rows = response.data or []
        for row in rows:
            row["embedding"] = _parse_embedding(row.get("embedding"))
        return rows

    async def list_document_chunks(self, document_id: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._list_document_chunks, document_id)

    def _similarity_search(
        self,
        embedding: list[float],
        user_id: str,
        threshold: float,
        limit: int,
        document_ids: list[str] | None,
    ) -> list[dict[str, Any]]:
        response = self.client.rpc(
            SEARCH_RPC,
            {
                "query_embedding": embedding,
                "user_id_param": user_id,
                "similarity_threshold": threshold,
                "match_count": limit,
                "document_ids_param": document_ids or None,
            },
        ).execute()

        rows = []
        # guard against a function that ignores document_ids_param
        allowed = set(document_ids) if document_ids else None
        for row in response.data or []:
            if allowed is not None and row.get("document_id") not in allowed:
                continue
            rows.append(
                {
                    "chunk_id": row["chunk_id"],
                    "document_id": row["document_id"],
                    # vector_search filters on user_id_param
                    "user_id": row.get("user_id", user_id),
                    "chunk_text": row.get("chunk_text") or "",
                    "page_number": row.get("page_number") or 1,
                    "section_title": row.get("section_title"),
                    "filename": row.get("filename") or "Unknown",
                    "similarity": float(row.get("similarity_score") or 0.0),
                }
            )
        return rows[:limit]

    async def similarity_search(
        self,
        embedding: list[float],
        user_id: str,
        threshold: float,
        limit: int,
        document_ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        rows = await asyncio.to_thread(
            self._similarity_search, embedding, user_id, threshold, limit, document_ids
        )
        logger.debug(
            f"{SEARCH_RPC} returned {len(rows)} rows",
            extra={"user_id": user_id, "threshold": threshold, "limit": limit},
        )
        return rows

    def _list_user_chunks(
        self, user_id: str, limit: int, document_ids: list[str] | None
    ) -> list[dict[str, Any]]:
        query = (
            self.client.table(TABLE)
            .select(f"{_LIST_COLUMNS}, user_documents!inner(filename)")
            .eq("user_id", user_id)
        )
        if document_ids:
            query = query.in_("document_id", document_ids)
        response = query.limit(limit).execute()

        return [
            {
                "chunk_id": row["chunk_id"],
                "document_id": row["document_id"],
                "user_id": row.get("user_id", user_id),
                "chunk_text": row.get("chunk_text") or "",
                "page_number": row.get("page_number") or 1,
                "section_title": row.get("section_title"),
                "filename": _filename_from_join(row),
            }
            for row in response.data or []
        ]

    async def list_user_chunks(
        self,
        user_id: str,
        limit: int,
        document_ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._list_user_chunks, user_id, limit, document_ids)

    def _count_user_chunks(self, user_id: str) -> int:
        response = (
            self.client.table(TABLE)
            .select("chunk_id", count="exact")
            .eq("user_id", user_id)
            .execute()
        )
        return response.count if response.count is not None else len(response.data or [])

    async def count_user_chunks(self, user_id: str) -> int:
        return await asyncio.to_thread(self._count_user_chunks, user_id)
