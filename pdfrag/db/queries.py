"""Question history backed by the Supabase ``user_queries`` table."""

import asyncio

from supabase import Client

from pdfrag.core.logging import get_logger
from pdfrag.core.schemas_rag import QueryRecord
from pdfrag.db.base import QueryHistoryRepository

logger = get_logger(__name__)

TABLE = "user_queries"


class SupabaseQueryHistory(QueryHistoryRepository):
    """QueryHistoryRepository over ``user_queries``."""

    def __init__(self, client: Client):
        self.client = client

    def _insert(self, row: dict) -> None:
        self.client.table(TABLE).insert(row).execute()

    async def save_query(self, record: QueryRecord) -> None:
        await asyncio.to_thread(self._insert, record.to_row())
        logger.debug(
            "Saved query to history",
            extra={"user_id": record.user_id, "sources": len(record.sources)},
        )

    def _list(self, user_id: str, limit: int) -> list[dict]:
        response = (
            self.client.table(TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return response.data or []

    async def list_user_queries(self, user_id: str, limit: int = 20) -> list[QueryRecord]:
        rows = await asyncio.to_thread(self._list, user_id, limit)
        return [QueryRecord.model_validate(row) for row in rows]
