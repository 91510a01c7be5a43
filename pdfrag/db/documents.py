"""Document registry backed by the Supabase ``user_documents`` table."""

import asyncio
from datetime import datetime, timezone

from supabase import Client

from pdfrag.core.logging import get_logger
from pdfrag.db.base import DocumentRegistry

logger = get_logger(__name__)

TABLE = "user_documents"


class SupabaseDocumentRegistry(DocumentRegistry):
    """DocumentRegistry over ``user_documents``."""

    def __init__(self, client: Client):
        self.client = client

    def _document_exists(self, document_id: str, user_id: str) -> bool:
        response = (
            self.client.table(TABLE)
            .select("document_id")
            .eq("document_id", document_id)
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        return bool(response.data)

    async def document_exists(self, document_id: str, user_id: str) -> bool:
        try:
            return await asyncio.to_thread(self._document_exists, document_id, user_id)
        except Exception as e:
            # Unverifiable ownership counts as not owned
            logger.error(
                f"Ownership check failed for document {document_id}: {e}",
                extra={"document_id": document_id, "user_id": user_id},
            )
            return False

    def _update(self, document_id: str, fields: dict) -> None:
        fields["updated_at"] = datetime.now(timezone.utc).isoformat()
        self.client.table(TABLE).update(fields).eq("document_id", document_id).execute()

    async def update_document_stats(self, document_id: str, total_chunks: int) -> None:
        try:
            await asyncio.to_thread(
                self._update,
                document_id,
                {"total_chunks": total_chunks, "status": "completed"},
            )
            logger.info(
                f"Updated document {document_id} with {total_chunks} chunks",
                extra={"document_id": document_id, "total_chunks": total_chunks},
            )
        except Exception as e:
            logger.error(f"Failed to update document stats for {document_id}: {e}")
            raise

    async def update_document_status(
        self,
        document_id: str,
        status: str,
        stage: str | None = None,
        message: str | None = None,
    ) -> None:
        fields = {"status": status}
        if stage is not None:
            fields["processing_stage"] = stage
        if message is not None:
            fields["processing_message"] = message

        try:
            await asyncio.to_thread(self._update, document_id, fields)
        except Exception as e:
            logger.error(f"Failed to update document status for {document_id}: {e}")
            raise

    def _get_document_name(self, document_id: str) -> str | None:
        response = (
            self.client.table(TABLE)
            .select("filename")
            .eq("document_id", document_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        return response.data[0].get("filename")

    async def get_document_name(self, document_id: str) -> str | None:
        return await asyncio.to_thread(self._get_document_name, document_id)

    def _count_user_documents(self, user_id: str) -> int:
        response = (
            self.client.table(TABLE)
            .select("document_id", count="exact")
            .eq("user_id", user_id)
            .execute()
        )
        return response.count if response.count is not None else len(response.data or [])

    async def count_user_documents(self, user_id: str) -> int:
        return await asyncio.to_thread(self._count_user_documents, user_id)
