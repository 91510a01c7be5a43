"""Storage contracts the core services depend on.

Rows exchanged with ``ChunkRepository`` use the ``document_chunks`` column
names (see ``Chunk.to_row``). Search rows are normalized to::

    {chunk_id, document_id, user_id, chunk_text, page_number,
     section_title, filename, similarity}
"""

from abc import ABC, abstractmethod
from typing import Any

from pdfrag.core.schemas_rag import QueryRecord


class DocumentRegistry(ABC):
    """Read/write access to document records (ownership, status, stats)."""

    @abstractmethod
    async def document_exists(self, document_id: str, user_id: str) -> bool:
        """True when the document exists and belongs to the user."""

    @abstractmethod
    async def update_document_stats(self, document_id: str, total_chunks: int) -> None:
        """Record the stored chunk count and mark the document completed."""

    @abstractmethod
    async def update_document_status(
        self,
        document_id: str,
        status: str,
        stage: str | None = None,
        message: str | None = None,
    ) -> None:
        """Record the document's processing status."""

    @abstractmethod
    async def get_document_name(self, document_id: str) -> str | None:
        """Filename of the document, if known."""

    @abstractmethod
    async def count_user_documents(self, user_id: str) -> int:
        """Number of documents owned by the user."""


class ChunkRepository(ABC):
    """Persistence and similarity queries over document chunks."""

    @abstractmethod
    async def insert_chunks(self, rows: list[dict[str, Any]]) -> None:
        """Upsert chunk rows keyed by ``chunk_id``. Raises on failure."""

    @abstractmethod
    async def delete_document_chunks(self, document_id: str, user_id: str) -> int:
        """Delete rows matching both document and user; returns rows deleted."""

    @abstractmethod
    async def list_document_chunks(self, document_id: str) -> list[dict[str, Any]]:
        """All rows of a document ordered by ``chunk_index``."""

    @abstractmethod
    async def similarity_search(
        self,
        embedding: list[float],
        user_id: str,
        threshold: float,
        limit: int,
        document_ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Rows owned by the user with cosine similarity >= threshold, best first."""

    @abstractmethod
    async def list_user_chunks(
        self,
        user_id: str,
        limit: int,
        document_ids: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Rows owned by the user without scoring (``similarity`` omitted)."""

    @abstractmethod
    async def count_user_chunks(self, user_id: str) -> int:
        """Number of chunk rows owned by the user."""


class QueryHistoryRepository(ABC):
    """Append-only log of answered questions."""

    @abstractmethod
    async def save_query(self, record: QueryRecord) -> None:
        """Persist one answered question. Raises on failure."""

    @abstractmethod
    async def list_user_queries(self, user_id: str, limit: int = 20) -> list[QueryRecord]:
        """The user's most recent questions, newest first."""
