"""Helpers for seeding chunk repositories directly."""

from pdfrag.core.schemas_chunks import Chunk


def chunk_row(
    chunk_id: str,
    document_id: str,
    user_id: str,
    embedding: list[float],
    text: str = "Chunk text",
    chunk_index: int = 0,
    page_number: int = 1,
    section_title: str | None = None,
) -> dict:
    return {
        "chunk_id": chunk_id,
        "document_id": document_id,
        "user_id": user_id,
        "chunk_index": chunk_index,
        "chunk_text": text,
        "chunk_tokens": len(text.split()),
        "page_number": page_number,
        "page_position_start": 0,
        "page_position_end": len(text),
        "section_title": section_title,
        "embedding": list(embedding),
        "embedding_model": "fake-embedding",
        "chunk_layer": "context",
        "parent_chunk_id": None,
        "extracted_facts": [],
        "metadata": {},
    }


def seed(repository, rows: list[dict]) -> None:
    for row in rows:
        repository.rows[row["chunk_id"]] = row


def make_chunk(
    index: int,
    document_id: str = "doc-1",
    user_id: str = "user-1",
    embedding: list[float] | None = None,
    text: str | None = None,
) -> Chunk:
    text = text if text is not None else f"Chunk {index} covers the hydraulic pump."
    return Chunk(
        id=f"{document_id}-chunk-{index}",
        document_id=document_id,
        user_id=user_id,
        chunk_index=index,
        text=text,
        token_count=len(text.split()),
        page_number=1,
        position_start=0,
        position_end=len(text),
        embedding=embedding,
        embedding_model="fake-embedding" if embedding else None,
    )
