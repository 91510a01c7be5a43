"""Pydantic schemas for vector storage and similarity search."""

from pydantic import BaseModel, Field

# =======================
# Search
# =======================


class SearchOptions(BaseModel):
    """Per-query search parameters. Bounds are checked by the search service."""

    top_k: int = 10
    similarity_threshold: float = 0.65
    document_ids: list[str] | None = None


class SearchResult(BaseModel):
    """One retrieved chunk with its similarity score."""

    chunk_id: str
    document_id: str
    document_name: str = ""
    text: str
    page_number: int
    section_title: str | None = None
    similarity: float = Field(..., ge=0.0, le=1.0)
    degraded: bool = Field(default=False, description="Synthetic score from the fallback listing")
    search_model: str = "vector_search"


class SearchStats(BaseModel):
    """Running aggregates over all searches served."""

    total_searches: int = 0
    avg_search_time_ms: float = 0.0
    avg_results_returned: float = 0.0
    cache_hit_rate: float = 0.0
    cache_size: int = 0


# =======================
# Storage
# =======================


class StorageError(BaseModel):
    """A chunk that could not be stored. ``chunk_index`` is -1 for whole-request failures."""

    chunk_index: int
    error: str


class StorageResult(BaseModel):
    """Outcome of storing one document's chunks."""

    success: bool
    stored_count: int = 0
    failed_count: int = 0
    errors: list[StorageError] = Field(default_factory=list)
    processing_time_ms: float = 0.0


class IntegrityReport(BaseModel):
    """Issues found when auditing a document's stored chunks."""

    valid: bool
    issues: list[str] = Field(default_factory=list)


class DocumentStorageStats(BaseModel):
    """Counts for a document's stored chunks."""

    document_id: str
    total_chunks: int = 0
    stored_chunks: int = 0
    failed_chunks: int = 0
    avg_embedding_size: float = 0.0


class StorageCapacity(BaseModel):
    """Approximate vector storage usage for a user against the per-user limits."""

    user_id: str
    documents_count: int = 0
    chunks_count: int = 0
    estimated_bytes: int = 0
    estimated_vectors_gb: float = 0.0
    percent_of_limit: float = 0.0
