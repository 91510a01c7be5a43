"""Pydantic schemas for pages, chunks and extracted facts."""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

# =======================
# Source pages
# =======================


class Page(BaseModel):
    """Plain text of one PDF page."""

    model_config = ConfigDict(frozen=True)

    page_number: int = Field(..., ge=1, description="1-based page number")
    text: str = Field(default="", description="Extracted page text")
    section_title: str | None = Field(default=None, description="Section heading, if known")


# =======================
# Facts
# =======================


class FactType(str, Enum):
    """Kinds of structured fact pulled out of chunk text."""

    MEASUREMENT = "measurement"
    TOLERANCE = "tolerance"
    TEMPERATURE = "temperature"
    PRESSURE = "pressure"
    DIMENSION = "dimension"
    DATE = "date"
    TIME = "time"
    REQUIREMENT = "requirement"
    DEFINITION = "definition"
    REFERENCE = "reference"
    SPECIFICATION = "specification"
    PROCEDURE = "procedure"


class FactPosition(BaseModel):
    """Character span of a fact inside its source text."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(default=0, ge=0)
    end: int = Field(default=0, ge=0)


class Fact(BaseModel):
    """A single typed fact with its surrounding context."""

    model_config = ConfigDict(frozen=True)

    type: FactType
    value: str
    unit: str | None = None
    context: str = ""
    confidence: float = Field(..., ge=0.0, le=1.0)
    position: FactPosition = Field(default_factory=FactPosition)


class FactExtractionResult(BaseModel):
    """Output of a fact extraction pass over one text."""

    facts: list[Fact] = Field(default_factory=list)
    total_facts: int = 0
    facts_by_type: dict[str, list[Fact]] = Field(default_factory=dict)
    processing_time_ms: float = 0.0


# =======================
# Chunks
# =======================


class ContextLayer(BaseModel):
    """Marker for a broad-context chunk."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["context"] = "context"


class DetailLayer(BaseModel):
    """Marker for a fine-grained chunk; points back at its context chunk by id."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["detail"] = "detail"
    parent_chunk_id: str


ChunkLayer = Annotated[Union[ContextLayer, DetailLayer], Field(discriminator="kind")]


class Chunk(BaseModel):
    """A retrievable unit of text confined to a single page."""

    model_config = ConfigDict(frozen=True)

    id: str
    document_id: str
    user_id: str
    chunk_index: int = Field(..., ge=0)
    layer: ChunkLayer = Field(default_factory=ContextLayer)
    text: str
    token_count: int = Field(..., ge=0)
    page_number: int = Field(..., ge=1)
    position_start: int = Field(..., ge=0)
    position_end: int = Field(..., ge=0)
    section_title: str | None = None
    embedding: list[float] | None = None
    embedding_model: str | None = None
    extracted_facts: list[Fact] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_span(self) -> "Chunk":
        if self.position_end < self.position_start:
            raise ValueError(
                f"position_end ({self.position_end}) precedes position_start ({self.position_start})"
            )
        return self

    @property
    def is_detail(self) -> bool:
        return isinstance(self.layer, DetailLayer)

    @property
    def parent_chunk_id(self) -> str | None:
        return self.layer.parent_chunk_id if isinstance(self.layer, DetailLayer) else None

    def with_embedding(self, embedding: list[float], model: str) -> "Chunk":
        """Return a copy carrying the given embedding."""
        return self.model_copy(update={"embedding": list(embedding), "embedding_model": model})

    def to_row(self) -> dict[str, Any]:
        """Flatten into the ``document_chunks`` row shape."""
        return {
            "chunk_id": self.id,
            "document_id": self.document_id,
            "user_id": self.user_id,
            "chunk_index": self.chunk_index,
            "chunk_text": self.text,
            "chunk_tokens": self.token_count,
            "page_number": self.page_number,
            "page_position_start": self.position_start,
            "page_position_end": self.position_end,
            "section_title": self.section_title,
            "embedding": self.embedding,
            "embedding_model": self.embedding_model,
            "chunk_layer": self.layer.kind,
            "parent_chunk_id": self.parent_chunk_id,
            "extracted_facts": [f.model_dump(mode="json") for f in self.extracted_facts],
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Chunk":
        """Rebuild a chunk from a ``document_chunks`` row."""
        if row.get("chunk_layer") == "detail":
            layer: ContextLayer | DetailLayer = DetailLayer(
                parent_chunk_id=row["parent_chunk_id"]
            )
        else:
            layer = ContextLayer()

        return cls(
            id=row["chunk_id"],
            document_id=row["document_id"],
            user_id=row["user_id"],
            chunk_index=row["chunk_index"],
            layer=layer,
            text=row["chunk_text"],
            token_count=row.get("chunk_tokens") or 0,
            page_number=row["page_number"],
            position_start=row.get("page_position_start") or 0,
            position_end=row.get("page_position_end") or 0,
            section_title=row.get("section_title"),
            embedding=row.get("embedding"),
            embedding_model=row.get("embedding_model"),
            extracted_facts=[Fact.model_validate(f) for f in row.get("extracted_facts") or []],
            metadata=row.get("metadata") or {},
        )


# =======================
# Chunking options and results
# =======================


class ChunkingOptions(BaseModel):
    """Knobs for one chunking run."""

    chunk_size_tokens: int = Field(default=600, gt=0)
    chunk_overlap_tokens: int = Field(default=100, ge=0)
    preserve_page_boundaries: bool = True
    preserve_sentences: bool = True
    detect_section_headers: bool = True
    enhanced_metadata: bool = True
    dual_layer: bool = False
    detail_chunk_size: int = Field(default=200, gt=0)
    detail_chunk_overlap: int = Field(default=50, ge=0)
    extract_facts: bool = True
    use_llm_facts: bool = False
    min_fact_confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class ChunkingResult(BaseModel):
    """Chunks produced for one document plus summary numbers."""

    chunks: list[Chunk] = Field(default_factory=list)
    total_chunks: int = 0
    total_tokens: int = 0
    avg_tokens_per_chunk: float = 0.0
    processing_time_ms: float = 0.0
    context_chunks: int = 0
    detail_chunks: int = 0
    extracted_facts: dict[str, list[Fact]] = Field(
        default_factory=dict, description="Facts keyed by detail chunk id"
    )


class ChunkingValidation(BaseModel):
    """Outcome of a consistency check over a chunk list."""

    valid: bool
    issues: list[str] = Field(default_factory=list)
    stats: dict[str, Any] = Field(default_factory=dict)
