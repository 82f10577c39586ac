"""Data models for the tabular RAG pipeline.

This module defines Pydantic models for documents, chunks, row records
and the results returned to callers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

METADATA_SCHEMA_VERSION = 1

UNIT_TYPE_ROW = "csv_row"
UNIT_TYPE_CHUNK = "csv_chunk"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RowRecord(BaseModel):
    """One parsed data row.

    Attributes:
        row_number: 1-based position among the non-empty data rows.
        values: Header to raw string value mapping.
        content: Flattened ``"header: value"`` text used for chunking.
    """

    row_number: int
    values: dict[str, str]
    content: str


class DocumentMetadata(BaseModel):
    """Metadata stored with a document.

    Attributes:
        schema_version: Version of this metadata layout.
        row_count: Number of parsed data rows.
        headers: Column headers in file order.
        uploaded_by: Uploader tag.
        extra: Free-form values for future fields.
    """

    schema_version: int = METADATA_SCHEMA_VERSION
    row_count: int = 0
    headers: list[str] = Field(default_factory=list)
    uploaded_by: str = "system"
    extra: dict[str, Any] = Field(default_factory=dict)


class ChunkMetadata(BaseModel):
    """Metadata stored with a chunk.

    Attributes:
        schema_version: Version of this metadata layout.
        source: Filename of the owning document.
        source_row: 1-based row the chunk text starts in.
        headers: Column headers of the owning document.
        unit_type: ``csv_row`` for whole rows, ``csv_chunk`` for split text.
        document_id: Owning document identifier.
        chunk_index: Position of the chunk within its document.
        extra: Free-form values for future fields.
    """

    schema_version: int = METADATA_SCHEMA_VERSION
    source: str = ""
    source_row: int | None = None
    headers: list[str] = Field(default_factory=list)
    unit_type: str = UNIT_TYPE_ROW
    document_id: str | None = None
    chunk_index: int | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class NewDocument(BaseModel):
    """Document fields supplied by the ingestion pipeline."""

    filename: str
    file_size: int
    mime_type: str = "text/csv"
    content: str
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)


class DocumentRecord(NewDocument):
    """Stored document row."""

    id: str
    uploaded_at: datetime = Field(default_factory=utcnow)


class ChunkDraft(BaseModel):
    """Chunk produced by the chunker, before embedding."""

    chunk_index: int
    content: str
    metadata: ChunkMetadata


class ChunkRecord(BaseModel):
    """Stored chunk row.

    Attributes:
        id: Unique chunk identifier.
        document_id: Document identifier this chunk belongs to.
        content: Chunk text content.
        chunk_index: Index of chunk within the document.
        embedding: Embedding vector for the chunk.
        metadata: Chunk metadata.
        created_at: Insert time.
    """

    id: str
    document_id: str
    content: str
    chunk_index: int
    embedding: list[float] = Field(default_factory=list)
    metadata: ChunkMetadata
    created_at: datetime = Field(default_factory=utcnow)


class ScoredChunk(BaseModel):
    chunk: ChunkRecord
    similarity: float


class ScopeStats(BaseModel):
    """Aggregate statistics over the documents a question may search."""

    document_ids: list[str]
    filenames: list[str]
    row_total: int
    chunk_total: int | None = None


class RetrievalResult(BaseModel):
    """Chunks retrieved for a question, with the answer once synthesized."""

    k: int
    hits: list[ScoredChunk] = Field(default_factory=list)
    answer: str | None = None


class IngestResult(BaseModel):
    success: bool
    filename: str
    chunks_stored: int = 0
    document_id: str | None = None
    error: str | None = None


class DocumentSummary(BaseModel):
    id: str
    filename: str
    size: int
    uploaded_at: datetime
    metadata: DocumentMetadata


class DeleteResult(BaseModel):
    success: bool


class QueryState(str, Enum):
    GATED = "gated"
    RETRIEVING = "retrieving"
    ANSWERED = "answered"
    REFUSED = "refused"
    FAILED = "failed"

