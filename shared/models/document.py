"""Pydantic models for the units of work flowing through the pipeline.

Hierarchy:
  Document       : one source document (identifier, text, caller-owned metadata).
  SourceItem     : a document (or a malformed record) at a resumable source offset.
  Chunk          : a contiguous span of a document's text.
  ChunkError     : a per-chunk failure that excluded the chunk from indexing.
  DocumentResult : terminal outcome reported by a worker to the orchestrator.
"""

from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Document(BaseModel):
    """A unit of work with a stable external identifier.

    Documents are immutable once read from the source.
    """

    model_config = ConfigDict(frozen=True)

    doc_id: str
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        """Return True when the text is empty or whitespace only."""
        return not self.text or not self.text.strip()


class SourceItem(BaseModel):
    """An entry yielded by a document source.

    Attributes:
        offset:        Position in the source; resuming starts after the checkpointed offset.
        document:      The parsed document, or None when the record could not be read.
        artifact_path: File backing this item, used for quarantine and post-index moves.
        error:         Why the record could not be parsed, if document is None.
        raw:           The raw record, kept for sources without a per-item file.
    """

    offset: int
    document: Document | None = None
    artifact_path: Path | None = None
    error: str | None = None
    raw: Any = None

    @property
    def label(self) -> str:
        if self.document is not None:
            return self.document.doc_id
        if self.artifact_path is not None:
            return self.artifact_path.name
        return f"offset-{self.offset}"


class Chunk(BaseModel):
    """A contiguous substring of a document's text."""

    model_config = ConfigDict(frozen=True)

    text: str
    chunk_index: int
    total_chunks: int
    start: int
    end: int


class ChunkError(BaseModel):
    """A chunk that could not be embedded or stored."""

    chunk_index: int
    stage: str
    message: str


class DocumentStatus(str, Enum):
    """Lifecycle of a document.

    PENDING → SKIPPED (empty or duplicate)
    PENDING → EMBEDDING → UPSERTING → INDEXED
    any stage → QUARANTINED
    """

    PENDING = "pending"
    SKIPPED = "skipped"
    EMBEDDING = "embedding"
    UPSERTING = "upserting"
    INDEXED = "indexed"
    QUARANTINED = "quarantined"


class DocumentResult(BaseModel):
    """Outcome of one document, reported by a worker back to the orchestrator."""

    item: SourceItem
    status: DocumentStatus
    chunks: int = 0
    points: int = 0
    chunk_errors: list[ChunkError] = Field(default_factory=list)
    stage: str | None = None
    error: str | None = None
    reason: str | None = None
    duration_ms: float = 0.0

    @property
    def doc_id(self) -> str:
        return self.item.label
