"""Pydantic models for the persisted run state."""

from datetime import datetime, timezone

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunCounters(BaseModel):
    """Cumulative counters of a run, carried across resumes.

    Attributes:
        processed:    Documents indexed successfully.
        errored:      Documents quarantined.
        skipped:      Documents skipped (empty text or already indexed).
        chunks:       Chunks produced for indexed documents.
        points:       Points written to the vector store.
        chunk_errors: Chunks excluded from indexed documents.
    """

    processed: int = 0
    errored: int = 0
    skipped: int = 0
    chunks: int = 0
    points: int = 0
    chunk_errors: int = 0

    @property
    def total(self) -> int:
        return self.processed + self.errored + self.skipped


class Checkpoint(BaseModel):
    """Persisted resume position and counters of a run.

    ``last_offset`` is the highest source offset up to which every item has
    reached a terminal state; -1 means nothing has completed yet.
    """

    last_offset: int = -1
    counters: RunCounters = Field(default_factory=RunCounters)
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed: bool = False
    collection: str | None = None
    profile_name: str | None = None
    profile_fingerprint: str | None = None

    @property
    def resume_offset(self) -> int:
        return self.last_offset + 1
