from pydantic import BaseModel, Field

from shared.models.document import ChunkError


class UpsertResult(BaseModel):
    """Outcome of writing one document's points.

    Attributes:
        upserted:   Points accepted by the vector store.
        calls:      Upsert requests sent, excluding retries of the same batch.
        splits:     Times a batch was halved after a payload-too-large answer.
        batch_size: Initial batch size chosen for the document.
        failed:     Points that could not be stored, by chunk index.
    """

    upserted: int = 0
    calls: int = 0
    splits: int = 0
    batch_size: int = 0
    failed: list[ChunkError] = Field(default_factory=list)
