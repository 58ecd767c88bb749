"""VectorPoint model: payload stored alongside each vector chunk in the vector store."""

from typing import Any

from pydantic import BaseModel, ConfigDict


class VectorPoint(BaseModel):
    """Payload stored alongside each vector chunk.

    Carries every metadata key of the source document as an extra field, plus
    the fixed chunk fields below, which always win over same-named metadata keys.

    Attributes:
        doc_id:       External identifier of the source document.
        chunk_index:  Zero-based position of this chunk within the document.
        total_chunks: Number of chunks the document was split into.
        chunk_text:   Raw text content of this chunk.
        indexed_at:   ISO-8601 UTC timestamp of the indexing run.
    """

    model_config = ConfigDict(extra="allow")

    doc_id: str
    chunk_index: int
    total_chunks: int
    chunk_text: str
    indexed_at: str

    @classmethod
    def from_chunk(cls, metadata: dict[str, Any], doc_id: str, chunk_index: int, total_chunks: int, chunk_text: str, indexed_at: str) -> "VectorPoint":
        core = {
            "doc_id": doc_id,
            "chunk_index": chunk_index,
            "total_chunks": total_chunks,
            "chunk_text": chunk_text,
            "indexed_at": indexed_at,
        }
        return cls(**{**metadata, **core})
