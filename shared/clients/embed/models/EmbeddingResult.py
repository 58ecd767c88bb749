from pydantic import BaseModel, Field


class EmbeddingBatchResult(BaseModel):
    """Vectors for a list of input texts, aligned by position.

    Attributes:
        vectors: One entry per input text; None where the text could not be embedded.
        errors:  Input position → error message for every None entry in vectors.
        requests: Number of HTTP requests sent, fallback requests included.
        fallbacks: Number of batches that fell back to one-at-a-time requests.
    """

    vectors: list[list[float] | None]
    errors: dict[int, str] = Field(default_factory=dict)
    requests: int = 0
    fallbacks: int = 0

    @property
    def success_count(self) -> int:
        return sum(1 for v in self.vectors if v is not None)
