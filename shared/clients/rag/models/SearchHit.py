from pydantic import BaseModel


class SearchHit(BaseModel):
    """A scored point returned by a similarity search."""

    id: str | int
    score: float
    payload: dict = {}
