"""Text chunking.

Splits a document's text into overlapping chunks. Each cut is placed on the
last paragraph break inside the window, else the last line break, sentence
end, clause break or space, and only falls back to a raw character cut when
the window holds no natural boundary.

Consecutive chunks share exactly ``chunk_overlap`` characters, so the text is
rebuilt by concatenating the first chunk with every later chunk minus its
first ``chunk_overlap`` characters.
"""

from typing import Iterator

from shared.models.document import Chunk

SEPARATORS = ["\n\n", "\n", ". ", ", ", " "]


class ChunkSequence:
    """Lazy, restartable sequence of chunks over one text.

    Iterating twice yields the same chunks. ``len()`` walks the boundaries
    once and caches the result.
    """

    def __init__(self, text: str, chunk_size: int, chunk_overlap: int, separators: list[str] | None = None):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}.")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(f"chunk_overlap must be in [0, chunk_size), got {chunk_overlap} for chunk_size {chunk_size}.")
        self.text = text
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = separators if separators is not None else SEPARATORS
        self._total: int | None = None

    def _find_end(self, start: int) -> int:
        limit = start + self.chunk_size
        if limit >= len(self.text):
            return len(self.text)
        # the cut must leave more than the overlap behind, or the next chunk would not advance
        min_end = start + self.chunk_overlap + 1
        window = self.text[start:limit]
        for sep in self.separators:
            pos = window.rfind(sep)
            if pos == -1:
                continue
            end = start + pos + len(sep)
            if end >= min_end:
                return end
        return limit

    def spans(self) -> Iterator[tuple[int, int]]:
        """Yield the ``(start, end)`` offsets of every chunk."""
        start = 0
        length = len(self.text)
        while start < length:
            end = self._find_end(start)
            yield start, end
            if end >= length:
                return
            start = end - self.chunk_overlap

    def __len__(self) -> int:
        if self._total is None:
            self._total = sum(1 for _ in self.spans())
        return self._total

    def __iter__(self) -> Iterator[Chunk]:
        total = len(self)
        for index, (start, end) in enumerate(self.spans()):
            yield Chunk(text=self.text[start:end], chunk_index=index, total_chunks=total, start=start, end=end)


class Chunker:
    def __init__(self, chunk_size: int = 800, chunk_overlap: int = 80, separators: list[str] | None = None):
        if chunk_overlap >= chunk_size:
            raise ValueError(f"chunk_overlap ({chunk_overlap}) must be smaller than chunk_size ({chunk_size}).")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = separators

    def split(self, text: str) -> ChunkSequence:
        """Return the chunk sequence for a text. Empty text yields no chunks.

        Args:
            text (str): The full document text.

        Returns:
            ChunkSequence: Lazy sequence of chunks with dense, ordered indexes.
        """
        return ChunkSequence(text, self.chunk_size, self.chunk_overlap, self.separators)

    @staticmethod
    def reconstruct(chunks: list[Chunk], chunk_overlap: int) -> str:
        """Rebuild the original text from its chunks by removing the overlap."""
        if not chunks:
            return ""
        return chunks[0].text + "".join(chunk.text[chunk_overlap:] for chunk in chunks[1:])
