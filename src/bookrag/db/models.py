"""Domain models for the bookrag storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class TextChunk:
    """A window of sanitized book text; offsets are global sanitized offsets."""

    id: str
    book_id: str
    chapter_index: int
    start_offset: int
    end_offset: int
    text: str


@dataclass
class StoredEmbedding:
    chunk_id: str
    book_id: str
    chapter_index: int
    start_offset: int
    end_offset: int
    text: str
    embedding: list[float] = field(default_factory=list)

    @classmethod
    def from_chunk(cls, chunk: TextChunk, embedding: list[float]) -> StoredEmbedding:
        return cls(
            chunk_id=chunk.id,
            book_id=chunk.book_id,
            chapter_index=chunk.chapter_index,
            start_offset=chunk.start_offset,
            end_offset=chunk.end_offset,
            text=chunk.text,
            embedding=embedding,
        )

    def to_chunk(self) -> TextChunk:
        return TextChunk(
            id=self.chunk_id,
            book_id=self.book_id,
            chapter_index=self.chapter_index,
            start_offset=self.start_offset,
            end_offset=self.end_offset,
            text=self.text,
        )


@dataclass
class RagBookMeta:
    """Per-book indexing state.

    ``indexed_up_to`` is the furthest sanitized offset already embedded.
    ``updated_at`` is epoch milliseconds.
    """

    book_id: str
    chunk_count: int
    indexed_up_to: int
    updated_at: int
    content_signature: str | None = None
    embedding_provider_id: str | None = None


@dataclass
class StorageUsage:
    total_bytes: int = 0
    embeddings_bytes: int = 0
    meta_bytes: int = 0
