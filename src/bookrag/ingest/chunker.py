"""Book chunker — overlapping fixed windows over sanitized, concatenated text.

Every chapter is sanitized and the results are concatenated in order; a
position in that string is a *sanitized offset*. Windows start at multiples
of ``chunk_size - overlap`` regardless of chapter boundaries, so chunking
to a larger target reproduces all earlier boundaries and ids.
"""

from __future__ import annotations

import bisect
import math
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass

from bookrag.db.models import TextChunk
from bookrag.ingest.sanitize import sanitize_text

CHUNK_SIZE = 512
CHUNK_OVERLAP = 64
MIN_CHUNK_TEXT_LENGTH = 20

_SIGNATURE_SAMPLE = 80
_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193

Sanitizer = Callable[[str], str]


@dataclass(frozen=True)
class Chapter:
    title: str = ""
    content: str = ""


@dataclass(frozen=True)
class ReadingPosition:
    """Reader location in raw (unsanitized) character offsets."""

    chapter_index: int | None = None
    chapter_char_offset: int = 0
    global_char_offset: int = 0


@dataclass(frozen=True)
class PreparedChapter:
    chapter_index: int
    title: str
    raw_length: int
    text: str
    start_offset: int
    end_offset: int


@dataclass(frozen=True)
class PreparedBook:
    """Sanitized chapters plus the concatenated text they span."""

    chapters: tuple[PreparedChapter, ...]
    text: str
    raw_total_length: int

    @property
    def total_length(self) -> int:
        return len(self.text)

    def chapter_at(self, offset: int) -> PreparedChapter:
        """Return the non-empty chapter containing sanitized *offset*."""
        starts = [c.start_offset for c in self.chapters]
        idx = bisect.bisect_right(starts, offset) - 1
        return self.chapters[max(0, idx)]


def prepare_chapters(
    chapters: Sequence[Chapter], sanitize: Sanitizer = sanitize_text
) -> PreparedBook:
    """Sanitize *chapters* and lay them out in one offset space."""
    prepared: list[PreparedChapter] = []
    parts: list[str] = []
    raw_total = 0
    cursor = 0
    for i, chapter in enumerate(chapters):
        raw = chapter.content or ""
        text = sanitize(raw)
        prepared.append(
            PreparedChapter(
                chapter_index=i,
                title=chapter.title or "",
                raw_length=len(raw),
                text=text,
                start_offset=cursor,
                end_offset=cursor + len(text),
            )
        )
        parts.append(text)
        raw_total += len(raw)
        cursor += len(text)
    return PreparedBook(chapters=tuple(prepared), text="".join(parts), raw_total_length=raw_total)


def clamp_offset(value: float | int | None, upper: int | None = None, fallback: int = 0) -> int:
    """Floor *value* into ``[0, upper]``; non-finite values become *fallback*."""
    if value is None or not math.isfinite(value):
        result = max(0, math.floor(fallback))
    else:
        result = max(0, math.floor(value))
    if upper is not None:
        result = min(max(0, upper), result)
    return result


def content_signature(book: PreparedBook) -> str:
    """Cheap structural fingerprint of a book's chapters.

    FNV-1a (32-bit) over the chapter count and, per chapter, its title,
    sanitized length and an 80-character head/tail sample. Edits that keep
    length and samples intact are not detected.
    """
    h = _FNV_OFFSET

    def feed(value: str) -> None:
        nonlocal h
        for ch in value:
            h ^= ord(ch)
            h = (h * _FNV_PRIME) & 0xFFFFFFFF

    feed(str(len(book.chapters)))
    for c in book.chapters:
        head = c.text[:_SIGNATURE_SAMPLE]
        tail = c.text[-_SIGNATURE_SAMPLE:] if c.text else ""
        feed(f"{c.chapter_index}|{c.title}|{len(c.text)}|{head}|{tail}")
    return format(h, "x")


def estimate_safe_offset(
    book: PreparedBook,
    position: ReadingPosition | None,
    fallback: int = 0,
) -> int:
    """Project a raw reading position into the sanitized offset space.

    The result never exceeds the book's sanitized length; callers treat it
    as the hard ceiling for indexing and retrieval.
    """
    safe_fallback = clamp_offset(fallback)
    if not book.chapters:
        return safe_fallback
    total = book.total_length
    if total <= 0:
        return 0
    if position is None:
        return clamp_offset(safe_fallback, total, safe_fallback)

    idx = position.chapter_index
    if idx is not None and 0 <= idx < len(book.chapters):
        chapter = book.chapters[idx]
        raw_in_chapter = clamp_offset(position.chapter_char_offset)
        ratio = min(1.0, raw_in_chapter / chapter.raw_length) if chapter.raw_length > 0 else 0.0
        projected = round(ratio * len(chapter.text))
        return clamp_offset(chapter.start_offset + projected, total, safe_fallback)

    if book.raw_total_length > 0:
        ratio = min(1.0, clamp_offset(position.global_char_offset) / book.raw_total_length)
        return clamp_offset(round(ratio * total), total, safe_fallback)

    return clamp_offset(safe_fallback, total, safe_fallback)


class Chunker:
    """Split a prepared book into overlapping fixed-size windows.

    Args:
        chunk_size: Window length in sanitized characters.
        overlap: Characters shared by consecutive windows.
        min_length: Windows shorter than this are discarded.
    """

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        overlap: int = CHUNK_OVERLAP,
        min_length: int = MIN_CHUNK_TEXT_LENGTH,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0 <= overlap < chunk_size:
            raise ValueError("overlap must be in [0, chunk_size)")
        if min_length < 1:
            raise ValueError("min_length must be >= 1")
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.min_length = min_length

    @property
    def step(self) -> int:
        return self.chunk_size - self.overlap

    def iter_chunks(
        self,
        book_id: str,
        book: PreparedBook,
        max_offset: int,
        *,
        after: int = 0,
    ) -> Iterator[TextChunk]:
        """Yield windows ending in ``(after, max_offset]``.

        A window that would cross *max_offset* is cut there. Windows that
        end at or before *after* are skipped; the window straddling *after*
        is yielded again in full, under the same id.
        """
        total = book.total_length
        upper = clamp_offset(max_offset, total)
        lower = clamp_offset(after)
        if upper <= lower:
            return

        for start in range(0, total, self.step):
            if start >= upper:
                break
            end = min(start + self.chunk_size, total)
            effective_end = min(end, upper)
            if effective_end > lower:
                text = book.text[start:effective_end]
                if len(text) >= self.min_length:
                    chapter = book.chapter_at(start)
                    yield TextChunk(
                        id=f"{book_id}_ch{chapter.chapter_index}_{start - chapter.start_offset}",
                        book_id=book_id,
                        chapter_index=chapter.chapter_index,
                        start_offset=start,
                        end_offset=effective_end,
                        text=text,
                    )
            if end >= total:
                break

    def chunk(
        self, book_id: str, book: PreparedBook, max_offset: int, *, after: int = 0
    ) -> list[TextChunk]:
        return list(self.iter_chunks(book_id, book, max_offset, after=after))
