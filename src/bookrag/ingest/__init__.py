"""bookrag ingest — sanitizer, chapter preparation and chunker."""

from bookrag.ingest.chunker import (
    Chapter,
    Chunker,
    PreparedBook,
    ReadingPosition,
    content_signature,
    estimate_safe_offset,
    prepare_chapters,
)
from bookrag.ingest.sanitize import sanitize_text

__all__ = [
    "Chapter",
    "Chunker",
    "PreparedBook",
    "ReadingPosition",
    "content_signature",
    "estimate_safe_offset",
    "prepare_chapters",
    "sanitize_text",
]
