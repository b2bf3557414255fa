"""Whole-index archive export / restore for app backups.

Payload shape::

    {"embeddings": [{chunk_id, book_id, chapter_index, start_offset,
                     end_offset, text, embedding}, ...],
     "meta": [{book_id, chunk_count, indexed_up_to, updated_at,
               content_signature?, embedding_provider_id?}, ...]}

Malformed records are dropped on both export and restore. Restore replaces
the stored index; it never merges.
"""

from __future__ import annotations

import math
from typing import Any

from bookrag.db.models import RagBookMeta, StoredEmbedding
from bookrag.db.store import VectorStore


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return math.floor(number)


def _as_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_archive_embedding(value: Any) -> StoredEmbedding | None:
    """Validate one archived embedding record; return None if unusable."""
    if not isinstance(value, dict):
        return None
    chunk_id = _as_str(value.get("chunk_id"))
    book_id = _as_str(value.get("book_id"))
    text = value.get("text") if isinstance(value.get("text"), str) else ""
    if not chunk_id or not book_id or not text:
        return None

    chapter_index = _as_int(value.get("chapter_index"))
    start = _as_int(value.get("start_offset"))
    end = _as_int(value.get("end_offset"))
    if chapter_index is None or chapter_index < 0:
        return None
    if start is None or start < 0:
        return None
    if end is None or end < start:
        return None

    raw_vector = value.get("embedding")
    if not isinstance(raw_vector, list) or not raw_vector:
        return None
    try:
        vector = [float(x) for x in raw_vector]
    except (TypeError, ValueError):
        return None
    if any(not math.isfinite(x) for x in vector):
        return None

    return StoredEmbedding(
        chunk_id=chunk_id,
        book_id=book_id,
        chapter_index=chapter_index,
        start_offset=start,
        end_offset=end,
        text=text,
        embedding=vector,
    )


def normalize_archive_meta(value: Any) -> RagBookMeta | None:
    """Validate one archived meta record; return None if unusable."""
    if not isinstance(value, dict):
        return None
    book_id = _as_str(value.get("book_id"))
    chunk_count = _as_int(value.get("chunk_count"))
    indexed_up_to = _as_int(value.get("indexed_up_to"))
    updated_at = _as_int(value.get("updated_at"))
    if not book_id:
        return None
    for number in (chunk_count, indexed_up_to, updated_at):
        if number is None or number < 0:
            return None

    return RagBookMeta(
        book_id=book_id,
        chunk_count=chunk_count,
        indexed_up_to=indexed_up_to,
        updated_at=updated_at,
        content_signature=_as_str(value.get("content_signature")) or None,
        embedding_provider_id=_as_str(value.get("embedding_provider_id")) or None,
    )


def _embedding_record(e: StoredEmbedding) -> dict[str, Any]:
    return {
        "chunk_id": e.chunk_id,
        "book_id": e.book_id,
        "chapter_index": e.chapter_index,
        "start_offset": e.start_offset,
        "end_offset": e.end_offset,
        "text": e.text,
        "embedding": list(e.embedding),
    }


def _meta_record(m: RagBookMeta) -> dict[str, Any]:
    record: dict[str, Any] = {
        "book_id": m.book_id,
        "chunk_count": m.chunk_count,
        "indexed_up_to": m.indexed_up_to,
        "updated_at": m.updated_at,
    }
    if m.content_signature:
        record["content_signature"] = m.content_signature
    if m.embedding_provider_id:
        record["embedding_provider_id"] = m.embedding_provider_id
    return record


def export_archive(store: VectorStore) -> dict[str, list[dict[str, Any]]]:
    """Dump both partitions as a JSON-serialisable payload."""
    embeddings = [
        normalized
        for e in store.iter_all_embeddings()
        if (normalized := normalize_archive_embedding(_embedding_record(e))) is not None
    ]
    metas = [
        normalized
        for m in store.list_meta()
        if (normalized := normalize_archive_meta(_meta_record(m))) is not None
    ]
    return {
        "embeddings": [_embedding_record(e) for e in embeddings],
        "meta": [_meta_record(m) for m in metas],
    }


def restore_archive(store: VectorStore, raw: Any) -> tuple[int, int]:
    """Replace the stored index with the contents of *raw*.

    Returns:
        (embeddings restored, meta records restored).
    """
    source = raw if isinstance(raw, dict) else {}
    raw_embeddings = source.get("embeddings") if isinstance(source.get("embeddings"), list) else []
    raw_meta = source.get("meta") if isinstance(source.get("meta"), list) else []

    embeddings = [e for e in map(normalize_archive_embedding, raw_embeddings) if e is not None]
    metas = [m for m in map(normalize_archive_meta, raw_meta) if m is not None]

    store.replace_all(embeddings, metas)
    return len(embeddings), len(metas)
