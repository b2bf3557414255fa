"""Tests for VectorStore — embeddings + per-book meta partitions."""

from __future__ import annotations

import pytest

from bookrag.db.models import RagBookMeta, StoredEmbedding
from bookrag.db.store import VectorStore
from bookrag.db.vectors import l2_normalize


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emb(book_id: str, start: int, dims: int = 4, text: str | None = None) -> StoredEmbedding:
    return StoredEmbedding(
        chunk_id=f"{book_id}_ch0_{start}",
        book_id=book_id,
        chapter_index=0,
        start_offset=start,
        end_offset=start + 100,
        text=text or f"text at {start} for {book_id}",
        embedding=l2_normalize([1.0] + [0.5] * (dims - 1)),
    )


def _meta(book_id: str, **kw) -> RagBookMeta:
    defaults = dict(chunk_count=1, indexed_up_to=100, updated_at=1_700_000_000_000)
    defaults.update(kw)
    return RagBookMeta(book_id=book_id, **defaults)


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------


def test_put_and_get_embeddings_ordered_by_start(store: VectorStore):
    store.put_embeddings([_emb("b1", 448), _emb("b1", 0), _emb("b2", 0)])
    rows = store.get_embeddings_by_book("b1")
    assert [r.start_offset for r in rows] == [0, 448]
    assert rows[0].embedding == pytest.approx(_emb("b1", 0).embedding, abs=1e-6)


def test_put_embeddings_upserts_by_chunk_id(store: VectorStore):
    store.put_embeddings([_emb("b1", 0, text="short tail")])
    store.put_embeddings([_emb("b1", 0, text="full window text")])
    rows = store.get_embeddings_by_book("b1")
    assert len(rows) == 1
    assert rows[0].text == "full window text"


def test_put_embeddings_empty_is_noop(store: VectorStore):
    assert store.put_embeddings([]) == 0


def test_count_embeddings(store: VectorStore):
    store.put_embeddings([_emb("b1", 0), _emb("b1", 448), _emb("b2", 0)])
    assert store.count_embeddings("b1") == 2
    assert store.count_embeddings("missing") == 0


def test_iter_all_embeddings(store: VectorStore):
    store.put_embeddings([_emb("b2", 0), _emb("b1", 0)])
    assert [e.book_id for e in store.iter_all_embeddings()] == ["b1", "b2"]


def test_embedding_dimensions_reports_mixed_lengths(store: VectorStore):
    store.put_embeddings([_emb("b1", 0, dims=4), _emb("b1", 448, dims=8)])
    assert store.embedding_dimensions("b1") == [4, 8]


def test_delete_book_removes_embeddings_and_meta(store: VectorStore):
    store.put_embeddings([_emb("b1", 0), _emb("b1", 448), _emb("b2", 0)])
    store.save_meta(_meta("b1"))
    store.save_meta(_meta("b2"))

    assert store.delete_book("b1") == 2
    assert store.get_embeddings_by_book("b1") == []
    assert store.get_meta("b1") is None
    assert store.count_embeddings("b2") == 1
    assert store.get_meta("b2") is not None


def test_delete_embeddings_after_keeps_earlier_chunks(store: VectorStore):
    store.put_embeddings([_emb("b1", 0), _emb("b1", 448), _emb("b2", 448)])
    store.save_meta(_meta("b1"))

    assert store.delete_embeddings_after("b1", 100) == 1
    assert [e.start_offset for e in store.get_embeddings_by_book("b1")] == [0]
    assert store.count_embeddings("b2") == 1
    assert store.get_meta("b1") is not None


# ---------------------------------------------------------------------------
# Meta
# ---------------------------------------------------------------------------


def test_save_and_get_meta(store: VectorStore):
    store.save_meta(_meta("b1", content_signature="abc", embedding_provider_id="openai"))
    meta = store.get_meta("b1")
    assert meta == _meta("b1", content_signature="abc", embedding_provider_id="openai")


def test_save_meta_replaces(store: VectorStore):
    store.save_meta(_meta("b1", indexed_up_to=100))
    store.save_meta(_meta("b1", indexed_up_to=900))
    assert store.get_meta("b1").indexed_up_to == 900


def test_get_meta_missing_returns_none(store: VectorStore):
    assert store.get_meta("nope") is None


def test_list_meta_sorted(store: VectorStore):
    store.save_meta(_meta("zeta"))
    store.save_meta(_meta("alpha"))
    assert [m.book_id for m in store.list_meta()] == ["alpha", "zeta"]


# ---------------------------------------------------------------------------
# Bulk replace + accounting
# ---------------------------------------------------------------------------


def test_replace_all_clears_previous_state(store: VectorStore):
    store.put_embeddings([_emb("old", 0)])
    store.save_meta(_meta("old"))

    store.replace_all([_emb("new", 0)], [_meta("new")])

    assert store.get_meta("old") is None
    assert store.count_embeddings("old") == 0
    assert store.count_embeddings("new") == 1
    assert store.get_meta("new") is not None


def test_usage_bytes_empty(store: VectorStore):
    usage = store.usage_bytes()
    assert (usage.total_bytes, usage.embeddings_bytes, usage.meta_bytes) == (0, 0, 0)


def test_usage_bytes_counts_both_partitions(store: VectorStore):
    store.put_embeddings([_emb("b1", 0, dims=4)])
    store.save_meta(_meta("b1"))
    usage = store.usage_bytes()
    # 16 bytes of float32 vector at least, plus text + ids
    assert usage.embeddings_bytes > 16
    assert usage.meta_bytes > 0
    assert usage.total_bytes == usage.embeddings_bytes + usage.meta_bytes
