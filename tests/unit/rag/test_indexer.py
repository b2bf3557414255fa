"""Tests for the incremental, coalescing book indexer."""

from __future__ import annotations

import asyncio

import pytest

from bookrag.db.models import RagBookMeta, StoredEmbedding
from bookrag.db.store import VectorStore
from bookrag.embed.base import EmbeddingProvider
from bookrag.embed.remote import EmbeddingApiError
from bookrag.ingest.chunker import Chapter, content_signature, prepare_chapters
from bookrag.rag.indexer import IncrementalIndexer, IndexRequest, ProviderMismatchError

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _chapters(title: str = "Chapter") -> list[Chapter]:
    """Three 600-character chapters (total 1800)."""
    return [Chapter(title=f"{title} {i + 1}", content=letter * 600) for i, letter in enumerate("abc")]


class _Gated(EmbeddingProvider):
    """Blocks every embed call until *gate* is set."""

    def __init__(self, inner, gate: asyncio.Event) -> None:
        self.inner = inner
        self.gate = gate
        self.provider_id = inner.provider_id
        self.batch_size = inner.batch_size
        self.calls = 0

    async def embed(self, texts):
        self.calls += 1
        await self.gate.wait()
        return await self.inner.embed(texts)

    async def embed_query(self, text):
        return await self.inner.embed_query(text)


class _FailingAfter(EmbeddingProvider):
    """Succeeds for *ok_calls* embed calls, then raises an API error."""

    def __init__(self, inner, ok_calls: int) -> None:
        self.inner = inner
        self.ok_calls = ok_calls
        self.provider_id = inner.provider_id
        self.batch_size = inner.batch_size

    async def embed(self, texts):
        if self.ok_calls <= 0:
            raise EmbeddingApiError("Embedding API call failed (503): overloaded", status=503)
        self.ok_calls -= 1
        return await self.inner.embed(texts)

    async def embed_query(self, text):
        return await self.inner.embed_query(text)


def _index(indexer, chapters, target, provider, progress=None):
    asyncio.run(
        indexer.ensure_indexed(
            IndexRequest("b", chapters, target, provider, on_progress=progress)
        )
    )


# ------------------------------------------------------------------
# Single runs
# ------------------------------------------------------------------


def test_fresh_index_writes_chunks_and_meta(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)
    progress: list[float] = []
    _index(indexer, _chapters(), 1800, provider, progress.append)

    meta = store.get_meta("b")
    assert meta.indexed_up_to == 1800
    assert meta.chunk_count == 4
    assert meta.embedding_provider_id == "local"
    assert meta.content_signature == content_signature(prepare_chapters(_chapters()))
    assert meta.updated_at > 0
    assert [e.chunk_id for e in store.get_embeddings_by_book("b")] == [
        "b_ch0_0", "b_ch0_448", "b_ch1_296", "b_ch2_144",
    ]
    assert progress[-1] == 1.0
    assert progress == sorted(progress)
    assert all(0.0 <= p <= 1.0 for p in progress)


def test_stored_vectors_are_unit_norm(store: VectorStore, provider):
    _index(IncrementalIndexer(store), _chapters(), 1800, provider)
    for e in store.get_embeddings_by_book("b"):
        assert sum(x * x for x in e.embedding) == pytest.approx(1.0, abs=1e-5)


def test_batches_follow_provider_batch_size(store: VectorStore, make_provider):
    provider = make_provider(batch_size=3)
    _index(IncrementalIndexer(store), _chapters(), 1800, provider)
    assert provider.batches == [3, 1]


def test_target_clamped_to_book_length(store: VectorStore, provider):
    _index(IncrementalIndexer(store), _chapters(), 99_999, provider)
    assert store.get_meta("b").indexed_up_to == 1800


@pytest.mark.parametrize("target", [0, -5])
def test_non_positive_target_is_noop(store: VectorStore, provider, target):
    _index(IncrementalIndexer(store), _chapters(), target, provider)
    assert store.get_meta("b") is None
    assert provider.embedded == []


# ------------------------------------------------------------------
# Monotonic, forward-only progress
# ------------------------------------------------------------------


def test_indexed_up_to_is_monotonic(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)
    seen = []
    for target in (500, 1000, 1000, 1800, 700):
        _index(indexer, _chapters(), target, provider)
        seen.append(store.get_meta("b").indexed_up_to)
    assert seen == [500, 1000, 1000, 1800, 1800]


def test_only_the_unindexed_tail_is_embedded(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)
    _index(indexer, _chapters(), 1000, provider)
    first_pass = len(provider.embedded)
    _index(indexer, _chapters(), 1800, provider)

    assert first_pass == 3
    # Only the re-emitted tail window and the new window are embedded.
    assert len(provider.embedded) == 5
    assert provider.embedded.count("a" * 512) == 1
    stored = {e.chunk_id: e for e in store.get_embeddings_by_book("b")}
    assert len(stored) == 4
    assert stored["b_ch1_296"].end_offset == 1408
    assert len(stored["b_ch1_296"].text) == 512


def test_already_indexed_makes_no_calls(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)
    _index(indexer, _chapters(), 1800, provider)
    calls = len(provider.batches)
    _index(indexer, _chapters(), 1200, provider)
    assert len(provider.batches) == calls


# ------------------------------------------------------------------
# Rebuild
# ------------------------------------------------------------------


def test_signature_change_rebuilds_from_zero(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)
    _index(indexer, _chapters(), 1800, provider)

    edited = _chapters(title="Part")
    _index(indexer, edited, 1000, provider)

    meta = store.get_meta("b")
    assert meta.indexed_up_to == 1000
    assert meta.content_signature == content_signature(prepare_chapters(edited))
    assert [e.end_offset for e in store.get_embeddings_by_book("b")] == [512, 960, 1000]


def test_empty_meta_triggers_rebuild(store: VectorStore, provider):
    sig = content_signature(prepare_chapters(_chapters()))
    store.save_meta(RagBookMeta("b", 0, 1800, 1, sig, "local"))
    _index(IncrementalIndexer(store), _chapters(), 1000, provider)
    assert store.get_meta("b").indexed_up_to == 1000
    assert store.get_meta("b").chunk_count == 3


# ------------------------------------------------------------------
# Provider consistency
# ------------------------------------------------------------------


def test_provider_change_raises_mismatch(store: VectorStore, provider, make_provider):
    indexer = IncrementalIndexer(store)
    _index(indexer, _chapters(), 1000, provider)
    remote = make_provider(provider_id="openai-small")

    with pytest.raises(ProviderMismatchError) as exc_info:
        _index(indexer, _chapters(), 1800, remote)

    assert (exc_info.value.stored, exc_info.value.requested) == ("local", "openai-small")
    assert remote.embedded == []
    assert store.get_meta("b").indexed_up_to == 1000


def test_legacy_meta_without_provider_counts_as_local(store: VectorStore, provider, make_provider):
    indexer = IncrementalIndexer(store)
    _index(indexer, _chapters(), 1000, provider)
    meta = store.get_meta("b")
    meta.embedding_provider_id = None
    store.save_meta(meta)

    with pytest.raises(ProviderMismatchError):
        _index(indexer, _chapters(), 1800, make_provider(provider_id="openai-small"))

    _index(indexer, _chapters(), 1800, provider)
    assert store.get_meta("b").embedding_provider_id == "local"


def test_provider_change_allowed_after_delete(store: VectorStore, provider, make_provider):
    indexer = IncrementalIndexer(store)
    _index(indexer, _chapters(), 1000, provider)
    store.delete_book("b")
    _index(indexer, _chapters(), 1000, make_provider(provider_id="openai-small"))
    assert store.get_meta("b").embedding_provider_id == "openai-small"


# ------------------------------------------------------------------
# Failure
# ------------------------------------------------------------------


def test_failure_leaves_indexed_up_to_unchanged(store: VectorStore, make_provider):
    indexer = IncrementalIndexer(store)
    good = make_provider(batch_size=1)
    _index(indexer, _chapters(), 1000, good)

    before = [(e.chunk_id, e.start_offset, e.end_offset) for e in store.get_embeddings_by_book("b")]
    assert before[-1] == ("b_ch1_296", 896, 1000)

    # The first batch rewrites the window cut at 1000, then the second fails.
    failing = _FailingAfter(make_provider(batch_size=1), ok_calls=1)
    with pytest.raises(EmbeddingApiError):
        _index(indexer, _chapters(), 1800, failing)
    assert store.get_meta("b").indexed_up_to == 1000
    assert not indexer.is_indexing("b")
    after = [(e.chunk_id, e.start_offset, e.end_offset) for e in store.get_embeddings_by_book("b")]
    assert after == before
    assert store.count_embeddings("b") == store.get_meta("b").chunk_count

    # Retrying resumes from the last saved checkpoint.
    _index(indexer, _chapters(), 1800, good)
    assert store.get_meta("b").indexed_up_to == 1800
    assert store.get_meta("b").chunk_count == 4


def test_unfinished_chunks_past_checkpoint_are_dropped(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)
    _index(indexer, _chapters(), 1000, provider)
    count = store.get_meta("b").chunk_count
    # Left behind by a run that died before saving meta.
    store.put_embeddings(
        [StoredEmbedding("b_ch2_144", "b", 2, 1344, 1800, "c" * 456, provider.vector("c"))]
    )
    calls = len(provider.batches)

    _index(indexer, _chapters(), 1000, provider)

    assert len(provider.batches) == calls
    assert store.count_embeddings("b") == count
    assert all(e.end_offset <= 1000 for e in store.get_embeddings_by_book("b"))


# ------------------------------------------------------------------
# Coalescing
# ------------------------------------------------------------------


def test_concurrent_requests_coalesce_to_max_target(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)
    gate = asyncio.Event()
    gated = _Gated(provider, gate)
    chapters = _chapters()

    async def scenario():
        first = asyncio.ensure_future(
            indexer.ensure_indexed(IndexRequest("b", chapters, 1000, gated))
        )
        while gated.calls == 0:
            await asyncio.sleep(0)
        assert indexer.is_indexing("b")

        second = asyncio.ensure_future(
            indexer.ensure_indexed(IndexRequest("b", chapters, 2000, gated))
        )
        third = asyncio.ensure_future(
            indexer.ensure_indexed(IndexRequest("b", chapters, 1500, gated))
        )
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(first, second, third)

    asyncio.run(scenario())

    assert store.get_meta("b").indexed_up_to == 1800
    assert not indexer.is_indexing("b")
    # Run 1: [0,512) [448,960) [896,1000). Run 2: [896,1408) [1344,1800).
    assert provider.embedded.count("a" * 512) == 1
    assert provider.batches == [3, 2]


def test_back_to_back_requests_before_start_run_once(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)
    chapters = _chapters()

    async def scenario():
        await asyncio.gather(
            indexer.ensure_indexed(IndexRequest("b", chapters, 1000, provider)),
            indexer.ensure_indexed(IndexRequest("b", chapters, 2000, provider)),
        )

    asyncio.run(scenario())
    assert provider.batches == [4]
    assert store.get_meta("b").indexed_up_to == 1800


def test_different_books_index_independently(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)

    async def scenario():
        await asyncio.gather(
            indexer.ensure_indexed(IndexRequest("x", _chapters(), 1800, provider)),
            indexer.ensure_indexed(IndexRequest("y", _chapters(), 1000, provider)),
        )

    asyncio.run(scenario())
    assert store.get_meta("x").indexed_up_to == 1800
    assert store.get_meta("y").indexed_up_to == 1000


def test_clear_pending_drops_queued_requests(store: VectorStore, provider):
    indexer = IncrementalIndexer(store)
    gate = asyncio.Event()
    gated = _Gated(provider, gate)
    chapters = _chapters()

    async def scenario():
        first = asyncio.ensure_future(
            indexer.ensure_indexed(IndexRequest("b", chapters, 1000, gated))
        )
        while gated.calls == 0:
            await asyncio.sleep(0)
        second = asyncio.ensure_future(
            indexer.ensure_indexed(IndexRequest("b", chapters, 1800, gated))
        )
        await asyncio.sleep(0)
        indexer.clear_pending()
        gate.set()
        await asyncio.gather(first, second)

    asyncio.run(scenario())
    assert store.get_meta("b").indexed_up_to == 1000
