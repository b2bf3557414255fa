"""Incremental, forward-only book indexer.

A run chunks only the text between the book's recorded ``indexed_up_to``
and the requested target, embeds it in provider-sized batches and persists
each batch before moving on. A changed content signature (or missing meta)
wipes the book's index first and starts from offset 0.

Requests for the same book are coalesced: at most one run per book is
active, and requests that arrive meanwhile collapse into a single pending
request carrying the largest target seen.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from bookrag.db.models import RagBookMeta, StoredEmbedding, TextChunk
from bookrag.db.store import VectorStore
from bookrag.embed.base import LOCAL_PROVIDER_ID, EmbeddingProvider
from bookrag.ingest.chunker import (
    Chapter,
    Chunker,
    clamp_offset,
    content_signature,
    prepare_chapters,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class ProviderMismatchError(RuntimeError):
    """The book's stored vectors came from a different embedding provider.

    Resolve by deleting the book's index and indexing again.
    """

    def __init__(self, book_id: str, stored: str, requested: str) -> None:
        super().__init__(
            f"Book '{book_id}' is indexed with embedding provider '{stored}', "
            f"not '{requested}'. Delete its index to re-embed with '{requested}'."
        )
        self.book_id = book_id
        self.stored = stored
        self.requested = requested


@dataclass
class IndexRequest:
    book_id: str
    chapters: Sequence[Chapter]
    target_offset: int
    provider: EmbeddingProvider
    on_progress: ProgressCallback | None = None


def stored_provider_id(meta: RagBookMeta | None) -> str | None:
    """Provider id of a non-empty index; legacy meta without one is local."""
    if meta is None or meta.chunk_count <= 0:
        return None
    return meta.embedding_provider_id or LOCAL_PROVIDER_ID


def _now_ms() -> int:
    return int(time.time() * 1000)


class IncrementalIndexer:
    """Per-book coalescing front end over :meth:`index_book`.

    Args:
        store: Vector store the embeddings and meta are written to.
        chunker: Window geometry; must stay fixed for a store's lifetime.
    """

    def __init__(self, store: VectorStore, chunker: Chunker | None = None) -> None:
        self.store = store
        self.chunker = chunker or Chunker()
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._pending: dict[str, IndexRequest] = {}

    def is_indexing(self, book_id: str) -> bool:
        return book_id in self._in_flight

    def clear_pending(self) -> None:
        """Forget queued requests. Runs already in flight are unaffected."""
        self._pending.clear()

    async def ensure_indexed(self, request: IndexRequest) -> None:
        """Index *request.book_id* up to at least *request.target_offset*.

        Returns once the book's active run (and any requests coalesced into
        it, including this one) has finished. A failure of that run is
        raised to every caller waiting on it.
        """
        book_id = request.book_id
        current = self._pending.get(book_id)
        if current is None or request.target_offset > current.target_offset:
            self._pending[book_id] = request
        elif request.chapters is not current.chapters:
            # Keep the larger target but take the newer content snapshot.
            current.chapters = request.chapters
            current.on_progress = request.on_progress
            current.provider = request.provider

        task = self._in_flight.get(book_id)
        if task is None:
            task = asyncio.ensure_future(self._drain(book_id))
            self._in_flight[book_id] = task
        await asyncio.shield(task)

    async def _drain(self, book_id: str) -> None:
        try:
            while (request := self._pending.pop(book_id, None)) is not None:
                await self.index_book(
                    request.book_id,
                    request.chapters,
                    request.target_offset,
                    request.provider,
                    on_progress=request.on_progress,
                )
        finally:
            self._in_flight.pop(book_id, None)

    async def index_book(
        self,
        book_id: str,
        chapters: Sequence[Chapter],
        target_offset: int,
        provider: EmbeddingProvider,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Run one indexing pass without coalescing.

        Raises:
            ProviderMismatchError: The book already holds vectors from another
                provider.
            EmbeddingApiError / ModelLoadError: Embedding failed. Chunks this
                run already stored are removed and meta is left untouched, so
                every stored chunk ends at or before ``indexed_up_to`` and a
                retry resumes from the last saved checkpoint.
        """
        book = prepare_chapters(chapters)
        total = book.total_length
        target = clamp_offset(target_offset, total)
        if target <= 0:
            return

        signature = content_signature(book)
        provider_id = provider.provider_id or LOCAL_PROVIDER_ID

        meta = self.store.get_meta(book_id)
        stored_id = stored_provider_id(meta)
        if stored_id is not None and stored_id != provider_id:
            raise ProviderMismatchError(book_id, stored_id, provider_id)

        if meta is None or meta.chunk_count <= 0 or meta.content_signature != signature:
            if meta is not None:
                logger.info("Rebuilding index for book %s (content changed)", book_id)
            self.store.delete_book(book_id)
            indexed_up_to = 0
        else:
            indexed_up_to = clamp_offset(meta.indexed_up_to, total)
            # Chunks past the checkpoint belong to a run that never finished.
            orphaned = self.store.delete_embeddings_after(book_id, indexed_up_to)
            if orphaned:
                logger.info(
                    "Dropped %d unfinished chunk(s) of book %s past offset %d",
                    orphaned, book_id, indexed_up_to,
                )

        if indexed_up_to >= target:
            return

        logger.info(
            "Indexing book %s from %d to %d with provider %s",
            book_id, indexed_up_to, target, provider_id,
        )
        total_delta = target - indexed_up_to
        batch: list[TextChunk] = []
        # Windows cut at the checkpoint; this run rewrites them under the same ids.
        checkpoint_chunks = (
            [e for e in self.store.get_embeddings_by_book(book_id) if e.end_offset == indexed_up_to]
            if indexed_up_to > 0
            else []
        )

        async def flush() -> None:
            vectors = await provider.embed([c.text for c in batch])
            self.store.put_embeddings(
                StoredEmbedding.from_chunk(c, v) for c, v in zip(batch, vectors, strict=True)
            )
            latest = batch[-1].end_offset
            batch.clear()
            await asyncio.sleep(0)
            if on_progress is not None:
                on_progress(min(1.0, max(0.0, (latest - indexed_up_to) / total_delta)))

        try:
            for chunk in self.chunker.iter_chunks(book_id, book, target, after=indexed_up_to):
                batch.append(chunk)
                if len(batch) >= max(1, provider.batch_size):
                    await flush()
            if batch:
                await flush()
        except Exception:
            self.store.delete_embeddings_after(book_id, indexed_up_to)
            self.store.put_embeddings(checkpoint_chunks)
            raise

        self.store.save_meta(
            RagBookMeta(
                book_id=book_id,
                chunk_count=self.store.count_embeddings(book_id),
                indexed_up_to=max(indexed_up_to, target),
                updated_at=_now_ms(),
                content_signature=signature,
                embedding_provider_id=provider_id,
            )
        )
        if on_progress is not None:
            on_progress(1.0)
        logger.info("Book %s indexed up to %d", book_id, target)
