"""RagEngine — the in-process API the chat and backup layers call.

Wires the vector store, the incremental indexer, the retriever and the
embedding providers together behind the operations the rest of an
application needs: index, retrieve, status, delete, archive and storage
accounting, plus model warm-up and debug snapshots.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from bookrag.config import BookragConfig, ConfigError, resolve_api_config
from bookrag.db import archive
from bookrag.db.connection import Database
from bookrag.db.models import StorageUsage, TextChunk
from bookrag.db.schema import initialize
from bookrag.db.store import VectorStore
from bookrag.embed.base import LOCAL_PROVIDER_ID, EmbeddingProvider
from bookrag.embed.model_loader import ModelDebugSnapshot, ModelLoader
from bookrag.embed.provider import create_provider
from bookrag.embed.remote import ApiConfig
from bookrag.ingest.chunker import Chapter, Chunker
from bookrag.rag.indexer import (
    IncrementalIndexer,
    IndexRequest,
    ProgressCallback,
    stored_provider_id,
)
from bookrag.rag.retriever import RetrieverConfig, retrieve

logger = logging.getLogger(__name__)

ApiConfigResolver = Callable[[str], ApiConfig | None]


class RagEngine:
    """Facade over one vector store.

    Args:
        store: Open vector store.
        cfg: Loaded configuration (chunking, model, batch sizes, presets).
        loader: Shared on-device model loader; built from ``cfg.model`` if
            omitted.
    """

    def __init__(
        self,
        store: VectorStore,
        cfg: BookragConfig | None = None,
        loader: ModelLoader | None = None,
    ) -> None:
        self.cfg = cfg or BookragConfig()
        self.store = store
        self.loader = loader or ModelLoader(self.cfg.model)
        self.indexer = IncrementalIndexer(
            store,
            Chunker(
                chunk_size=self.cfg.chunking.chunk_size,
                overlap=self.cfg.chunking.overlap,
                min_length=self.cfg.chunking.min_chunk_length,
            ),
        )
        self._db: Database | None = None

    @classmethod
    def open(cls, cfg: BookragConfig, db_path: str | Path | None = None) -> RagEngine:
        """Open (and migrate) the configured database and return an engine."""
        db = Database(db_path if db_path is not None else cfg.storage.db_path)
        conn = db.connect()
        initialize(conn)
        engine = cls(VectorStore(conn), cfg)
        engine._db = db
        return engine

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    def __enter__(self) -> RagEngine:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def provider(
        self, preset_id: str | None = None, api_config: ApiConfig | None = None
    ) -> EmbeddingProvider:
        """Return the provider for *preset_id*.

        An explicit *api_config* wins; otherwise the preset is resolved from
        config (ConfigError if unknown). No preset means the local model.
        """
        if preset_id == LOCAL_PROVIDER_ID:
            preset_id = None
        if api_config is None and preset_id:
            api_config = resolve_api_config(self.cfg, preset_id)
        return create_provider(
            self.loader,
            preset_id,
            api_config,
            local_batch_size=self.cfg.indexing.local_batch_size,
            remote_batch_size=self.cfg.indexing.remote_batch_size,
        )

    def resolve_api_config(self, preset_id: str) -> ApiConfig | None:
        """Default resolver: the preset from config, with its key from the environment."""
        return resolve_api_config(self.cfg, preset_id)

    def stored_provider(self, provider_id: str, resolver: ApiConfigResolver) -> EmbeddingProvider:
        """Rebuild the provider a book was indexed with from its recorded id.

        Raises:
            ConfigError: The resolver cannot supply an API configuration for
                a remote id.
        """
        if provider_id == LOCAL_PROVIDER_ID:
            return self.provider()
        api_config = resolver(provider_id)
        if api_config is None:
            raise ConfigError(f"No API configuration for embedding preset '{provider_id}'.")
        return self.provider(provider_id, api_config)

    # ------------------------------------------------------------------
    # Indexing + retrieval
    # ------------------------------------------------------------------

    async def ensure_indexed(
        self,
        book_id: str,
        chapters: Sequence[Chapter],
        target_offset: int,
        on_progress: ProgressCallback | None = None,
        preset_id: str | None = None,
        api_config: ApiConfig | None = None,
    ) -> None:
        """Index *book_id* up to *target_offset*; see IncrementalIndexer.

        An explicit *api_config* must come with the *preset_id* it belongs
        to; that id is recorded with the book so retrieval can resolve it
        again.

        Raises:
            ConfigError: *api_config* given without a remote *preset_id*, or
                an unknown preset.
        """
        if api_config is not None and (not preset_id or preset_id == LOCAL_PROVIDER_ID):
            raise ConfigError(
                "An explicit API configuration needs the preset id it belongs to."
            )
        await self.indexer.ensure_indexed(
            IndexRequest(
                book_id=book_id,
                chapters=chapters,
                target_offset=target_offset,
                provider=self.provider(preset_id, api_config),
                on_progress=on_progress,
            )
        )

    async def retrieve(
        self,
        query: str,
        offsets_by_book: Mapping[str, float | int | None],
        *,
        top_k: int | None = None,
        per_book_top_k: int | None = None,
        resolve_api_config: ApiConfigResolver | None = None,
    ) -> list[TextChunk]:
        """Spoiler-safe hybrid retrieval across *offsets_by_book*.

        *resolve_api_config* maps each remote preset id recorded with a book
        to its API configuration (default: the configured presets). Books
        whose preset cannot be resolved are skipped.
        """
        resolver = resolve_api_config or self.resolve_api_config
        tuning = self.cfg.retrieval
        config = RetrieverConfig(
            top_k=top_k if top_k is not None else tuning.top_k,
            per_book_top_k=per_book_top_k,
            keyword_boost_weight=tuning.keyword_boost_weight,
            max_query_terms=tuning.max_query_terms,
            default_per_book_top_k=tuning.per_book_top_k,
        )
        providers: dict[str, EmbeddingProvider] = {}

        def provider_for(provider_id: str) -> EmbeddingProvider:
            if provider_id not in providers:
                providers[provider_id] = self.stored_provider(provider_id, resolver)
            return providers[provider_id]

        return await retrieve(query, offsets_by_book, self.store, provider_for, config)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_indexed_up_to(self, book_id: str) -> int:
        try:
            meta = self.store.get_meta(book_id)
        except sqlite3.Error as exc:
            logger.warning("Could not read index meta for %s: %s", book_id, exc)
            return 0
        return meta.indexed_up_to if meta else 0

    def is_indexed(self, book_id: str) -> bool:
        try:
            meta = self.store.get_meta(book_id)
        except sqlite3.Error as exc:
            logger.warning("Could not read index meta for %s: %s", book_id, exc)
            return False
        return meta is not None and meta.chunk_count > 0

    def is_indexing(self, book_id: str) -> bool:
        return self.indexer.is_indexing(book_id)

    def check_provider(self, book_id: str, preset_id: str | None) -> str | None:
        """Return the stored provider id if it differs from *preset_id*, else None.

        A non-None result means indexing with *preset_id* would raise
        ProviderMismatchError until the book's index is deleted.
        """
        stored = stored_provider_id(self.store.get_meta(book_id))
        requested = preset_id or LOCAL_PROVIDER_ID
        return stored if stored is not None and stored != requested else None

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def delete_index(self, book_id: str) -> int:
        """Remove every stored vector and the meta row for *book_id*."""
        deleted = self.store.delete_book(book_id)
        logger.info("Deleted index for book %s (%d chunks)", book_id, deleted)
        return deleted

    def export_archive(self) -> dict[str, list[dict[str, Any]]]:
        return archive.export_archive(self.store)

    def restore_archive(self, payload: Any) -> tuple[int, int]:
        """Replace the whole index with *payload*; queued index requests are dropped."""
        self.indexer.clear_pending()
        restored = archive.restore_archive(self.store, payload)
        logger.info("Restored %d embeddings and %d meta records", *restored)
        return restored

    def storage_usage(self) -> StorageUsage:
        try:
            return self.store.usage_bytes()
        except sqlite3.Error as exc:
            logger.warning("Could not compute RAG storage usage: %s", exc)
            return StorageUsage()

    # ------------------------------------------------------------------
    # Local model
    # ------------------------------------------------------------------

    async def warmup(self) -> None:
        """Load the on-device model now rather than on first use."""
        await self.loader.get_pipeline()

    def model_debug_snapshot(self) -> ModelDebugSnapshot:
        return self.loader.snapshot()
