"""Persistent vector store: embedded chunks + per-book index meta.

Two partitions: ``embeddings`` (keyed by chunk_id, indexed by book_id) and
``rag_meta`` (keyed by book_id). Every public method runs in exactly one
transaction; a write has been committed by the time the call returns.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Iterator

from bookrag.db.models import RagBookMeta, StorageUsage, StoredEmbedding
from bookrag.db.vectors import deserialize_vector, serialize_vector

_EMBEDDING_COLUMNS = "chunk_id, book_id, chapter_index, start_offset, end_offset, text, embedding"
_META_COLUMNS = (
    "book_id, chunk_count, indexed_up_to, updated_at, content_signature, embedding_provider_id"
)


class VectorStore:
    """Data access layer for stored embeddings and book meta.

    Wraps an open sqlite3.Connection; the connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see bookrag.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def put_embeddings(self, embeddings: Iterable[StoredEmbedding]) -> int:
        """Upsert *embeddings* by chunk_id in a single transaction.

        Returns:
            Number of records written.
        """
        rows = [_embedding_to_row(e) for e in embeddings]
        if not rows:
            return 0
        with self._conn:
            self._conn.executemany(
                f"INSERT OR REPLACE INTO embeddings ({_EMBEDDING_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
        return len(rows)

    def get_embeddings_by_book(self, book_id: str) -> list[StoredEmbedding]:
        """Return every stored embedding for *book_id*, ordered by start offset."""
        rows = self._conn.execute(
            f"SELECT {_EMBEDDING_COLUMNS} FROM embeddings WHERE book_id = ? "
            "ORDER BY start_offset, chunk_id",
            (book_id,),
        ).fetchall()
        return [_row_to_embedding(r) for r in rows]

    def count_embeddings(self, book_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM embeddings WHERE book_id = ?", (book_id,)
        ).fetchone()[0]

    def iter_all_embeddings(self) -> Iterator[StoredEmbedding]:
        """Yield every stored embedding across all books."""
        cur = self._conn.execute(
            f"SELECT {_EMBEDDING_COLUMNS} FROM embeddings ORDER BY book_id, start_offset"
        )
        for row in cur:
            yield _row_to_embedding(row)

    def embedding_dimensions(self, book_id: str) -> list[int]:
        """Return the distinct vector lengths stored for *book_id*.

        More than one value means the book's index mixes providers.
        """
        rows = self._conn.execute(
            "SELECT DISTINCT vec_length(embedding) FROM embeddings WHERE book_id = ? ORDER BY 1",
            (book_id,),
        ).fetchall()
        return [r[0] for r in rows]

    def delete_book(self, book_id: str) -> int:
        """Delete all embeddings and the meta row for *book_id* in one transaction.

        Returns:
            Number of embedding rows deleted.
        """
        with self._conn:
            cur = self._conn.execute("DELETE FROM embeddings WHERE book_id = ?", (book_id,))
            self._conn.execute("DELETE FROM rag_meta WHERE book_id = ?", (book_id,))
        return cur.rowcount

    def delete_embeddings_after(self, book_id: str, offset: int) -> int:
        """Delete *book_id*'s embeddings that end past *offset*; returns rows deleted."""
        with self._conn:
            cur = self._conn.execute(
                "DELETE FROM embeddings WHERE book_id = ? AND end_offset > ?", (book_id, offset)
            )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def save_meta(self, meta: RagBookMeta) -> None:
        with self._conn:
            self._conn.execute(
                f"INSERT OR REPLACE INTO rag_meta ({_META_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                _meta_to_row(meta),
            )

    def get_meta(self, book_id: str) -> RagBookMeta | None:
        row = self._conn.execute(
            f"SELECT {_META_COLUMNS} FROM rag_meta WHERE book_id = ?", (book_id,)
        ).fetchone()
        return _row_to_meta(row) if row else None

    def list_meta(self) -> list[RagBookMeta]:
        rows = self._conn.execute(
            f"SELECT {_META_COLUMNS} FROM rag_meta ORDER BY book_id"
        ).fetchall()
        return [_row_to_meta(r) for r in rows]

    # ------------------------------------------------------------------
    # Bulk replace + accounting
    # ------------------------------------------------------------------

    def replace_all(
        self, embeddings: Iterable[StoredEmbedding], metas: Iterable[RagBookMeta]
    ) -> None:
        """Clear both partitions and write the given records, atomically."""
        embedding_rows = [_embedding_to_row(e) for e in embeddings]
        meta_rows = [_meta_to_row(m) for m in metas]
        with self._conn:
            self._conn.execute("DELETE FROM embeddings")
            self._conn.execute("DELETE FROM rag_meta")
            self._conn.executemany(
                f"INSERT OR REPLACE INTO embeddings ({_EMBEDDING_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                embedding_rows,
            )
            self._conn.executemany(
                f"INSERT OR REPLACE INTO rag_meta ({_META_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                meta_rows,
            )

    def usage_bytes(self) -> StorageUsage:
        """Approximate payload size of both partitions.

        Text columns are measured in UTF-8 bytes, integers as 8 bytes each.
        """
        embeddings_bytes = self._conn.execute(
            """
            SELECT COALESCE(SUM(
                length(CAST(chunk_id AS BLOB)) + length(CAST(book_id AS BLOB))
                + length(CAST(text AS BLOB)) + length(embedding) + 24
            ), 0) FROM embeddings
            """
        ).fetchone()[0]
        meta_bytes = self._conn.execute(
            """
            SELECT COALESCE(SUM(
                length(CAST(book_id AS BLOB))
                + COALESCE(length(CAST(content_signature AS BLOB)), 0)
                + COALESCE(length(CAST(embedding_provider_id AS BLOB)), 0) + 24
            ), 0) FROM rag_meta
            """
        ).fetchone()[0]
        return StorageUsage(
            total_bytes=embeddings_bytes + meta_bytes,
            embeddings_bytes=embeddings_bytes,
            meta_bytes=meta_bytes,
        )


# ------------------------------------------------------------------
# Row ↔ model helpers
# ------------------------------------------------------------------


def _embedding_to_row(e: StoredEmbedding) -> tuple:
    return (
        e.chunk_id,
        e.book_id,
        e.chapter_index,
        e.start_offset,
        e.end_offset,
        e.text,
        serialize_vector(e.embedding),
    )


def _row_to_embedding(row: sqlite3.Row) -> StoredEmbedding:
    return StoredEmbedding(
        chunk_id=row["chunk_id"],
        book_id=row["book_id"],
        chapter_index=row["chapter_index"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        text=row["text"],
        embedding=deserialize_vector(row["embedding"]).tolist(),
    )


def _meta_to_row(m: RagBookMeta) -> tuple:
    return (
        m.book_id,
        m.chunk_count,
        m.indexed_up_to,
        m.updated_at,
        m.content_signature,
        m.embedding_provider_id,
    )


def _row_to_meta(row: sqlite3.Row) -> RagBookMeta:
    return RagBookMeta(
        book_id=row["book_id"],
        chunk_count=row["chunk_count"],
        indexed_up_to=row["indexed_up_to"],
        updated_at=row["updated_at"],
        content_signature=row["content_signature"],
        embedding_provider_id=row["embedding_provider_id"],
    )
