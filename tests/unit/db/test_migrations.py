"""Tests for the forward-only migration runner."""

from __future__ import annotations

from bookrag.db.connection import Database
from bookrag.db.migrations import MIGRATIONS, run_migrations
from bookrag.db.schema import CURRENT_VERSION, initialize


def _fresh_conn(tmp_path):
    """Open a new connection without running migrations."""
    db = Database(tmp_path / "test.db")
    return db.connect()


def _table_exists(conn, name: str) -> bool:
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
    ).fetchone() is not None


def _columns(conn, table: str) -> list[str]:
    return [r["name"] for r in conn.execute(f"PRAGMA table_info({table})").fetchall()]


# --- Bootstrap ---

def test_run_migrations_creates_schema_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _table_exists(conn, "schema_version")
    conn.close()


def test_run_migrations_records_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    assert version == MIGRATIONS[-1][0] == CURRENT_VERSION
    conn.close()


# --- Idempotency ---

def test_run_migrations_idempotent(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    run_migrations(conn)
    count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert count == len(MIGRATIONS)
    conn.close()


# --- Partitions created ---

def test_run_migrations_creates_embeddings(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _columns(conn, "embeddings") == [
        "chunk_id", "book_id", "chapter_index", "start_offset", "end_offset", "text", "embedding",
    ]
    conn.close()


def test_run_migrations_creates_rag_meta(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _columns(conn, "rag_meta") == [
        "book_id", "chunk_count", "indexed_up_to", "updated_at",
        "content_signature", "embedding_provider_id",
    ]
    conn.close()


def test_run_migrations_indexes_embeddings_by_book(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND name='idx_embeddings_book'"
    ).fetchone()
    assert row is not None
    conn.close()


# --- Incremental application ---

def test_run_migrations_applies_only_pending(tmp_path, monkeypatch):
    """A DB already at version 1 only receives the later migration."""
    conn = _fresh_conn(tmp_path)
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_version "
        "(version INTEGER NOT NULL, applied_at DATETIME NOT NULL DEFAULT (datetime('now')))"
    )
    conn.execute("INSERT INTO schema_version (version) VALUES (1)")
    conn.commit()

    import bookrag.db.migrations as mod
    monkeypatch.setattr(
        mod,
        "MIGRATIONS",
        [(1, "CREATE TABLE v1_marker (x INTEGER);"), (2, "CREATE TABLE v2_marker (x INTEGER);")],
    )
    mod.run_migrations(conn)

    assert _table_exists(conn, "v2_marker")
    assert not _table_exists(conn, "v1_marker")
    versions = [
        r[0] for r in conn.execute("SELECT version FROM schema_version ORDER BY version").fetchall()
    ]
    assert versions == [1, 2]
    conn.close()


# --- initialize() delegates to run_migrations() ---

def test_initialize_delegates_to_run_migrations(tmp_path):
    conn = _fresh_conn(tmp_path)
    initialize(conn)
    version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    assert version == MIGRATIONS[-1][0]
    conn.close()
