"""Shared pytest fixtures."""

from __future__ import annotations

import os

# Use litellm's bundled model cost map so importing it does not start a
# background network fetch thread (offline runs can deadlock on imports).
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import re
import zlib

import pytest

from bookrag.db.connection import Database
from bookrag.db.schema import initialize
from bookrag.db.store import VectorStore
from bookrag.db.vectors import l2_normalize
from bookrag.embed.base import EmbeddingProvider

_DIMS = 64
_TOKEN_RE = re.compile(r"\w+")


class HashingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embedder; records every call."""

    def __init__(self, provider_id: str = "local", batch_size: int = 8, dims: int = _DIMS) -> None:
        self.provider_id = provider_id
        self.batch_size = batch_size
        self.dims = dims
        self.embedded: list[str] = []
        self.batches: list[int] = []
        self.queries: list[str] = []

    def vector(self, text: str) -> list[float]:
        v = [0.0] * self.dims
        for token in _TOKEN_RE.findall(text.lower()):
            v[zlib.crc32(token.encode("utf-8")) % self.dims] += 1.0
        if not any(v):
            v[0] = 1.0
        return l2_normalize(v)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.embedded.extend(texts)
        self.batches.append(len(texts))
        return [self.vector(t) for t in texts]

    async def embed_query(self, text: str) -> list[float]:
        self.queries.append(text)
        return self.vector(text)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".bookrag.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(tmp_db) -> VectorStore:
    return VectorStore(tmp_db)


@pytest.fixture
def provider() -> HashingProvider:
    return HashingProvider()


@pytest.fixture
def make_provider():
    """Factory for extra HashingProvider instances (e.g. remote preset ids)."""
    return HashingProvider


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Run in tmp_path with no global config and no BOOKRAG_* overrides."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr("bookrag.config._GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")
    for var in ("BOOKRAG_EMBEDDING_MODEL", "BOOKRAG_RAG_MIRRORS", "BOOKRAG_DB"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path
