"""bookrag storage layer."""

from bookrag.db.connection import Database
from bookrag.db.migrations import MIGRATIONS, run_migrations
from bookrag.db.schema import initialize
from bookrag.db.store import VectorStore

__all__ = [
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "VectorStore",
]
