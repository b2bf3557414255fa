"""Shared CLI plumbing: config loading and engine opening."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from bookrag.cli.errors import err_config, err_no_db
from bookrag.config import BookragConfig, ConfigError, load_config
from bookrag.rag.engine import RagEngine

console = Console()


def load_cfg() -> BookragConfig:
    """Load config from the working directory, exiting 1 on a bad file."""
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(exc))
        raise typer.Exit(1) from exc


def resolve_db(cfg: BookragConfig, db: Path | None) -> Path:
    return db if db is not None else Path(cfg.storage.db_path)


def open_engine(cfg: BookragConfig, db: Path | None, *, must_exist: bool = True) -> RagEngine:
    """Open the engine on *db* (or the configured path).

    Exits 1 if *must_exist* and the database file is missing.
    """
    db_path = resolve_db(cfg, db)
    if must_exist and not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)
    return RagEngine.open(cfg, db_path)
