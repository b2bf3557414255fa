"""bookrag remove — drop a book's index.

Removes every stored embedding and the meta record for the book. Needed
before re-indexing with a different embedding provider.

Usage:
  bookrag remove moby-dick
  bookrag remove moby-dick --yes
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from bookrag.cli.errors import err_book_not_indexed
from bookrag.cli.session import load_cfg, open_engine

console = Console()


def remove_cmd(
    book_id: Annotated[str, typer.Argument(help="Book whose index should be removed.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the index database."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Remove a book's embeddings and index meta."""
    cfg = load_cfg()
    engine = open_engine(cfg, db)
    try:
        meta = engine.store.get_meta(book_id)
        chunk_count = engine.store.count_embeddings(book_id)
        if meta is None and chunk_count == 0:
            console.print(err_book_not_indexed(book_id))
            raise typer.Exit(0)

        console.print(f"\nRemove index for: [bold]{book_id}[/]")
        indexed = meta.indexed_up_to if meta else 0
        console.print(f"  Chunks: {chunk_count:,}  |  Indexed up to: {indexed:,}")

        if not yes:
            if not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)

        deleted = engine.delete_index(book_id)
        console.print(f"\n[green]✓[/] Removed: {book_id} ({deleted:,} chunks deleted)")
    finally:
        engine.close()
