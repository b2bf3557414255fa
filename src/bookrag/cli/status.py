"""bookrag status — indexed books and storage usage."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from bookrag.cli.errors import err_book_not_indexed
from bookrag.cli.session import load_cfg, open_engine, resolve_db
from bookrag.db.models import RagBookMeta, StorageUsage

console = Console()


def status_cmd(
    book_id: Annotated[
        str | None,
        typer.Argument(help="Show only this book."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the index database."),
    ] = None,
) -> None:
    """Show indexed books, their progress, and storage used."""
    cfg = load_cfg()
    db_path = resolve_db(cfg, db)
    if not db_path.exists():
        console.print(
            Panel(
                "[yellow]No index database found.[/]\n"
                "  Run:  bookrag index BOOK_FILE --book-id ID",
                title="[bold]Index[/]",
                expand=False,
            )
        )
        return

    engine = open_engine(cfg, db_path)
    try:
        metas = engine.store.list_meta()
        if book_id is not None:
            metas = [m for m in metas if m.book_id == book_id]
            if not metas:
                console.print(err_book_not_indexed(book_id))
                return
        dims = {m.book_id: engine.store.embedding_dimensions(m.book_id) for m in metas}
        usage = engine.storage_usage()
    finally:
        engine.close()

    _show_books_table(metas, dims)
    _warn_mixed_dimensions(dims)
    _show_usage_panel(db_path, usage)


def _show_books_table(metas: list[RagBookMeta], dims: dict[str, list[int]]) -> None:
    if not metas:
        console.print("[dim]No books indexed yet.[/]")
        return
    table = Table(title="Indexed books", show_lines=False)
    table.add_column("Book", style="bold")
    table.add_column("Chunks", justify="right")
    table.add_column("Indexed up to", justify="right")
    table.add_column("Provider")
    table.add_column("Dims", justify="right")
    table.add_column("Updated")
    for m in metas:
        table.add_row(
            m.book_id,
            f"{m.chunk_count:,}",
            f"{m.indexed_up_to:,}",
            m.embedding_provider_id or "local",
            _format_dims(dims.get(m.book_id, [])),
            _format_ms(m.updated_at),
        )
    console.print(table)


def _warn_mixed_dimensions(dims: dict[str, list[int]]) -> None:
    for book_id, lengths in dims.items():
        if len(lengths) > 1:
            console.print(
                f"[yellow]Warning:[/] {book_id} mixes vectors of different lengths "
                f"({_format_dims(lengths)}); retrieval skips it.\n"
                f"  Run:  bookrag remove {book_id} --yes  and index it again."
            )


def _show_usage_panel(db_path: Path, usage: StorageUsage) -> None:
    lines = [
        f"Database:    {db_path}",
        f"Total:       {_format_bytes(usage.total_bytes)}",
        f"Embeddings:  {_format_bytes(usage.embeddings_bytes)}",
        f"Meta:        {_format_bytes(usage.meta_bytes)}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Storage[/]", expand=False))


def _format_dims(lengths: list[int]) -> str:
    if not lengths:
        return "—"
    if len(lengths) > 1:
        return "[red]" + "/".join(str(n) for n in lengths) + "[/]"
    return str(lengths[0])


def _format_ms(ms: int) -> str:
    if ms <= 0:
        return "—"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _format_bytes(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    if n < 1024 * 1024:
        return f"{n / 1024:.1f} KB"
    return f"{n / (1024 * 1024):.1f} MB"
