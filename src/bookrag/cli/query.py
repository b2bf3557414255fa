"""bookrag query — spoiler-safe retrieval across one or more books.

Usage:
  bookrag query "who is the narrator?" --book moby-dick:12000
  bookrag query "harpoon" --book moby-dick --book typee:4000 --top-k 8
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel

from bookrag.cli.errors import HANDLED_ERRORS, describe_error
from bookrag.cli.session import load_cfg, open_engine

console = Console()

_SNIPPET_CHARS = 400


def query_cmd(
    text: Annotated[str, typer.Argument(help="Question to retrieve passages for.")],
    book: Annotated[
        list[str],
        typer.Option(
            "--book",
            "-b",
            help="Book to search as ID or ID:CUTOFF (repeatable). No cutoff = whole index.",
        ),
    ],
    top_k: Annotated[
        int | None,
        typer.Option("--top-k", "-k", help="Maximum passages returned."),
    ] = None,
    per_book_top_k: Annotated[
        int | None,
        typer.Option("--per-book-top-k", help="Maximum passages considered per book."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the index database."),
    ] = None,
) -> None:
    """Retrieve passages the reader has already seen."""
    try:
        offsets = parse_book_specs(book)
    except ValueError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1) from exc

    cfg = load_cfg()
    engine = open_engine(cfg, db)
    try:
        chunks = asyncio.run(
            engine.retrieve(text, offsets, top_k=top_k, per_book_top_k=per_book_top_k)
        )
    except HANDLED_ERRORS as exc:
        console.print(describe_error(exc))
        raise typer.Exit(1) from exc
    finally:
        engine.close()

    if not chunks:
        console.print("[yellow]No passages found.[/] Is the book indexed up to the cutoff?")
        return

    for rank, chunk in enumerate(chunks, start=1):
        snippet = chunk.text if len(chunk.text) <= _SNIPPET_CHARS else chunk.text[:_SNIPPET_CHARS] + "…"
        console.print(
            Panel(
                snippet,
                title=f"[bold]{rank}.[/] {chunk.book_id}  ch{chunk.chapter_index}",
                subtitle=f"[dim]{chunk.start_offset:,}–{chunk.end_offset:,}[/]",
                expand=False,
            )
        )


def parse_book_specs(specs: list[str]) -> dict[str, int | None]:
    """Parse ``ID`` / ``ID:CUTOFF`` options into a book → cutoff map.

    Raises:
        ValueError: On an empty id or a non-integer cutoff.
    """
    offsets: dict[str, int | None] = {}
    for spec in specs:
        book_id, sep, cutoff = spec.rpartition(":")
        if not sep:
            book_id, cutoff = spec, ""
        book_id = book_id.strip()
        if not book_id:
            raise ValueError(f"Invalid --book value '{spec}': missing book id.")
        if cutoff.strip():
            try:
                offsets[book_id] = int(cutoff)
            except ValueError:
                raise ValueError(
                    f"Invalid --book value '{spec}': cutoff must be an integer offset."
                ) from None
        else:
            offsets[book_id] = None
    return offsets
