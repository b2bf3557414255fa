"""bookrag index — embed a book up to a reading position.

The book file is YAML or JSON:

    chapters:
      - title: Chapter 1
        content: "..."

Usage:
  bookrag index book.yaml --book-id moby-dick
  bookrag index book.yaml --book-id moby-dick --to 20000
  bookrag index book.yaml --book-id moby-dick --chapter 3 --chapter-offset 1200
  bookrag index book.yaml --book-id moby-dick --preset openai-small
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Any

import typer
import yaml
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from bookrag.cli.errors import HANDLED_ERRORS, describe_error, err_bad_book_file
from bookrag.cli.session import load_cfg, open_engine
from bookrag.ingest.chunker import (
    Chapter,
    ReadingPosition,
    estimate_safe_offset,
    prepare_chapters,
)

console = Console()


def index_cmd(
    book_file: Annotated[
        Path,
        typer.Argument(help="YAML/JSON file with the book's chapters."),
    ],
    book_id: Annotated[
        str,
        typer.Option("--book-id", "-b", help="Stable identifier for the book."),
    ],
    to: Annotated[
        int | None,
        typer.Option("--to", help="Sanitized offset to index up to (default: whole book)."),
    ] = None,
    chapter: Annotated[
        int | None,
        typer.Option("--chapter", help="Reader's current chapter index (0-based)."),
    ] = None,
    chapter_offset: Annotated[
        int,
        typer.Option("--chapter-offset", help="Reader's raw character offset in --chapter."),
    ] = 0,
    preset: Annotated[
        str | None,
        typer.Option("--preset", "-p", help="Remote embedding preset id (default: local model)."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the index database (created if missing)."),
    ] = None,
) -> None:
    """Index a book incrementally up to a safe reading offset."""
    try:
        chapters = load_chapters(book_file)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        console.print(err_bad_book_file(str(book_file), str(exc)))
        raise typer.Exit(1) from exc

    book = prepare_chapters(chapters)
    if chapter is not None:
        target = estimate_safe_offset(
            book,
            ReadingPosition(chapter_index=chapter, chapter_char_offset=chapter_offset),
            fallback=to if to is not None else 0,
        )
    else:
        target = min(to, book.total_length) if to is not None else book.total_length

    cfg = load_cfg()
    engine = open_engine(cfg, db, must_exist=False)
    try:
        before = engine.get_indexed_up_to(book_id)
        console.print(
            f"Indexing [bold]{book_id}[/] to offset {target:,} of {book.total_length:,} "
            f"([dim]{preset or 'local model'}[/])"
        )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            transient=True,
            console=console,
        ) as prog:
            task = prog.add_task("Embedding…", total=1.0)

            def _on_progress(fraction: float) -> None:
                prog.update(task, completed=fraction)

            asyncio.run(
                engine.ensure_indexed(
                    book_id, chapters, target, on_progress=_on_progress, preset_id=preset
                )
            )
    except HANDLED_ERRORS as exc:
        console.print(describe_error(exc))
        raise typer.Exit(1) from exc
    else:
        after = engine.get_indexed_up_to(book_id)
        meta = engine.store.get_meta(book_id)
        chunks = meta.chunk_count if meta else 0
        if after == before and before >= target:
            console.print(f"  [green]✓[/] Already indexed up to {after:,}")
        else:
            console.print(f"  [green]✓[/] Indexed up to {after:,} ({chunks:,} chunks stored)")
    finally:
        engine.close()


def load_chapters(path: Path) -> list[Chapter]:
    """Read chapters from a YAML/JSON book file.

    Accepts either ``{chapters: [...]}`` or a bare list of chapter mappings.

    Raises:
        ValueError: If the document has no usable chapter list.
    """
    data: Any = yaml.safe_load(path.read_text(encoding="utf-8"))
    raw = data.get("chapters") if isinstance(data, dict) else data
    if not isinstance(raw, list) or not raw:
        raise ValueError("no 'chapters' list found")
    chapters: list[Chapter] = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ValueError(f"chapter {i} is not a mapping")
        chapters.append(
            Chapter(title=str(item.get("title") or ""), content=str(item.get("content") or ""))
        )
    return chapters
