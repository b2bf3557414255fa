"""bookrag export / restore — whole-index backup.

Usage:
  bookrag export backup.json
  bookrag restore backup.json --yes
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from bookrag.cli.session import load_cfg, open_engine

console = Console()


def export_cmd(
    out: Annotated[Path, typer.Argument(help="JSON file to write.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the index database."),
    ] = None,
) -> None:
    """Write every stored embedding and book meta record to a JSON file."""
    cfg = load_cfg()
    engine = open_engine(cfg, db)
    try:
        payload = engine.export_archive()
    finally:
        engine.close()

    out.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    console.print(
        f"[green]✓[/] Exported {len(payload['embeddings']):,} embeddings and "
        f"{len(payload['meta']):,} books to {out}"
    )


def restore_cmd(
    source: Annotated[Path, typer.Argument(help="JSON file written by 'bookrag export'.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the index database (created if missing)."),
    ] = None,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Replace the whole index with the contents of an export file."""
    try:
        payload = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        console.print(f"[red]Error:[/] Cannot read archive '{source}': {exc}")
        raise typer.Exit(1) from exc

    if not yes:
        console.print("[yellow]Restore replaces every stored index; nothing is merged.[/]")
        if not typer.confirm("Continue?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

    cfg = load_cfg()
    engine = open_engine(cfg, db, must_exist=False)
    try:
        n_embeddings, n_meta = engine.restore_archive(payload)
    finally:
        engine.close()
    console.print(f"[green]✓[/] Restored {n_embeddings:,} embeddings and {n_meta:,} books")
