"""bookrag warmup — load the on-device embedding model and show the load log."""

from __future__ import annotations

import asyncio
from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from bookrag.cli.errors import err_model_unreachable
from bookrag.cli.session import load_cfg
from bookrag.embed.model_loader import ModelDebugSnapshot, ModelLoader, ModelLoadError

console = Console()


def warmup_cmd() -> None:
    """Download (if needed) and load the local embedding model."""
    cfg = load_cfg()
    loader = ModelLoader(cfg.model)
    console.print(f"Loading [bold]{cfg.model.name}[/] ({cfg.model.revision})…")
    try:
        asyncio.run(loader.get_pipeline())
    except ModelLoadError as exc:
        _show_events(loader.snapshot())
        console.print(err_model_unreachable(exc))
        raise typer.Exit(1) from exc

    _show_events(loader.snapshot())
    console.print("[green]✓[/] Model ready")


def _show_events(snapshot: ModelDebugSnapshot) -> None:
    table = Table(title=f"Model load log (hosts: {', '.join(snapshot.hosts)})")
    table.add_column("Time", style="dim")
    table.add_column("Event")
    table.add_column("Host")
    table.add_column("Detail", overflow="fold")
    for e in snapshot.events:
        style = "red" if e.type.endswith("failed") else ""
        table.add_row(
            datetime.fromtimestamp(e.time).strftime("%H:%M:%S"),
            f"[{style}]{e.type}[/]" if style else e.type,
            e.host or "",
            e.detail or "",
        )
    console.print(table)
