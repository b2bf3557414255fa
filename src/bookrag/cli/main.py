"""bookrag CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from bookrag.cli.archive import export_cmd, restore_cmd
from bookrag.cli.index import index_cmd
from bookrag.cli.query import query_cmd
from bookrag.cli.remove import remove_cmd
from bookrag.cli.status import status_cmd
from bookrag.cli.warmup import warmup_cmd

_NOISY_LOGGERS = ("LiteLLM", "httpx", "httpcore", "huggingface_hub", "sentence_transformers")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"bookrag {_installed_version()}")
        raise typer.Exit()


def _installed_version() -> str:
    try:
        return importlib.metadata.version("bookrag")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


app = typer.Typer(
    name="bookrag",
    help=(
        "bookrag — spoiler-safe retrieval over the books you are reading.\n\n"
        "  bookrag index   Embed a book up to your reading position.\n"
        "  bookrag query   Retrieve passages you have already read."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug output to stderr."),
    ] = False,
) -> None:
    """bookrag — spoiler-safe book retrieval."""
    _configure_logging(verbose)


app.command("index")(index_cmd)
app.command("query")(query_cmd)
app.command("status")(status_cmd)
app.command("remove")(remove_cmd)
app.command("export")(export_cmd)
app.command("restore")(restore_cmd)
app.command("warmup")(warmup_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed bookrag version."""
    typer.echo(f"bookrag {_installed_version()}")


if __name__ == "__main__":
    app()
