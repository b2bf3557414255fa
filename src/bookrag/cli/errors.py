"""bookrag rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Indexing failures in particular must tell apart "model unreachable",
"API key rejected" and "response format unexpected", since each needs a
different fix.

Usage:
    from bookrag.cli.errors import describe_error
    console.print(describe_error(exc))
    raise typer.Exit(1)
"""

from __future__ import annotations

from bookrag.config import ConfigError
from bookrag.embed.model_loader import ModelLoadError
from bookrag.embed.remote import EmbeddingApiError
from bookrag.rag.indexer import ProviderMismatchError

# Exceptions the CLI turns into a message + exit code 1.
HANDLED_ERRORS = (ModelLoadError, EmbeddingApiError, ProviderMismatchError, ConfigError)


def err_no_db(db_path: str = ".bookrag.db") -> str:
    """No vector store found at *db_path*."""
    return (
        f"[red]Error:[/] No index database found at '{db_path}'.\n"
        "  Run:  bookrag index BOOK_FILE --book-id ID"
    )


def err_model_unreachable(exc: ModelLoadError) -> str:
    """Every model host failed."""
    hosts = "\n".join(f"    - {h}" for h in exc.hosts) or "    (none configured)"
    return (
        "[red]Error:[/] Embedding model unreachable.\n"
        f"  Hosts tried:\n{hosts}\n"
        f"  Last error: {exc.last_error}\n"
        "  Check your network, or add a mirror:  export BOOKRAG_RAG_MIRRORS=https://mirror.example/\n"
        "  Run:  bookrag warmup  to see the full load log."
    )


def err_api_key_rejected(status: int) -> str:
    """Remote embedding API refused the credentials."""
    return (
        f"[red]Error:[/] Embedding API key rejected ({status}).\n"
        "  Check the key in the variable named by the preset's key_env,\n"
        "  and that the key has access to the configured embedding model."
    )


def err_response_format(detail: str) -> str:
    """Remote embedding API answered with an unusable payload."""
    return (
        f"[red]Error:[/] Embedding response format unexpected.\n"
        f"  {detail}\n"
        "  Check the preset's provider, endpoint and model (it must be an embedding model)."
    )


def err_api_failed(exc: EmbeddingApiError) -> str:
    """Any other remote embedding failure."""
    return (
        f"[red]Error:[/] {exc}\n"
        "  Check the preset endpoint and your connection, then re-run. Progress so far is kept."
    )


def err_provider_mismatch(exc: ProviderMismatchError) -> str:
    """Book already indexed with a different provider."""
    return (
        f"[red]Error:[/] Book '{exc.book_id}' is indexed with provider '{exc.stored}', "
        f"not '{exc.requested}'.\n"
        f"  Re-embed with the new provider:  bookrag remove {exc.book_id} --yes\n"
        f"  or keep using the old one:        --preset {exc.stored}"
    )


def err_config(exc: ConfigError) -> str:
    return f"[red]Error:[/] {exc}"


def err_bad_book_file(path: str, reason: str) -> str:
    """Book file could not be read as chapters."""
    return (
        f"[red]Error:[/] Cannot read chapters from '{path}': {reason}\n"
        "  Expected YAML or JSON:  chapters: [{title: ..., content: ...}, ...]"
    )


def err_book_not_indexed(book_id: str) -> str:
    return (
        f"[yellow]Not indexed:[/] '{book_id}' has no stored index.\n"
        "  Run:  bookrag status  to see all indexed books."
    )


def describe_error(exc: BaseException) -> str:
    """Map a handled exception to its user-facing message."""
    if isinstance(exc, ModelLoadError):
        return err_model_unreachable(exc)
    if isinstance(exc, EmbeddingApiError):
        if exc.status in (401, 403):
            return err_api_key_rejected(exc.status)
        if exc.kind == "format":
            return err_response_format(str(exc))
        return err_api_failed(exc)
    if isinstance(exc, ProviderMismatchError):
        return err_provider_mismatch(exc)
    if isinstance(exc, ConfigError):
        return err_config(exc)
    return f"[red]Error:[/] {exc}"
