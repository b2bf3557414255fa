"""Remote embedding provider — batched calls to an embedding API via LiteLLM.

Provider kinds map to LiteLLM routes:

  OPENAI / DEEPSEEK / CUSTOM  OpenAI-style ``POST {endpoint}/embeddings``,
                              bearer auth, items re-ordered by ``index``
  GEMINI                      Gemini batch embed (``batchEmbedContents``)
  CLAUDE                      OpenAI-style body with ``x-api-key`` and
                              ``anthropic-version`` headers

One ``embed`` call is one request. Failures are never retried here and are
never papered over: a rejected call, a wrong item count or a malformed
vector all raise EmbeddingApiError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import litellm

from bookrag.db.vectors import l2_normalize
from bookrag.embed.base import EmbeddingProvider

litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)

_ANTHROPIC_VERSION = "2023-06-01"
_GEMINI_DEFAULT_BASE = "https://generativelanguage.googleapis.com"
_DETAIL_LIMIT = 200


class ProviderKind(str, Enum):
    OPENAI = "OPENAI"
    DEEPSEEK = "DEEPSEEK"
    GEMINI = "GEMINI"
    CLAUDE = "CLAUDE"
    CUSTOM = "CUSTOM"


@dataclass(frozen=True)
class ApiConfig:
    """A fully-specified remote embedding endpoint."""

    provider: ProviderKind
    endpoint: str
    api_key: str = field(repr=False)
    model: str


class EmbeddingApiError(RuntimeError):
    """A remote embedding call failed or returned an unusable payload.

    Attributes:
        status: HTTP status code when the server rejected the call, else None.
        kind: ``"http"`` (call rejected / unreachable), ``"format"``
            (response shape unexpected) or ``"config"`` (preset incomplete).
    """

    def __init__(self, message: str, *, status: int | None = None, kind: str = "http") -> None:
        super().__init__(message)
        self.status = status
        self.kind = kind


@dataclass(frozen=True)
class _Route:
    prefix: str
    anthropic_headers: bool = False
    pass_api_base: bool = True


_ROUTES: dict[ProviderKind, _Route] = {
    ProviderKind.OPENAI: _Route("openai"),
    ProviderKind.DEEPSEEK: _Route("openai"),
    ProviderKind.CUSTOM: _Route("openai"),
    ProviderKind.CLAUDE: _Route("openai", anthropic_headers=True),
    ProviderKind.GEMINI: _Route("gemini", pass_api_base=False),
}


def build_request(api: ApiConfig, texts: list[str]) -> dict[str, Any]:
    """Return the ``litellm.aembedding`` keyword arguments for *texts*."""
    route = _ROUTES[api.provider]
    kwargs: dict[str, Any] = {
        "model": f"{route.prefix}/{api.model.strip()}",
        "input": texts,
        "api_key": api.api_key,
        "num_retries": 0,
    }
    base = (api.endpoint or "").strip().rstrip("/")
    if base and (route.pass_api_base or not base.startswith(_GEMINI_DEFAULT_BASE)):
        kwargs["api_base"] = base
    if route.anthropic_headers:
        kwargs["extra_headers"] = {
            "x-api-key": api.api_key,
            "anthropic-version": _ANTHROPIC_VERSION,
        }
    return kwargs


def _field(item: Any, name: str, default: Any = None) -> Any:
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)


def parse_vectors(response: Any, expected: int) -> list[list[float]]:
    """Extract one unit vector per input from an embedding response.

    Raises:
        EmbeddingApiError: (kind ``"format"``) on a count mismatch, a missing
            or non-numeric vector, or mixed vector lengths.
    """
    items = _field(response, "data")
    if not isinstance(items, list) or len(items) != expected:
        got = len(items) if isinstance(items, list) else "no"
        raise EmbeddingApiError(
            f"Embedding response format unexpected: expected {expected} items, got {got}. "
            "Check that the preset names an embedding model, not a chat model.",
            kind="format",
        )

    def _order(pair: tuple[int, Any]) -> int:
        index = _field(pair[1], "index")
        return index if isinstance(index, int) else pair[0]

    vectors: list[list[float]] = []
    for _, item in sorted(enumerate(items), key=_order):
        raw = _field(item, "embedding")
        if not isinstance(raw, list) or not raw:
            raise EmbeddingApiError("Embedding response item has no embedding array.", kind="format")
        try:
            vectors.append(l2_normalize(raw))
        except (TypeError, ValueError) as exc:
            raise EmbeddingApiError(f"Embedding response vector is malformed: {exc}", kind="format") from exc

    if len({len(v) for v in vectors}) > 1:
        raise EmbeddingApiError("Embedding response mixes vector lengths.", kind="format")
    return vectors


class RemoteEmbeddingProvider(EmbeddingProvider):
    """Embed through a remote API described by an ApiConfig.

    Args:
        api: Endpoint, key, model and provider kind.
        provider_id: Preset id recorded alongside the vectors.
        batch_size: Chunks per request during indexing.
    """

    def __init__(self, api: ApiConfig, provider_id: str, batch_size: int = 2048) -> None:
        self.api = api
        self.provider_id = provider_id
        self.batch_size = batch_size

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if not self.api.model.strip():
            raise EmbeddingApiError(
                f"Embedding preset '{self.provider_id}' does not name a model.", kind="config"
            )

        try:
            response = await litellm.aembedding(**build_request(self.api, texts))
        except Exception as exc:
            status = getattr(exc, "status_code", None)
            detail = str(getattr(exc, "message", None) or exc).strip()[:_DETAIL_LIMIT]
            logger.warning(
                "Embedding API call failed (preset=%s, status=%s): %s",
                self.provider_id, status, detail,
            )
            label = status if status is not None else "no response"
            raise EmbeddingApiError(
                f"Embedding API call failed ({label}): {detail}",
                status=status if isinstance(status, int) else None,
            ) from exc

        return parse_vectors(response, len(texts))

    async def embed_query(self, text: str) -> list[float]:
        return (await self.embed([text]))[0]
