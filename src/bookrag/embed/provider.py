"""On-device embedding provider and the provider factory."""

from __future__ import annotations

import asyncio
from typing import Any

from bookrag.db.vectors import l2_normalize
from bookrag.embed.base import LOCAL_PROVIDER_ID, EmbeddingProvider
from bookrag.embed.model_loader import ModelLoader
from bookrag.embed.remote import ApiConfig, RemoteEmbeddingProvider

# E5 models are trained with asymmetric prefixes.
DOCUMENT_PREFIX = "passage: "
QUERY_PREFIX = "query: "


class LocalEmbeddingProvider(EmbeddingProvider):
    """Embed with the sentence-transformers model obtained from a ModelLoader.

    Texts are encoded one at a time in a worker thread so the event loop
    stays responsive during inference.
    """

    def __init__(self, loader: ModelLoader, batch_size: int = 8) -> None:
        self.loader = loader
        self.provider_id = LOCAL_PROVIDER_ID
        self.batch_size = batch_size

    async def _encode(self, text: str) -> list[float]:
        pipeline = await self.loader.get_pipeline()
        vector: Any = await asyncio.to_thread(
            pipeline.encode,
            text,
            normalize_embeddings=True,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return l2_normalize(vector)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [await self._encode(f"{DOCUMENT_PREFIX}{text}") for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return await self._encode(f"{QUERY_PREFIX}{text}")


def create_provider(
    loader: ModelLoader,
    preset_id: str | None = None,
    api_config: ApiConfig | None = None,
    *,
    local_batch_size: int = 8,
    remote_batch_size: int = 2048,
) -> EmbeddingProvider:
    """Return the local provider when *api_config* is None, else a remote one.

    The remote provider records *preset_id* as its provider id.
    """
    if api_config is None:
        return LocalEmbeddingProvider(loader, batch_size=local_batch_size)
    return RemoteEmbeddingProvider(
        api_config,
        provider_id=preset_id or api_config.model,
        batch_size=remote_batch_size,
    )
