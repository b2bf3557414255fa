"""Embedding provider capability shared by the local and remote variants."""

from __future__ import annotations

from abc import ABC, abstractmethod

LOCAL_PROVIDER_ID = "local"


class EmbeddingProvider(ABC):
    """Text(s) in, fixed-length unit vector(s) out.

    Attributes:
        provider_id: Label recorded in book meta for vectors this provider
            produced; query and document vectors are only compared when
            their provider ids match.
        batch_size: Preferred number of texts per ``embed`` call.
    """

    provider_id: str = LOCAL_PROVIDER_ID
    batch_size: int = 8

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed document *texts*; one L2-normalised vector per input, in order."""

    @abstractmethod
    async def embed_query(self, text: str) -> list[float]:
        """Embed a search query as an L2-normalised vector."""
