"""Spoiler-safe hybrid retriever over one or more indexed books.

Score per chunk:
  score = dot(query, chunk) + keyword_boost_weight * keyword_overlap_score

Only chunks ending at or before the book's visibility cutoff are scored.
Each book contributes a short list of its best chunks; books are then
interleaved round-robin (best book first) so one highly relevant book
cannot crowd out the others.
"""

from __future__ import annotations

import bisect
import logging
import math
import re
import sqlite3
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from bookrag.config import ConfigError
from bookrag.db.models import StoredEmbedding, TextChunk
from bookrag.db.store import VectorStore
from bookrag.db.vectors import dot
from bookrag.embed.base import LOCAL_PROVIDER_ID, EmbeddingProvider

logger = logging.getLogger(__name__)

TOP_K = 5
DEFAULT_PER_BOOK_TOP_K = 2
KEYWORD_BOOST_WEIGHT = 0.08
MAX_QUERY_TERMS = 12

_CJK = "\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff\U00020000-\U0002ffff"
_TERM_RE = re.compile(rf"[{_CJK}]{{2,}}|[a-z0-9]{{2,}}")

# Raises ConfigError when the id can no longer be resolved to a provider.
ProviderLookup = Callable[[str], EmbeddingProvider]


@dataclass
class RetrieverConfig:
    """Tuning for a retrieval call.

    Attributes:
        top_k: Maximum number of chunks returned overall.
        per_book_top_k: Shortlist size per book. None means ``top_k`` for a
            single-book query and ``default_per_book_top_k`` otherwise.
        keyword_boost_weight: Multiplier applied to the keyword overlap score.
        max_query_terms: Cap on extracted query terms.
        default_per_book_top_k: Multi-book shortlist size when none is given.
    """

    top_k: int = TOP_K
    per_book_top_k: int | None = None
    keyword_boost_weight: float = KEYWORD_BOOST_WEIGHT
    max_query_terms: int = MAX_QUERY_TERMS
    default_per_book_top_k: int = DEFAULT_PER_BOOK_TOP_K


@dataclass
class ScoredEmbedding:
    """A stored chunk with its hybrid score (internal; scores are not returned)."""

    embedding: StoredEmbedding
    score: float


# ------------------------------------------------------------------
# Lexical boost
# ------------------------------------------------------------------


def extract_query_terms(query: str, limit: int = MAX_QUERY_TERMS) -> list[str]:
    """Case-folded CJK or alphanumeric runs of length >= 2, de-duplicated, in order."""
    terms: list[str] = []
    for term in _TERM_RE.findall(query.lower()):
        if term not in terms:
            terms.append(term)
            if len(terms) >= limit:
                break
    return terms


def term_weight(term: str) -> float:
    if len(term) >= 6:
        return 1.2
    if len(term) >= 4:
        return 1.0
    return 0.7


def keyword_overlap_score(text: str, terms: Iterable[str]) -> float:
    """Sum of weights of *terms* that occur in *text* (case-insensitive)."""
    haystack = text.lower()
    return sum(term_weight(t) for t in terms if t in haystack)


# ------------------------------------------------------------------
# Shortlist + blend
# ------------------------------------------------------------------


def select_top(candidates: Iterable[ScoredEmbedding], limit: int) -> list[ScoredEmbedding]:
    """Keep the *limit* best candidates, best first; earlier candidates win ties."""
    if limit <= 0:
        return []
    shortlist: list[tuple[float, int, ScoredEmbedding]] = []
    for seq, candidate in enumerate(candidates):
        entry = (-candidate.score, seq, candidate)
        if len(shortlist) >= limit and entry[:2] >= shortlist[-1][:2]:
            continue
        bisect.insort(shortlist, entry, key=lambda e: e[:2])
        if len(shortlist) > limit:
            shortlist.pop()
    return [candidate for _, _, candidate in shortlist]


def blend_round_robin(
    shortlists: Iterable[list[ScoredEmbedding]], top_k: int
) -> list[ScoredEmbedding]:
    """Interleave per-book shortlists, books ordered by their best score."""
    ordered = sorted((s for s in shortlists if s), key=lambda s: s[0].score, reverse=True)
    blended: list[ScoredEmbedding] = []
    depth = 0
    while len(blended) < top_k:
        took = False
        for shortlist in ordered:
            if depth < len(shortlist):
                blended.append(shortlist[depth])
                took = True
                if len(blended) >= top_k:
                    break
        if not took:
            break
        depth += 1
    return blended


# ------------------------------------------------------------------
# Retrieval
# ------------------------------------------------------------------


def resolve_cutoff(value: float | int | None) -> int | None:
    """Visibility cutoff for a book; None means the whole index is visible."""
    if value is None or not math.isfinite(value):
        return None
    return math.floor(value)


def score_book(
    store: VectorStore,
    book_id: str,
    cutoff: int | None,
    query_vector: list[float],
    terms: list[str],
    config: RetrieverConfig,
    limit: int,
) -> list[ScoredEmbedding]:
    """Shortlist of *book_id*'s best visible chunks for *query_vector*."""

    def candidates() -> Iterable[ScoredEmbedding]:
        for stored in store.get_embeddings_by_book(book_id):
            if cutoff is not None and stored.end_offset > cutoff:
                continue
            score = dot(query_vector, stored.embedding)
            if terms:
                score += config.keyword_boost_weight * keyword_overlap_score(stored.text, terms)
            yield ScoredEmbedding(embedding=stored, score=score)

    return select_top(candidates(), limit)


async def retrieve(
    query: str,
    offsets_by_book: Mapping[str, float | int | None],
    store: VectorStore,
    provider_for: ProviderLookup,
    config: RetrieverConfig | None = None,
) -> list[TextChunk]:
    """Return up to ``top_k`` spoiler-safe chunks for *query*, best-first.

    Args:
        query: Free-text question.
        offsets_by_book: book_id → visibility cutoff (sanitized offset).
            Books with a cutoff <= 0 are skipped; None means unbounded.
        store: Vector store to read from.
        provider_for: Maps a stored provider id to the provider that embeds
            the query for books indexed with it. A ConfigError from it skips
            every book of that provider.
        config: Tuning; defaults to RetrieverConfig().

    Raises:
        Whatever the query embedding raises. Failures reading or scoring a
        single book are logged and that book is skipped.
    """
    config = config or RetrieverConfig()
    if not query.strip() or config.top_k <= 0 or not offsets_by_book:
        return []

    terms = extract_query_terms(query, config.max_query_terms)
    if config.per_book_top_k is not None:
        per_book = config.per_book_top_k
    elif len(offsets_by_book) == 1:
        per_book = config.top_k
    else:
        per_book = config.default_per_book_top_k
    per_book = max(1, per_book)

    # Group books by the provider their vectors came from.
    groups: dict[str, list[tuple[str, int | None]]] = {}
    for book_id, raw_cutoff in offsets_by_book.items():
        cutoff = resolve_cutoff(raw_cutoff)
        if cutoff is not None and cutoff <= 0:
            continue
        try:
            meta = store.get_meta(book_id)
        except sqlite3.Error as exc:
            logger.warning("Skipping book %s during retrieval: %s", book_id, exc)
            continue
        if meta is None or meta.chunk_count <= 0:
            continue
        provider_id = meta.embedding_provider_id or LOCAL_PROVIDER_ID
        groups.setdefault(provider_id, []).append((book_id, cutoff))

    shortlists: list[list[ScoredEmbedding]] = []
    for provider_id, books in groups.items():
        try:
            provider = provider_for(provider_id)
        except ConfigError as exc:
            logger.warning(
                "Skipping %d book(s) indexed with provider %s: %s", len(books), provider_id, exc
            )
            continue
        query_vector = await provider.embed_query(query)
        for book_id, cutoff in books:
            try:
                shortlists.append(
                    score_book(store, book_id, cutoff, query_vector, terms, config, per_book)
                )
            except (sqlite3.Error, ValueError) as exc:
                logger.warning("Skipping book %s during retrieval: %s", book_id, exc)

    return [s.embedding.to_chunk() for s in blend_round_robin(shortlists, config.top_k)]
