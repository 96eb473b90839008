"""GARS score fusion.

Each candidate carries up to three raw signals:

- relevance: vector similarity, adjusted by any lexical match
- centrality: PageRank of the candidate in the link graph
- activation: edge-weighted relevance of the candidate's graph neighbours
  that are themselves candidates

Candidates whose relevance is below ``min_similarity`` are dropped before
anything else is computed, so centrality and activation can never rescue an
irrelevant note. The remaining signals are each divided by their maximum
over the surviving candidates and combined as::

    fused = wSim * relevance + wCentrality * centrality + wActivation * activation

Ties on the fused score are broken by document id.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from vaultrank.config.constants import (
    HYBRID_BOOST_SCORE,
    HYBRID_TITLE_BOOST,
    SCORE_BODY_MATCH,
    SCORE_TITLE_MATCH,
    SEARCH_MAX_LIMIT,
)
from vaultrank.config.models import SearchConfig
from vaultrank.core.errors import ConfigError
from vaultrank.index.keyword import KeywordHit
from vaultrank.index.store import VectorHit


@dataclass(frozen=True)
class SearchSettings:
    """Immutable per-query settings snapshot.

    Built from SearchConfig when a query starts, so a settings change in
    the middle of a query never affects it.
    """

    min_similarity: float = 0.5
    result_limit: int = 25
    similarity_weight: float = 0.6
    centrality_weight: float = 0.2
    activation_weight: float = 0.2
    vector_candidates: int = 500
    keyword_candidates: int = 100
    embed_retries: int = 2
    embed_retry_delay_sec: float = 0.25

    def __post_init__(self) -> None:
        for name in ("similarity_weight", "centrality_weight", "activation_weight"):
            value = getattr(self, name)
            if value < 0:
                raise ConfigError.invalid_value(f"search.{name}", value, "must be >= 0")
        if self.result_limit < 1:
            raise ConfigError.invalid_value("search.result_limit", self.result_limit, "must be >= 1")

    @classmethod
    def from_config(cls, config: SearchConfig) -> SearchSettings:
        return cls(
            min_similarity=config.min_similarity,
            result_limit=min(config.result_limit, SEARCH_MAX_LIMIT),
            similarity_weight=config.similarity_weight,
            centrality_weight=config.centrality_weight,
            activation_weight=config.activation_weight,
            vector_candidates=config.vector_candidates,
            keyword_candidates=config.keyword_candidates,
            embed_retries=config.embed_retries,
            embed_retry_delay_sec=config.embed_retry_delay_sec,
        )


@dataclass
class Candidate:
    """Per-query scoring state for one document. Never persisted."""

    doc_id: str
    vector_similarity: float | None = None
    lexical_score: float | None = None
    title_match: bool = False
    relevance: float = 0.0
    centrality: float = 0.0
    activation: float = 0.0
    fused: float = 0.0


# ===================================================================
# Pipeline stages
# ===================================================================


def gather_candidates(
    vector_hits: Iterable[VectorHit],
    keyword_hits: Iterable[KeywordHit],
) -> dict[str, Candidate]:
    """Union both hit lists, deduplicated by document id."""
    candidates: dict[str, Candidate] = {}
    for hit in vector_hits:
        candidates[hit.doc_id] = Candidate(hit.doc_id, vector_similarity=hit.score)
    for kw in keyword_hits:
        cand = candidates.setdefault(kw.doc_id, Candidate(kw.doc_id))
        cand.lexical_score = kw.score
        cand.title_match = kw.title_match
    return candidates


def score_relevance(candidates: Mapping[str, Candidate]) -> None:
    """Set each candidate's relevance from its vector and lexical signals.

    A missing signal contributes nothing. Lexical scores are first scaled
    by the best lexical score of the query.
    """
    max_lexical = max((c.lexical_score or 0.0 for c in candidates.values()), default=0.0)
    for cand in candidates.values():
        lexical = (cand.lexical_score or 0.0) / max_lexical if max_lexical > 0 else 0.0
        if cand.vector_similarity is not None:
            cand.relevance = cand.vector_similarity
            if cand.lexical_score is not None:
                cand.relevance += HYBRID_BOOST_SCORE * lexical
                if cand.title_match:
                    cand.relevance += HYBRID_TITLE_BOOST
        elif cand.title_match:
            cand.relevance = SCORE_TITLE_MATCH
        else:
            cand.relevance = SCORE_BODY_MATCH * lexical


def apply_threshold(candidates: Mapping[str, Candidate], min_similarity: float) -> dict[str, Candidate]:
    return {d: c for d, c in candidates.items() if c.relevance >= min_similarity}


def score_activation(
    candidates: Mapping[str, Candidate],
    adjacency: Callable[[str], Mapping[str, float]],
) -> None:
    """Activation = sum of edge weight times scaled relevance over candidate neighbours."""
    max_relevance = max((c.relevance for c in candidates.values()), default=0.0)
    if max_relevance <= 0:
        return
    for cand in candidates.values():
        total = 0.0
        for neighbour, weight in adjacency(cand.doc_id).items():
            other = candidates.get(neighbour)
            if other is not None and neighbour != cand.doc_id:
                total += weight * other.relevance / max_relevance
        cand.activation = total


def _scaled(values: list[float]) -> list[float]:
    top = max(values, default=0.0)
    if top <= 0:
        return [0.0 for _ in values]
    return [v / top for v in values]


def fuse(candidates: Mapping[str, Candidate], settings: SearchSettings) -> list[Candidate]:
    """Weighted sum of max-scaled signals, sorted by fused score then id."""
    ordered = sorted(candidates.values(), key=lambda c: c.doc_id)
    relevance = _scaled([c.relevance for c in ordered])
    centrality = _scaled([c.centrality for c in ordered])
    activation = _scaled([c.activation for c in ordered])

    for cand, r, g, a in zip(ordered, relevance, centrality, activation):
        cand.fused = (
            settings.similarity_weight * r
            + settings.centrality_weight * g
            + settings.activation_weight * a
        )
    ordered.sort(key=lambda c: (-c.fused, c.doc_id))
    return ordered[: settings.result_limit]


def rank(
    vector_hits: Iterable[VectorHit],
    keyword_hits: Iterable[KeywordHit],
    centrality: Mapping[str, float],
    adjacency: Callable[[str], Mapping[str, float]],
    settings: SearchSettings,
) -> list[Candidate]:
    """Full GARS pipeline: gather, relevance, threshold, graph signals, fuse."""
    candidates = gather_candidates(vector_hits, keyword_hits)
    score_relevance(candidates)
    candidates = apply_threshold(candidates, settings.min_similarity)
    for cand in candidates.values():
        cand.centrality = centrality.get(cand.doc_id, 0.0)
    score_activation(candidates, adjacency)
    return fuse(candidates, settings)
