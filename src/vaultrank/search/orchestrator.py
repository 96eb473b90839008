"""Query orchestrator.

Per query: Idle -> EmbeddingQuery -> CandidateGathering -> Scoring -> Ranked.

The query embedding goes through the scheduler's HIGH lane with
last-query-wins cancellation. If the vector side is unavailable (model not
loaded, shard mismatch, corrupt index) the query still answers from the
keyword index and the graph, and the fault is reported to the owner so it
can rebuild in the background.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import structlog

from vaultrank.config.constants import CONTENT_PREVIEW_LENGTH
from vaultrank.core.errors import (
    IndexCorruption,
    InferenceError,
    ModelUnavailable,
    QueueFull,
    ShardMismatch,
    VaultRankError,
)
from vaultrank.core.logging import query_scope
from vaultrank.documents.model import DocumentSource
from vaultrank.documents.parsing import parse_document
from vaultrank.embedding.protocol import Priority
from vaultrank.embedding.registry import TextKind
from vaultrank.embedding.scheduler import InferenceScheduler
from vaultrank.graph.links import LinkGraph
from vaultrank.index.keyword import KeywordHit, KeywordIndex
from vaultrank.index.store import VectorHit, VectorIndexStore
from vaultrank.search.fusion import Candidate, SearchSettings, rank

log = structlog.get_logger()

QUERY_LANE = "interactive-query"


class QueryState(Enum):
    IDLE = "idle"
    EMBEDDING_QUERY = "embedding_query"
    CANDIDATE_GATHERING = "candidate_gathering"
    SCORING = "scoring"
    RANKED = "ranked"


@dataclass(frozen=True)
class RankedResult:
    doc_id: str
    score: float
    similarity: float
    centrality: float
    activation: float
    vector_similarity: float | None
    lexical_score: float | None
    title: str = ""
    excerpt: str = ""


@dataclass
class SearchResults:
    query: str
    results: list[RankedResult] = field(default_factory=list)
    state: QueryState = QueryState.IDLE
    degraded_reason: str | None = None
    superseded: bool = False
    elapsed_ms: int = 0


@dataclass
class SearchOrchestrator:
    """Runs hybrid queries against the shared indexes."""

    store: VectorIndexStore
    keyword: KeywordIndex
    graph: LinkGraph
    scheduler: InferenceScheduler
    source: DocumentSource | None = None
    on_index_fault: Callable[[VaultRankError], None] | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def search(
        self,
        query: str,
        settings: SearchSettings,
        *,
        paths: Iterable[str] | None = None,
    ) -> SearchResults:
        """Rank notes for ``query``; ``paths`` restricts the candidate set."""
        with query_scope():
            return await self._run(query, settings, paths)

    async def _run(
        self, query: str, settings: SearchSettings, paths: Iterable[str] | None
    ) -> SearchResults:
        start = time.monotonic()
        out = SearchResults(query=query)
        allowed = set(paths) if paths is not None else None
        try:
            out.state = QueryState.EMBEDDING_QUERY
            vector, reason = await self._embed_query(query, settings)
            if vector is None and reason == "superseded":
                out.superseded = True
                log.debug("search.superseded", query_len=len(query))
                return out

            out.state = QueryState.CANDIDATE_GATHERING
            vector_hits: list[VectorHit] = []
            if vector is not None:
                vector_hits, shard_reason = self._vector_candidates(vector, settings)
                reason = reason or shard_reason
            keyword_hits = self.keyword.search(
                query, limit=settings.keyword_candidates, paths=allowed
            )
            if allowed is not None:
                vector_hits = [h for h in vector_hits if h.doc_id in allowed]
            out.degraded_reason = reason

            out.state = QueryState.SCORING
            ranked = self._score(vector_hits, keyword_hits, settings)

            out.results = [self._describe(c) for c in ranked]
            out.state = QueryState.RANKED
            return out
        finally:
            out.elapsed_ms = int((time.monotonic() - start) * 1000)
            log.info(
                "search.ranked",
                state=out.state.value,
                results=len(out.results),
                degraded=out.degraded_reason,
                elapsed_ms=out.elapsed_ms,
            )

    # --- Stages ---

    async def _embed_query(
        self, query: str, settings: SearchSettings
    ) -> tuple[np.ndarray | None, str | None]:
        """Query vector, or (None, reason) when the vector side is unavailable."""
        active = self.scheduler.active_model
        if active is None:
            return None, "no embedding model configured"

        attempt = 0
        while True:
            try:
                future = self.scheduler.submit(
                    [query], active.model_id, Priority.HIGH, kind=TextKind.QUERY, lane=QUERY_LANE
                )
                output = await future
            except asyncio.CancelledError:
                task = asyncio.current_task()
                if future.cancelled() and (task is None or not task.cancelling()):
                    return None, "superseded"
                raise
            except InferenceError as e:
                if not e.retryable or attempt >= settings.embed_retries:
                    log.warning("search.embed_failed", error=e.message, attempts=attempt + 1)
                    return None, e.message
                attempt += 1
                delay = settings.embed_retry_delay_sec * (2 ** (attempt - 1))
                log.debug("search.embed_retry", attempt=attempt, delay_sec=delay)
                await self.sleep(delay)
                continue
            except (ModelUnavailable, QueueFull) as e:
                log.warning("search.embed_unavailable", error=e.error_name, message=e.message)
                return None, e.message
            return output.vectors[0], None

    def _vector_candidates(
        self, vector: np.ndarray, settings: SearchSettings
    ) -> tuple[list[VectorHit], str | None]:
        active = self.scheduler.active_model
        assert active is not None
        try:
            return self.store.search(vector, active.model_id, settings.vector_candidates), None
        except (ShardMismatch, IndexCorruption) as e:
            log.warning("search.vector_unavailable", error=e.error_name, message=e.message)
            if self.on_index_fault is not None:
                self.on_index_fault(e)
            return [], e.message

    def _score(
        self,
        vector_hits: list[VectorHit],
        keyword_hits: list[KeywordHit],
        settings: SearchSettings,
    ) -> list[Candidate]:
        centrality = self.graph.centrality()
        return rank(
            vector_hits,
            keyword_hits,
            centrality,
            self.graph.weighted_adjacency,
            settings,
        )

    def _describe(self, cand: Candidate) -> RankedResult:
        title = ""
        excerpt = ""
        if self.source is not None:
            try:
                doc = parse_document(cand.doc_id, self.source.read_content(cand.doc_id))
            except FileNotFoundError:
                log.debug("search.result_missing", doc_id=cand.doc_id)
            else:
                title = doc.title
                excerpt = doc.body.strip()[:CONTENT_PREVIEW_LENGTH]
        return RankedResult(
            doc_id=cand.doc_id,
            score=cand.fused,
            similarity=cand.relevance,
            centrality=cand.centrality,
            activation=cand.activation,
            vector_similarity=cand.vector_similarity,
            lexical_score=cand.lexical_score,
            title=title,
            excerpt=excerpt,
        )
