"""Tests for the query orchestrator."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import numpy as np
import pytest
from helpers import TEST_DIMENSION, TEST_MODEL, BackendFactory, bow_vector

from vaultrank.config.models import EmbeddingConfig, SchedulerConfig
from vaultrank.core.errors import ShardMismatch, VaultRankError
from vaultrank.documents.parsing import build_embed_text
from vaultrank.embedding.scheduler import InferenceScheduler
from vaultrank.embedding.worker import EmbeddingWorker
from vaultrank.graph.links import LinkGraph
from vaultrank.index.keyword import KeywordIndex
from vaultrank.index.store import VectorIndexStore
from vaultrank.search.fusion import SearchSettings
from vaultrank.search.orchestrator import QueryState, SearchOrchestrator

NOTES = {
    "alpha.md": ("Alpha", "gardening in early spring"),
    "beta.md": ("Beta", "spring cleaning checklist"),
    "gamma.md": ("Gamma", "sourdough baking notes"),
}


class Recorder:
    """Stands in for asyncio.sleep and the index-fault hook."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self.faults: list[VaultRankError] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)

    def fault(self, error: VaultRankError) -> None:
        self.faults.append(error)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


def fill_indexes(store: VectorIndexStore, keyword: KeywordIndex, *, vectors: bool) -> None:
    store.configure(TEST_MODEL, TEST_DIMENSION)
    for doc_id, (title, body) in NOTES.items():
        if vectors:
            vec = bow_vector(build_embed_text(title, body))
            store.upsert(doc_id, TEST_MODEL, vec / np.linalg.norm(vec), doc_id)
        keyword.stage_document(doc_id, title, body)
    keyword.commit_staged()


@asynccontextmanager
async def orchestrator_for(
    tmp_path: Path,
    recorder: Recorder,
    factory: BackendFactory,
    *,
    configure: bool = True,
    populate_vectors: bool = True,
) -> AsyncIterator[SearchOrchestrator]:
    store = VectorIndexStore(tmp_path)
    keyword = KeywordIndex(tmp_path)
    keyword.open()
    fill_indexes(store, keyword, vectors=populate_vectors)

    scheduler = InferenceScheduler(
        EmbeddingWorker(EmbeddingConfig(model=TEST_MODEL), backend_factory=factory),
        SchedulerConfig(),
    )
    await scheduler.start()
    if configure:
        await scheduler.configure("local", TEST_MODEL)
    try:
        yield SearchOrchestrator(
            store=store,
            keyword=keyword,
            graph=LinkGraph(),
            scheduler=scheduler,
            on_index_fault=recorder.fault,
            sleep=recorder.sleep,
        )
    finally:
        await scheduler.stop()


class TestRanking:
    @pytest.mark.asyncio
    async def test_hybrid_results(self, tmp_path: Path, recorder: Recorder) -> None:
        async with orchestrator_for(tmp_path, recorder, BackendFactory()) as orch:
            out = await orch.search("spring gardening", SearchSettings())

        assert out.state is QueryState.RANKED
        assert out.degraded_reason is None
        assert out.results[0].doc_id == "alpha.md"
        assert "gamma.md" not in [r.doc_id for r in out.results]
        assert out.results[0].vector_similarity is not None
        assert out.results[0].lexical_score is not None

    @pytest.mark.asyncio
    async def test_paths_restrict_candidates(self, tmp_path: Path, recorder: Recorder) -> None:
        async with orchestrator_for(tmp_path, recorder, BackendFactory()) as orch:
            out = await orch.search("spring", SearchSettings(), paths=["beta.md"])

        assert [r.doc_id for r in out.results] == ["beta.md"]


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_failure_retried_with_backoff(
        self, tmp_path: Path, recorder: Recorder
    ) -> None:
        factory = BackendFactory(fail_embed=1)
        async with orchestrator_for(tmp_path, recorder, factory) as orch:
            out = await orch.search("spring gardening", SearchSettings(embed_retry_delay_sec=0.1))

        assert recorder.delays == [0.1]
        assert out.degraded_reason is None
        assert out.results[0].vector_similarity is not None

    @pytest.mark.asyncio
    async def test_exhausted_retries_degrade_to_keywords(
        self, tmp_path: Path, recorder: Recorder
    ) -> None:
        factory = BackendFactory(fail_embed=10)
        settings = SearchSettings(embed_retries=2, embed_retry_delay_sec=0.1)
        async with orchestrator_for(tmp_path, recorder, factory) as orch:
            out = await orch.search("spring gardening", settings)

        assert recorder.delays == [0.1, 0.2]
        assert out.degraded_reason is not None
        assert out.state is QueryState.RANKED
        assert {r.doc_id for r in out.results} >= {"alpha.md"}
        assert all(r.vector_similarity is None for r in out.results)


class TestDegradedMode:
    @pytest.mark.asyncio
    async def test_no_model_answers_from_keywords(self, tmp_path: Path, recorder: Recorder) -> None:
        async with orchestrator_for(tmp_path, recorder, BackendFactory(), configure=False) as orch:
            out = await orch.search("sourdough", SearchSettings())

        assert out.degraded_reason == "no embedding model configured"
        assert [r.doc_id for r in out.results] == ["gamma.md"]
        assert recorder.faults == []

    @pytest.mark.asyncio
    async def test_missing_shard_reports_fault(self, tmp_path: Path, recorder: Recorder) -> None:
        async with orchestrator_for(
            tmp_path, recorder, BackendFactory(), populate_vectors=False
        ) as orch:
            out = await orch.search("sourdough", SearchSettings())

        assert out.degraded_reason is not None
        assert len(recorder.faults) == 1
        assert isinstance(recorder.faults[0], ShardMismatch)
        assert [r.doc_id for r in out.results] == ["gamma.md"]


class TestSupersede:
    @pytest.mark.asyncio
    async def test_newer_query_supersedes_older(self, tmp_path: Path, recorder: Recorder) -> None:
        gate = threading.Event()
        factory = BackendFactory(gate=gate)
        async with orchestrator_for(tmp_path, recorder, factory) as orch:
            first = asyncio.create_task(orch.search("spring", SearchSettings()))
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 2.0
            while orch.scheduler.status.in_flight == 0:
                assert loop.time() < deadline
                await asyncio.sleep(0.005)
            second = asyncio.create_task(orch.search("sourdough", SearchSettings()))
            await asyncio.sleep(0)
            gate.set()

            older = await first
            newer = await second

        assert older.superseded
        assert older.results == []
        assert not newer.superseded
        assert newer.results[0].doc_id == "gamma.md"
