"""High-level orchestration of the retrieval engine.

This module implements the IndexCoordinator - the entry point for all index
operations. It owns the vector store, keyword index, link graph, inference
scheduler and query orchestrator, and enforces these invariants:

- write_lock: only ONE writer stages or applies index changes at a time;
  a model switch or full rebuild holds it for its whole duration
- embedding results are applied in fingerprint order: a result for an
  outdated fingerprint, or from a model session that has since been
  replaced, is discarded
- a document whose fingerprint is unchanged is never re-embedded

Keyword postings and graph edges are updated synchronously when a change is
staged; embeddings are requested at low priority and written back when the
scheduler resolves them.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import time
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import structlog

from vaultrank.config.models import VaultRankConfig
from vaultrank.core.errors import (
    IndexCorruption,
    InferenceError,
    ModelUnavailable,
    QueueFull,
    RebuildFailed,
    ShardMismatch,
    VaultRankError,
)
from vaultrank.documents.model import ChangeEvent, ChangeKind, DocumentSource
from vaultrank.documents.parsing import build_embed_text, normalize_path, parse_document
from vaultrank.embedding.protocol import ConfigureOutput, EmbedOutput, Priority
from vaultrank.embedding.registry import Provider, TextKind
from vaultrank.embedding.scheduler import InferenceScheduler, SchedulerStatus
from vaultrank.embedding.worker import EmbeddingWorker
from vaultrank.graph.links import LinkGraph, Neighbor
from vaultrank.index.keyword import KeywordIndex
from vaultrank.index.store import EmbeddingRecord, ShardInfo, VectorHit, VectorIndexStore
from vaultrank.search.fusion import SearchSettings
from vaultrank.search.orchestrator import SearchOrchestrator, SearchResults

log = structlog.get_logger()

MANIFEST_FILE = "documents.json"
GRAPH_FILE = "graph.json"
MANIFEST_VERSION = 1


@dataclass
class DocumentState:
    """What the index last saw of a document."""

    fingerprint: str
    mtime: float | None = None
    size: int | None = None
    revision: int = 0
    empty: bool = False


@dataclass
class IndexStats:
    """Statistics from an indexing operation."""

    documents_processed: int = 0
    documents_added: int = 0
    documents_updated: int = 0
    documents_removed: int = 0
    embeddings_written: int = 0
    embeddings_skipped: int = 0
    embeddings_discarded: int = 0
    embeddings_failed: int = 0
    deferred: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


@dataclass
class IndexStatus:
    documents: int
    active_shard: ShardInfo | None
    shards: list[ShardInfo]
    keyword_documents: int
    graph_nodes: int
    graph_edges: int
    scheduler: SchedulerStatus
    needs_rebuild: bool
    rebuilding: bool
    model_error: str | None = None


@dataclass
class _EmbedJob:
    doc_id: str
    text: str
    fingerprint: str
    revision: int


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data))
    os.replace(tmp, path)


class IndexCoordinator:
    """
    High-level orchestration with serialization guarantees.

    Usage::

        coordinator = IndexCoordinator(source, index_path, config)
        await coordinator.open()
        stats = await coordinator.scan()

        results = await coordinator.search("query")

        await coordinator.apply_changes([ChangeEvent(ChangeKind.MODIFIED, "a.md")])
        await coordinator.close()
    """

    def __init__(
        self,
        source: DocumentSource,
        index_path: Path,
        config: VaultRankConfig | None = None,
        *,
        scheduler: InferenceScheduler | None = None,
    ) -> None:
        self.source = source
        self.index_path = Path(index_path)
        self.index_path.mkdir(parents=True, exist_ok=True)
        self.config = config or VaultRankConfig()

        self.store = VectorIndexStore(self.index_path)
        self.keyword = KeywordIndex(self.index_path)
        self.graph = LinkGraph(self.config.graph)
        self.scheduler = scheduler or InferenceScheduler(
            EmbeddingWorker(self.config.embedding),
            self.config.scheduler,
            quantized=self.config.embedding.quantized,
        )
        self.orchestrator = SearchOrchestrator(
            store=self.store,
            keyword=self.keyword,
            graph=self.graph,
            scheduler=self.scheduler,
            source=self.source,
            on_index_fault=self._on_index_fault,
        )

        self._manifest: dict[str, DocumentState] = {}
        self._next_revision = 1
        self._write_lock = asyncio.Lock()
        self._heal_task: asyncio.Task[None] | None = None
        self._rebuilding = False
        self._model_error: str | None = None
        self._opened = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        """Load persisted state and bring up the embedding backend.

        Corrupt or missing index data is never fatal: the affected part is
        reset and rebuilt from source documents by the next scan, or in the
        background on the next query.
        """
        if self._opened:
            return
        await self.scheduler.start()
        self._load_local_state()

        try:
            self.keyword.open()
        except IndexCorruption as e:
            log.warning("coordinator.keyword_reset", error=e.message)
            self._manifest.clear()

        try:
            self.store.load()
        except IndexCorruption as e:
            log.warning("coordinator.store_reset", error=e.message)

        emb = self.config.embedding
        try:
            output = await self.scheduler.configure(
                emb.provider,
                emb.model,
                num_threads=emb.threads,
                simd=emb.simd,
                quantized=emb.quantized,
                dimension=emb.dimension,
            )
        except ModelUnavailable as e:
            # Keyword + graph search still works without vectors
            self._model_error = e.message
            log.error("coordinator.model_unavailable", model=emb.model, error=e.message)
        else:
            self._model_error = None
            self.store.configure(output.model_id, output.dimension)

        self._opened = True
        log.info(
            "coordinator.opened",
            documents=len(self._manifest),
            active_shard=self.store.active_model,
            needs_rebuild=self.store.needs_rebuild,
        )

    async def close(self) -> None:
        if self._heal_task is not None and not self._heal_task.done():
            self._heal_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heal_task
        async with self._write_lock:
            self.store.flush()
            self._save_local_state()
        await self.scheduler.stop()
        self._opened = False
        log.info("coordinator.closed")

    @property
    def vectors_available(self) -> bool:
        return self.scheduler.active_model is not None

    # =========================================================================
    # Indexing
    # =========================================================================

    async def scan(self) -> IndexStats:
        """Reconcile the index with every document the source lists.

        Unchanged documents are detected by (mtime, size) and skipped.
        Records of documents that no longer exist are pruned.
        """
        start = time.monotonic()
        live = sorted(normalize_path(d) for d in self.source.list_documents())
        live_set = set(live)
        model = self.scheduler.active_model

        changed: list[str] = []
        for doc_id in live:
            state = self._manifest.get(doc_id)
            stat = self.source.stat(doc_id)
            if state is None or stat is None or (state.mtime, state.size) != (stat.mtime, stat.size):
                changed.append(doc_id)
            elif (
                model is not None
                and not state.empty
                and not self.store.needs_rebuild
                and self._stored_fingerprint(doc_id, model) != state.fingerprint
            ):
                changed.append(doc_id)

        removed = sorted(set(self._manifest) - live_set)
        events = [ChangeEvent(ChangeKind.MODIFIED, d) for d in changed]
        events += [ChangeEvent(ChangeKind.DELETED, d) for d in removed]

        stats = await self.apply_changes(events)

        async with self._write_lock:
            pruned = self.store.prune_orphans(live_set)
            if pruned:
                self.store.flush()

        if model is not None and self.store.needs_rebuild:
            await self.rebuild()

        stats.duration_seconds = time.monotonic() - start
        log.info(
            "coordinator.scan_complete",
            documents=len(live),
            changed=len(changed),
            removed=len(removed),
            embedded=stats.embeddings_written,
            elapsed_ms=round(stats.duration_seconds * 1000),
        )
        return stats

    async def apply_changes(self, events: Sequence[ChangeEvent]) -> IndexStats:
        """Apply change notifications: stage text-derived data, then embed.

        Documents whose embedding could not be requested (queue saturated,
        model reconfiguring) are returned in ``stats.deferred`` so the
        caller can resubmit them later.
        """
        start = time.monotonic()
        stats = IndexStats()

        async with self._write_lock:
            jobs = self._stage_changes(events, stats)
            self.keyword.commit_staged()

        # Without a usable shard the next rebuild embeds these from the manifest
        if jobs and self.vectors_available and not self.store.needs_rebuild:
            await self._embed_jobs(jobs, stats)

        async with self._write_lock:
            self.store.flush()
            self._save_local_state()

        stats.duration_seconds = time.monotonic() - start
        return stats

    def _stage_changes(self, events: Sequence[ChangeEvent], stats: IndexStats) -> list[_EmbedJob]:
        """Synchronous part of change handling. Must hold write_lock."""
        jobs: dict[str, _EmbedJob] = {}
        model = self.scheduler.active_model

        for event in events:
            doc_id = normalize_path(event.doc_id)
            stats.documents_processed += 1

            if event.kind is ChangeKind.RENAMED and event.old_id:
                old_id = normalize_path(event.old_id)
                jobs.pop(old_id, None)
                self._remove_document(old_id, stats, rename_to=doc_id)

            if event.kind is ChangeKind.DELETED:
                jobs.pop(doc_id, None)
                self._remove_document(doc_id, stats)
                continue

            try:
                content = self.source.read_content(doc_id)
            except FileNotFoundError:
                jobs.pop(doc_id, None)
                self._remove_document(doc_id, stats)
                continue

            doc = parse_document(doc_id, content, self.source.stat(doc_id))
            previous = self._manifest.get(doc_id)
            if previous is None:
                stats.documents_added += 1
            else:
                stats.documents_updated += 1

            self.graph.update_document(doc)

            if doc.is_empty:
                # Graph only: an empty note has nothing to match or embed
                self.keyword.stage_remove(doc_id)
                self.store.delete(doc_id)
                self._manifest[doc_id] = DocumentState(
                    fingerprint=doc.fingerprint,
                    mtime=doc.stat.mtime if doc.stat else None,
                    size=doc.stat.size if doc.stat else None,
                    revision=previous.revision if previous else 0,
                    empty=True,
                )
                jobs.pop(doc_id, None)
                continue

            self.keyword.stage_document(doc_id, doc.title, doc.body)

            unchanged = (
                previous is not None
                and previous.fingerprint == doc.fingerprint
                and model is not None
                and self._stored_fingerprint(doc_id, model) == doc.fingerprint
            )
            if unchanged:
                assert previous is not None
                revision = previous.revision
                stats.embeddings_skipped += 1
                jobs.pop(doc_id, None)
            else:
                revision = self._next_revision
                self._next_revision += 1
                jobs[doc_id] = _EmbedJob(
                    doc_id=doc_id,
                    text=build_embed_text(doc.title, doc.body),
                    fingerprint=doc.fingerprint,
                    revision=revision,
                )

            self._manifest[doc_id] = DocumentState(
                fingerprint=doc.fingerprint,
                mtime=doc.stat.mtime if doc.stat else None,
                size=doc.stat.size if doc.stat else None,
                revision=revision,
            )

        return list(jobs.values())

    def _remove_document(self, doc_id: str, stats: IndexStats, *, rename_to: str | None = None) -> None:
        if rename_to is not None:
            self.graph.rename(doc_id, rename_to)
        else:
            self.graph.remove(doc_id)
        self.keyword.stage_remove(doc_id)
        self.store.delete(doc_id)
        if self._manifest.pop(doc_id, None) is not None:
            stats.documents_removed += 1

    async def _embed_jobs(self, jobs: list[_EmbedJob], stats: IndexStats) -> None:
        """Request embeddings at low priority and apply fresh results."""
        model = self.scheduler.active_model
        assert model is not None
        session = self.scheduler.session
        batch_size = max(self.config.indexer.batch_size, 1)

        batches = [jobs[i : i + batch_size] for i in range(0, len(jobs), batch_size)]
        pending: list[tuple[list[_EmbedJob], asyncio.Future[EmbedOutput]]] = []
        for batch in batches:
            future = await self._submit_with_backoff(batch, model.model_id)
            if future is None:
                stats.deferred.extend(j.doc_id for j in batch)
                continue
            pending.append((batch, future))

        for batch, future in pending:
            try:
                output = await future
            except (InferenceError, ModelUnavailable) as e:
                log.warning(
                    "coordinator.embed_failed",
                    documents=len(batch),
                    error=e.error_name,
                    message=e.message,
                    retryable=e.retryable,
                )
                if e.retryable:
                    stats.deferred.extend(j.doc_id for j in batch)
                else:
                    # Retried by the next scan or an edit of the note
                    stats.embeddings_failed += len(batch)
                continue

            async with self._write_lock:
                self._apply_output(batch, output, session, stats)

    async def _submit_with_backoff(
        self, batch: list[_EmbedJob], model_id: str
    ) -> asyncio.Future[EmbedOutput] | None:
        texts = [j.text for j in batch]
        while True:
            try:
                return self.scheduler.submit(texts, model_id, Priority.LOW, kind=TextKind.DOCUMENT)
            except QueueFull as e:
                log.debug("coordinator.queue_full", depth=e.details.get("depth"))
                await asyncio.sleep(self.config.indexer.queue_full_backoff_sec)
            except ModelUnavailable as e:
                log.info("coordinator.embed_deferred", documents=len(batch), reason=e.message)
                return None

    def _apply_output(
        self,
        batch: list[_EmbedJob],
        output: EmbedOutput,
        session: int,
        stats: IndexStats,
    ) -> None:
        """Write back one batch. Must hold write_lock."""
        if session != self.scheduler.session:
            # The model changed while this batch was in flight
            log.info("coordinator.stale_session_discarded", documents=len(batch))
            stats.embeddings_discarded += len(batch)
            return

        records: list[EmbeddingRecord] = []
        for i, job in enumerate(batch):
            state = self._manifest.get(job.doc_id)
            if state is None or state.fingerprint != job.fingerprint:
                log.debug("coordinator.stale_result_discarded", doc_id=job.doc_id)
                stats.embeddings_discarded += 1
                continue
            records.append(
                EmbeddingRecord(
                    doc_id=job.doc_id,
                    model_id=output.model_id,
                    vector=output.vectors[i],
                    fingerprint=job.fingerprint,
                    token_count=output.token_counts[i],
                    truncated=output.truncated[i],
                    revision=job.revision,
                )
            )
            if output.truncated[i]:
                log.info(
                    "coordinator.document_truncated",
                    doc_id=job.doc_id,
                    tokens=output.token_counts[i],
                )

        try:
            stats.embeddings_written += self.store.upsert_many(records)
        except ShardMismatch as e:
            log.warning("coordinator.upsert_mismatch", message=e.message)
            stats.deferred.extend(r.doc_id for r in records)

    # =========================================================================
    # Model switch and rebuild
    # =========================================================================

    async def switch_model(
        self,
        provider: Provider,
        model_id: str,
        *,
        dimension: int | None = None,
    ) -> ShardInfo | None:
        """Switch the embedding model and rebuild its shard.

        The old shard stays on disk as an inactive shard. Switching back to
        a retained shard re-embeds the documents that changed or appeared
        while it was inactive. If the new model cannot be loaded or its
        rebuild fails, the previous model and shard stay active and the
        error is raised.
        """
        emb = self.config.embedding
        previous = self.scheduler.active_model
        previous_provider = emb.provider

        async with self._write_lock:
            output = await self.scheduler.configure(
                provider,
                model_id,
                num_threads=emb.threads,
                simd=emb.simd,
                quantized=emb.quantized,
                dimension=dimension,
            )
            self.config.embedding = emb.model_copy(
                update={"provider": provider, "model": model_id, "dimension": dimension}
            )
            self._model_error = None
            log.info("coordinator.model_switched", model=model_id, previous=previous and previous.model_id)

            if self.store.configure(output.model_id, output.dimension):
                try:
                    return await self._rebuild_locked(output)
                except RebuildFailed:
                    if previous is not None:
                        await self._restore_model(previous_provider, previous)
                    raise
            jobs = self._manifest_jobs(stale_for=output)

        if jobs:
            stats = IndexStats()
            await self._embed_jobs(jobs, stats)
            async with self._write_lock:
                self.store.flush()
                self._save_local_state()
            log.info(
                "coordinator.shard_reconciled",
                model=output.model_id,
                embedded=stats.embeddings_written,
                deferred=len(stats.deferred),
            )
        return self.store.active_info()

    def _manifest_jobs(self, stale_for: ConfigureOutput | None = None) -> list[_EmbedJob]:
        """Embed jobs for manifest documents.

        With ``stale_for``, only documents whose record under that model is
        missing or carries another fingerprint.
        """
        jobs: list[_EmbedJob] = []
        for doc_id, state in sorted(self._manifest.items()):
            if state.empty:
                continue
            if (
                stale_for is not None
                and self._stored_fingerprint(doc_id, stale_for) == state.fingerprint
            ):
                continue
            try:
                doc = parse_document(doc_id, self.source.read_content(doc_id))
            except FileNotFoundError:
                continue
            jobs.append(
                _EmbedJob(doc_id, build_embed_text(doc.title, doc.body), doc.fingerprint, state.revision)
            )
        return jobs

    async def _restore_model(self, provider: Provider, previous: ConfigureOutput) -> None:
        emb = self.config.embedding
        dimension = previous.dimension
        await self.scheduler.configure(
            provider,
            previous.model_id,
            num_threads=emb.threads,
            simd=emb.simd,
            quantized=emb.quantized,
            dimension=dimension,
        )
        self.config.embedding = emb.model_copy(
            update={"provider": provider, "model": previous.model_id, "dimension": dimension}
        )
        self.store.configure(previous.model_id, dimension)
        log.warning("coordinator.model_restored", model=previous.model_id)

    async def rebuild(self) -> ShardInfo:
        """Re-embed every document into a fresh shard for the active model."""
        model = self.scheduler.active_model
        if model is None:
            raise RebuildFailed.for_model(
                self.config.embedding.model, self.store.active_model, self._model_error or "model not loaded"
            )
        async with self._write_lock:
            return await self._rebuild_locked(model)

    async def reindex_full(self) -> ShardInfo | None:
        """Rebuild every derived structure from source documents."""
        async with self._write_lock:
            self.graph.clear()
            self.keyword.clear()
            self._manifest.clear()
            stats = IndexStats()
            live = [ChangeEvent(ChangeKind.MODIFIED, d) for d in self.source.list_documents()]
            self._stage_changes(live, stats)
            self.keyword.commit_staged()
            self._save_local_state()

            model = self.scheduler.active_model
            if model is None:
                return None
            self.store.configure(model.model_id, model.dimension)
            return await self._rebuild_locked(model)

    async def _rebuild_locked(self, model: ConfigureOutput) -> ShardInfo:
        """Must hold write_lock. Builds the new shard before promoting it."""
        self._rebuilding = True
        try:
            return await self._build_shard(model)
        finally:
            self._rebuilding = False

    async def _build_shard(self, model: ConfigureOutput) -> ShardInfo:
        start = time.monotonic()
        records: list[EmbeddingRecord] = []
        jobs = self._manifest_jobs()

        batch_size = max(self.config.indexer.batch_size, 1)
        try:
            for i in range(0, len(jobs), batch_size):
                batch = jobs[i : i + batch_size]
                while True:
                    try:
                        output = await self.scheduler.embed(
                            [j.text for j in batch], model.model_id, Priority.LOW
                        )
                        break
                    except QueueFull:
                        await asyncio.sleep(self.config.indexer.queue_full_backoff_sec)
                for k, job in enumerate(batch):
                    records.append(
                        EmbeddingRecord(
                            doc_id=job.doc_id,
                            model_id=model.model_id,
                            vector=output.vectors[k],
                            fingerprint=job.fingerprint,
                            token_count=output.token_counts[k],
                            truncated=output.truncated[k],
                            revision=job.revision,
                        )
                    )
        except VaultRankError as e:
            raise RebuildFailed.for_model(model.model_id, self.store.active_model, e.message) from e

        info = self.store.rebuild(model.model_id, model.dimension, records)
        self._save_local_state()
        log.info(
            "coordinator.rebuilt",
            model=model.model_id,
            documents=info.count,
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        return info

    def _on_index_fault(self, error: VaultRankError) -> None:
        """Query-path hook: schedule a background rebuild from source documents."""
        if self._rebuilding or (self._heal_task is not None and not self._heal_task.done()):
            return
        log.warning("coordinator.self_heal_scheduled", error=error.error_name)
        self._heal_task = asyncio.get_running_loop().create_task(self._self_heal())

    async def _self_heal(self) -> None:
        try:
            await self.reindex_full()
        except RebuildFailed as e:
            log.error("coordinator.self_heal_failed", message=e.message)

    async def wait_for_rebuild(self) -> None:
        """Wait for a background self-heal rebuild, if one is running."""
        if self._heal_task is not None:
            await self._heal_task

    def prune_shard(self, model_id: str, dimension: int | None = None) -> bool:
        return self.store.prune_shard(model_id, dimension)

    # =========================================================================
    # Queries
    # =========================================================================

    def settings(self) -> SearchSettings:
        """Immutable snapshot of the current search configuration."""
        return SearchSettings.from_config(self.config.search)

    async def search(
        self,
        query: str,
        settings: SearchSettings | None = None,
        *,
        paths: Iterable[str] | None = None,
    ) -> SearchResults:
        return await self.orchestrator.search(query, settings or self.settings(), paths=paths)

    async def similar(self, doc_id: str, limit: int | None = None) -> list[VectorHit]:
        """Nearest stored neighbours of a document, excluding itself."""
        model = self.scheduler.active_model
        if model is None:
            return []
        doc_id = normalize_path(doc_id)
        record = self.store.get(doc_id, model.model_id, model.dimension)
        if record is None:
            return []
        limit = limit or self.config.search.similar_notes_limit
        try:
            hits = self.store.search(record.vector, model.model_id, limit + 1)
        except ShardMismatch as e:
            self._on_index_fault(e)
            return []
        threshold = self.config.search.min_similarity
        return [h for h in hits if h.doc_id != doc_id and h.score >= threshold][:limit]

    def neighbors(self, doc_id: str) -> list[Neighbor]:
        return self.graph.neighbors(normalize_path(doc_id))

    def status(self) -> IndexStatus:
        return IndexStatus(
            documents=len(self._manifest),
            active_shard=self.store.active_info(),
            shards=self.store.shards(),
            keyword_documents=self.keyword.doc_count(),
            graph_nodes=self.graph.node_count,
            graph_edges=self.graph.edge_count,
            scheduler=self.scheduler.status,
            needs_rebuild=self.store.needs_rebuild,
            rebuilding=self._heal_task is not None and not self._heal_task.done(),
            model_error=self._model_error,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _stored_fingerprint(self, doc_id: str, model: ConfigureOutput) -> str | None:
        record = self.store.get(doc_id, model.model_id, model.dimension)
        return record.fingerprint if record is not None else None

    def _load_local_state(self) -> None:
        manifest_path = self.index_path / MANIFEST_FILE
        graph_path = self.index_path / GRAPH_FILE
        try:
            if manifest_path.exists():
                data = json.loads(manifest_path.read_text())
                if data.get("version") != MANIFEST_VERSION:
                    raise ValueError(f"manifest version {data.get('version')}")
                self._manifest = {
                    doc_id: DocumentState(**entry) for doc_id, entry in data["documents"].items()
                }
                self._next_revision = int(data.get("next_revision", 1))
            if graph_path.exists():
                self.graph = LinkGraph.from_dict(json.loads(graph_path.read_text()), self.config.graph)
                self.orchestrator.graph = self.graph
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning("coordinator.state_reset", error=str(e))
            self._manifest = {}
            self.graph.clear()

    def _save_local_state(self) -> None:
        _write_json_atomic(
            self.index_path / MANIFEST_FILE,
            {
                "version": MANIFEST_VERSION,
                "next_revision": self._next_revision,
                "documents": {d: asdict(s) for d, s in sorted(self._manifest.items())},
            },
        )
        _write_json_atomic(self.index_path / GRAPH_FILE, self.graph.to_dict())
