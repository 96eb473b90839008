"""Sharded vector index store.

One shard per (model, dimensionality) pair, so a model that can emit several
output sizes keeps one shard per size. A shard holds every embedding record
for its key plus metadata (record count, last rebuild). Exactly one shard is
active; inactive shards are kept until pruned so a failed migration can fall
back to them.

Storage: <index>/vectors/
  - active.json                       (pointer to the active shard)
  - shards/<slug>/shard.json          (metadata + current generation)
  - shards/<slug>/records-<gen>.npz   (ids, matrix, fingerprints, ...)

Writes are crash-consistent: a commit writes a new ``records-<gen>.npz``,
then atomically replaces ``shard.json`` to point at it, and only then
deletes older generations. A crash at any point leaves the previously
committed generation readable.

Readers never see a half-applied update: each shard lives in memory as an
immutable snapshot that mutations replace wholesale.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import structlog

from vaultrank.config.constants import SHARD_FORMAT_VERSION
from vaultrank.core.errors import IndexCorruption, RebuildFailed, ShardMismatch

log = structlog.get_logger()

VECTORS_SUBDIR = "vectors"
ACTIVE_FILE = "active.json"
SHARD_META_FILE = "shard.json"


@dataclass(frozen=True)
class EmbeddingRecord:
    """One document's vector under one model."""

    doc_id: str
    model_id: str
    vector: np.ndarray
    fingerprint: str
    token_count: int = 0
    truncated: bool = False
    revision: int = 0


@dataclass(frozen=True)
class VectorHit:
    doc_id: str
    score: float


@dataclass(frozen=True)
class ShardInfo:
    model_id: str
    dimension: int
    count: int
    last_rebuild: float | None
    generation: int
    active: bool


ShardKey = tuple[str, int]
"""(model id, dimensionality)."""


@dataclass(frozen=True)
class _ShardSnapshot:
    """Immutable in-memory shard. Rows of ``matrix`` align with ``ids``."""

    model_id: str
    dimension: int
    ids: tuple[str, ...]
    matrix: np.ndarray
    fingerprints: tuple[str, ...]
    token_counts: tuple[int, ...]
    truncated: tuple[bool, ...]
    revisions: tuple[int, ...]
    last_rebuild: float | None = None
    generation: int = 0
    positions: dict[str, int] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> ShardKey:
        return (self.model_id, self.dimension)

    @classmethod
    def empty(cls, model_id: str, dimension: int, last_rebuild: float | None = None) -> _ShardSnapshot:
        return cls.from_records(model_id, dimension, [], last_rebuild=last_rebuild)

    @classmethod
    def from_records(
        cls,
        model_id: str,
        dimension: int,
        records: list[EmbeddingRecord],
        *,
        last_rebuild: float | None = None,
        generation: int = 0,
    ) -> _ShardSnapshot:
        records = sorted(records, key=lambda r: r.doc_id)
        if records:
            matrix = np.vstack([r.vector.astype(np.float32) for r in records])
        else:
            matrix = np.empty((0, dimension), dtype=np.float32)
        matrix.setflags(write=False)
        ids = tuple(r.doc_id for r in records)
        return cls(
            model_id=model_id,
            dimension=dimension,
            ids=ids,
            matrix=matrix,
            fingerprints=tuple(r.fingerprint for r in records),
            token_counts=tuple(r.token_count for r in records),
            truncated=tuple(r.truncated for r in records),
            revisions=tuple(r.revision for r in records),
            last_rebuild=last_rebuild,
            generation=generation,
            positions={doc_id: i for i, doc_id in enumerate(ids)},
        )

    def record(self, doc_id: str) -> EmbeddingRecord | None:
        i = self.positions.get(doc_id)
        if i is None:
            return None
        return EmbeddingRecord(
            doc_id=doc_id,
            model_id=self.model_id,
            vector=self.matrix[i],
            fingerprint=self.fingerprints[i],
            token_count=self.token_counts[i],
            truncated=self.truncated[i],
            revision=self.revisions[i],
        )

    def records(self) -> list[EmbeddingRecord]:
        return [r for r in (self.record(doc_id) for doc_id in self.ids) if r is not None]

    def replace(
        self,
        upserts: Iterable[EmbeddingRecord] = (),
        removals: Iterable[str] = (),
    ) -> _ShardSnapshot:
        merged = {r.doc_id: r for r in self.records()}
        for doc_id in removals:
            merged.pop(doc_id, None)
        for rec in upserts:
            merged[rec.doc_id] = rec
        return _ShardSnapshot.from_records(
            self.model_id,
            self.dimension,
            list(merged.values()),
            last_rebuild=self.last_rebuild,
            generation=self.generation,
        )


def shard_slug(model_id: str, dimension: int) -> str:
    """Filesystem-safe, collision-free directory name for a shard key."""
    readable = re.sub(r"[^A-Za-z0-9._-]+", "_", model_id).strip("_") or "model"
    digest = hashlib.sha1(f"{model_id}@{dimension}".encode()).hexdigest()[:8]
    return f"{readable}@{dimension}-{digest}"


def _label(key: ShardKey) -> str:
    return f"{key[0]}@{key[1]}"


def _write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2))
    os.replace(tmp, path)


# ===================================================================
# VectorIndexStore
# ===================================================================


class VectorIndexStore:
    """Persistent document-id to vector mapping, sharded per model and dimension."""

    def __init__(self, index_path: Path) -> None:
        self._dir = index_path / VECTORS_SUBDIR
        self._shards_dir = self._dir / "shards"
        self._shards_dir.mkdir(parents=True, exist_ok=True)

        self._shards: dict[ShardKey, _ShardSnapshot] = {}
        self._active: ShardKey | None = None
        self._expected: ShardKey | None = None
        self._dirty: set[ShardKey] = set()
        self._lock = threading.Lock()

    # --- Configuration ---

    def configure(self, model_id: str, dimension: int) -> bool:
        """Declare the model queries will be issued with.

        A retained shard with the same model and dimensionality is
        re-activated as it was: records written while it was inactive are
        missing, so callers reconcile it against their own fingerprints.
        Returns True when a rebuild is needed before vector search can be
        served.
        """
        key = (model_id, dimension)
        with self._lock:
            self._expected = key
            shard = self._shards.get(key)
            if shard is not None and self._active != key:
                self._active = key
                self._write_active()
                log.info("store.shard_reactivated", shard=_label(key), count=len(shard.ids))
            return self.needs_rebuild

    @property
    def needs_rebuild(self) -> bool:
        if self._expected is None:
            return False
        return self._active != self._expected or self._active not in self._shards

    @property
    def active_model(self) -> str | None:
        return self._active[0] if self._active is not None else None

    @property
    def active_key(self) -> ShardKey | None:
        return self._active

    # --- Records ---

    def upsert(
        self,
        doc_id: str,
        model_id: str,
        vector: np.ndarray,
        fingerprint: str,
        *,
        token_count: int = 0,
        truncated: bool = False,
        revision: int = 0,
    ) -> bool:
        """Insert or replace one record. Returns False when nothing changed."""
        record = EmbeddingRecord(
            doc_id=doc_id,
            model_id=model_id,
            vector=np.asarray(vector, dtype=np.float32).reshape(-1),
            fingerprint=fingerprint,
            token_count=token_count,
            truncated=truncated,
            revision=revision,
        )
        return self.upsert_many([record]) == 1

    def upsert_many(self, records: Iterable[EmbeddingRecord]) -> int:
        """Apply a batch of records. Returns how many were written.

        Records go to the shard keyed by their model and vector length. A
        record with the stored fingerprint is a no-op, and one carrying an
        older revision than the stored record is discarded.

        Raises:
            ShardMismatch: a vector's length differs from the dimensionality
                the store is configured or active for under that model.
        """
        by_key: dict[ShardKey, list[EmbeddingRecord]] = {}
        for rec in records:
            by_key.setdefault((rec.model_id, int(rec.vector.shape[0])), []).append(rec)

        written = 0
        with self._lock:
            for key, batch in by_key.items():
                model_id, dimension = key
                shard = self._shards.get(key)
                if shard is None:
                    for known in (self._expected, self._active):
                        if known is not None and known[0] == model_id and known != key:
                            raise ShardMismatch.dimension(model_id, known[1], dimension)
                    shard = _ShardSnapshot.empty(model_id, dimension)

                accepted: dict[str, EmbeddingRecord] = {}
                for rec in batch:
                    current = accepted.get(rec.doc_id) or shard.record(rec.doc_id)
                    if current is not None:
                        if current.fingerprint == rec.fingerprint:
                            continue
                        if current.revision > rec.revision:
                            log.debug(
                                "store.upsert_discarded",
                                doc_id=rec.doc_id,
                                shard=_label(key),
                                stored_revision=current.revision,
                                revision=rec.revision,
                            )
                            continue
                    accepted[rec.doc_id] = rec

                if not accepted and key in self._shards:
                    continue
                self._shards[key] = shard.replace(upserts=accepted.values())
                self._dirty.add(key)
                if self._active is None and self._expected in (None, key):
                    self._active = key
                    self._write_active()
                written += len(accepted)
        return written

    def get(self, doc_id: str, model_id: str, dimension: int | None = None) -> EmbeddingRecord | None:
        key = self._resolve(model_id, dimension)
        shard = self._shards.get(key) if key is not None else None
        return shard.record(doc_id) if shard is not None else None

    def delete(self, doc_id: str) -> bool:
        """Remove a document from every shard."""
        removed = False
        with self._lock:
            for key, shard in list(self._shards.items()):
                if doc_id in shard.positions:
                    self._shards[key] = shard.replace(removals=[doc_id])
                    self._dirty.add(key)
                    removed = True
        return removed

    def prune_orphans(self, live_ids: Iterable[str]) -> int:
        """Drop records whose documents no longer exist. Returns records removed."""
        live = set(live_ids)
        total = 0
        with self._lock:
            for key, shard in list(self._shards.items()):
                orphans = [doc_id for doc_id in shard.ids if doc_id not in live]
                if orphans:
                    self._shards[key] = shard.replace(removals=orphans)
                    self._dirty.add(key)
                    total += len(orphans)
        if total:
            log.info("store.orphans_pruned", count=total)
        return total

    def doc_ids(self, model_id: str, dimension: int | None = None) -> list[str]:
        key = self._resolve(model_id, dimension)
        shard = self._shards.get(key) if key is not None else None
        return list(shard.ids) if shard is not None else []

    # --- Query ---

    def search(self, query_vector: np.ndarray, model_id: str, k: int) -> list[VectorHit]:
        """Top-k records of the active shard by cosine similarity.

        Raises:
            ShardMismatch: ``model_id`` is not the active shard's model, or
                its dimensionality disagrees with the configured model or
                the query.
        """
        active = self._active
        shard = self._shards.get(active) if active is not None else None
        if shard is None or shard.model_id != model_id:
            raise ShardMismatch.inactive(model_id, _label(active) if active else None)

        expected_dim = shard.dimension
        if self._expected is not None and self._expected[0] == model_id:
            expected_dim = self._expected[1]
        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        if shard.dimension != expected_dim:
            raise ShardMismatch.dimension(model_id, shard.dimension, expected_dim)
        if query.shape[0] != shard.dimension:
            raise ShardMismatch.dimension(model_id, shard.dimension, int(query.shape[0]))

        if not shard.ids or k <= 0:
            return []
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            return []

        # Stored rows are L2-normalized
        sims = shard.matrix @ (query / norm)
        k = min(k, len(shard.ids))
        if k < len(shard.ids):
            top = np.argpartition(-sims, k - 1)[:k]
        else:
            top = np.arange(len(shard.ids))
        hits = [VectorHit(shard.ids[i], float(sims[i])) for i in top]
        hits.sort(key=lambda h: (-h.score, h.doc_id))
        return hits

    # --- Shards ---

    def rebuild(
        self,
        model_id: str,
        dimension: int,
        records: Iterable[EmbeddingRecord],
    ) -> ShardInfo:
        """Build a fresh shard for ``(model_id, dimension)`` and make it active.

        The new shard is persisted before it is promoted. If building or
        persisting fails, the previously active shard stays active and
        RebuildFailed is raised.
        """
        key = (model_id, dimension)
        fallback = self._active
        try:
            batch = list(records)
            for rec in batch:
                if rec.model_id != model_id or rec.vector.shape[0] != dimension:
                    raise ShardMismatch.dimension(model_id, dimension, int(rec.vector.shape[0]))
            with self._lock:
                previous = self._shards.get(key)
                generation = previous.generation if previous is not None else 0
                snapshot = _ShardSnapshot.from_records(
                    model_id,
                    dimension,
                    batch,
                    last_rebuild=time.time(),
                    generation=generation,
                )
                snapshot = self._persist(snapshot)
                self._shards[key] = snapshot
                self._dirty.discard(key)
                self._active = key
                self._write_active()
        except Exception as e:
            fallback_label = _label(fallback) if fallback else None
            log.error("store.rebuild_failed", shard=_label(key), fallback=fallback_label, error=str(e))
            raise RebuildFailed.for_model(
                model_id, fallback[0] if fallback else None, str(e)
            ) from e

        if fallback is not None and fallback != key:
            log.info("store.shard_retired", shard=_label(fallback))
        log.info("store.rebuilt", shard=_label(key), count=len(snapshot.ids))
        return self._info(snapshot)

    def prune_shard(self, model_id: str, dimension: int | None = None) -> bool:
        """Delete retained inactive shards of a model.

        Without ``dimension`` every inactive shard of the model goes. The
        active shard is never pruned. Returns True if anything was deleted.
        """
        with self._lock:
            keys = [
                k
                for k in self._shards
                if k[0] == model_id and (dimension is None or k[1] == dimension)
            ]
            if self._active in keys:
                log.warning("store.prune_refused", shard=_label(self._active), reason="active")
                keys.remove(self._active)
            for key in keys:
                del self._shards[key]
                self._dirty.discard(key)
                shutil.rmtree(self._shards_dir / shard_slug(*key), ignore_errors=True)
                log.info("store.shard_pruned", shard=_label(key))
        return bool(keys)

    def shards(self) -> list[ShardInfo]:
        return [self._info(self._shards[k]) for k in sorted(self._shards)]

    def active_info(self) -> ShardInfo | None:
        shard = self._shards.get(self._active) if self._active is not None else None
        return self._info(shard) if shard is not None else None

    # --- Lifecycle ---

    def flush(self) -> int:
        """Persist shards changed since the last flush. Returns shards written."""
        with self._lock:
            dirty = sorted(self._dirty)
            for key in dirty:
                shard = self._shards.get(key)
                if shard is not None:
                    self._shards[key] = self._persist(shard)
            self._dirty.clear()
            if dirty:
                self._write_active()
        if dirty:
            log.debug("store.flushed", shards=[_label(k) for k in dirty])
        return len(dirty)

    def load(self) -> bool:
        """Load every shard from disk. Returns True if an active shard was loaded.

        Unreadable inactive shards are dropped with a warning.

        Raises:
            IndexCorruption: the active shard (or the pointer to it) is
                unreadable. The store is left empty for that model so it
                can be rebuilt from source documents.
        """
        with self._lock:
            self._shards = {}
            self._active = None
            self._dirty.clear()

            active_path = self._dir / ACTIVE_FILE
            wanted: ShardKey | None = None
            if active_path.exists():
                try:
                    pointer = json.loads(active_path.read_text())
                    if pointer.get("version") != SHARD_FORMAT_VERSION:
                        raise ValueError(f"format version {pointer.get('version')}")
                    wanted = (str(pointer["model"]), int(pointer["dim"]))
                except (OSError, ValueError, KeyError, TypeError) as e:
                    self._reset_dir()
                    raise IndexCorruption.unreadable(str(active_path), str(e)) from e

            for shard_dir in sorted(p for p in self._shards_dir.iterdir() if p.is_dir()):
                try:
                    shard = self._read_shard(shard_dir)
                except (OSError, ValueError, KeyError) as e:
                    log.warning("store.shard_unreadable", path=str(shard_dir), error=str(e))
                    shutil.rmtree(shard_dir, ignore_errors=True)
                    continue
                self._shards[shard.key] = shard

            if wanted is None:
                return False
            if wanted not in self._shards:
                raise IndexCorruption.unreadable(
                    str(self._shards_dir / shard_slug(*wanted)), "active shard missing"
                )
            self._active = wanted
            shard = self._shards[wanted]
            log.info("store.loaded", shard=_label(wanted), records=len(shard.ids))
            return True

    def reload(self) -> bool:
        """Reload from disk (alias for load)."""
        return self.load()

    def clear(self) -> None:
        """Wipe all shards (memory + disk)."""
        with self._lock:
            self._shards = {}
            self._active = None
            self._dirty.clear()
            self._reset_dir()

    # --- Internals ---

    def _resolve(self, model_id: str, dimension: int | None) -> ShardKey | None:
        """Shard key for a lookup; the active or expected shard wins without a dimension."""
        if dimension is not None:
            return (model_id, dimension)
        for key in (self._active, self._expected):
            if key is not None and key[0] == model_id and key in self._shards:
                return key
        candidates = sorted(k for k in self._shards if k[0] == model_id)
        return candidates[0] if candidates else None

    def _info(self, shard: _ShardSnapshot) -> ShardInfo:
        return ShardInfo(
            model_id=shard.model_id,
            dimension=shard.dimension,
            count=len(shard.ids),
            last_rebuild=shard.last_rebuild,
            generation=shard.generation,
            active=shard.key == self._active,
        )

    def _reset_dir(self) -> None:
        shutil.rmtree(self._dir, ignore_errors=True)
        self._shards_dir.mkdir(parents=True, exist_ok=True)

    def _write_active(self) -> None:
        path = self._dir / ACTIVE_FILE
        if self._active is None:
            if path.exists():
                path.unlink()
            return
        model_id, dimension = self._active
        _write_json_atomic(
            path, {"version": SHARD_FORMAT_VERSION, "model": model_id, "dim": dimension}
        )

    def _persist(self, shard: _ShardSnapshot) -> _ShardSnapshot:
        """Write a new generation, swap the pointer, then drop old generations."""
        shard_dir = self._shards_dir / shard_slug(shard.model_id, shard.dimension)
        shard_dir.mkdir(parents=True, exist_ok=True)
        generation = shard.generation + 1
        records_name = f"records-{generation}.npz"

        # np.savez appends .npz unless the name already ends with it
        tmp = shard_dir / f"records-{generation}.tmp.npz"
        np.savez(
            str(tmp),
            ids=np.array(shard.ids, dtype=str),
            matrix=shard.matrix,
            fingerprints=np.array(shard.fingerprints, dtype=str),
            token_counts=np.array(shard.token_counts, dtype=np.int64),
            truncated=np.array(shard.truncated, dtype=bool),
            revisions=np.array(shard.revisions, dtype=np.int64),
        )
        os.replace(tmp, shard_dir / records_name)

        meta = {
            "version": SHARD_FORMAT_VERSION,
            "model": shard.model_id,
            "dim": shard.dimension,
            "count": len(shard.ids),
            "last_rebuild": shard.last_rebuild,
            "generation": generation,
            "records": records_name,
        }
        _write_json_atomic(shard_dir / SHARD_META_FILE, meta)

        for old in shard_dir.glob("records-*.npz"):
            if old.name != records_name:
                old.unlink(missing_ok=True)

        return _ShardSnapshot(
            model_id=shard.model_id,
            dimension=shard.dimension,
            ids=shard.ids,
            matrix=shard.matrix,
            fingerprints=shard.fingerprints,
            token_counts=shard.token_counts,
            truncated=shard.truncated,
            revisions=shard.revisions,
            last_rebuild=shard.last_rebuild,
            generation=generation,
            positions=shard.positions,
        )

    def _read_shard(self, shard_dir: Path) -> _ShardSnapshot:
        meta = json.loads((shard_dir / SHARD_META_FILE).read_text())
        if meta.get("version") != SHARD_FORMAT_VERSION:
            raise ValueError(f"format version {meta.get('version')}")
        model_id = meta["model"]
        dimension = int(meta["dim"])

        with np.load(str(shard_dir / meta["records"]), allow_pickle=False) as data:
            ids = [str(x) for x in data["ids"]]
            matrix = data["matrix"].astype(np.float32)
            fingerprints = [str(x) for x in data["fingerprints"]]
            token_counts = [int(x) for x in data["token_counts"]]
            truncated = [bool(x) for x in data["truncated"]]
            revisions = [int(x) for x in data["revisions"]]

        if len(ids) != meta["count"] or (len(ids) and matrix.shape != (len(ids), dimension)):
            raise ValueError(f"record count or shape mismatch in {meta['records']}")

        records = [
            EmbeddingRecord(
                doc_id=ids[i],
                model_id=model_id,
                vector=matrix[i],
                fingerprint=fingerprints[i],
                token_count=token_counts[i],
                truncated=truncated[i],
                revision=revisions[i],
            )
            for i in range(len(ids))
        ]
        return _ShardSnapshot.from_records(
            model_id,
            dimension,
            records,
            last_rebuild=meta.get("last_rebuild"),
            generation=int(meta["generation"]),
        )
