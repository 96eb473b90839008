"""Messages exchanged between the inference scheduler and its worker.

Requests carry an id; terminal responses echo it. Progress notifications
(model download and load) carry no id and are routed separately from
terminal responses.

Wire form::

    {"id": 3, "type": "configure", "numThreads": 2, "simd": true, ...}
    {"id": 4, "type": "embed", "texts": [...], "model": "...", "quantized": true}
    {"id": 4, "status": "success", "output": {"vectors": [...], "tokenCounts": [...]}}
    {"id": 4, "status": "error", "error": {...}}
    {"status": "downloading", "file": "...", "progress": 42.0}
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from vaultrank.core.errors import VaultRankError
from vaultrank.embedding.registry import Provider, TextKind


class MessageType(Enum):
    CONFIGURE = "configure"
    EMBED = "embed"


class ResponseStatus(Enum):
    SUCCESS = "success"
    ERROR = "error"


class ProgressStatus(Enum):
    INITIATE = "initiate"
    DOWNLOADING = "downloading"
    PROGRESS = "progress"
    DONE = "done"
    READY = "ready"


class Priority(Enum):
    """Scheduling lane. HIGH is interactive, LOW is bulk re-embedding."""

    HIGH = 0
    LOW = 1


@dataclass(frozen=True)
class ConfigureRequest:
    """Swap the worker's backend. Runs only while nothing is in flight."""

    id: int
    provider: Provider
    model_id: str
    num_threads: int
    simd: bool
    quantized: bool
    dimension: int | None = None

    type = MessageType.CONFIGURE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "provider": self.provider,
            "model": self.model_id,
            "numThreads": self.num_threads,
            "simd": self.simd,
            "quantized": self.quantized,
            "dimension": self.dimension,
        }


@dataclass(frozen=True)
class EmbedRequest:
    id: int
    texts: tuple[str, ...]
    model_id: str
    kind: TextKind = TextKind.DOCUMENT
    quantized: bool = True

    type = MessageType.EMBED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "texts": list(self.texts),
            "model": self.model_id,
            "kind": self.kind.value,
            "quantized": self.quantized,
        }


@dataclass(frozen=True)
class EmbedOutput:
    """Vectors for one request, L2-normalized float32, one row per input text."""

    vectors: np.ndarray
    token_counts: tuple[int, ...]
    truncated: tuple[bool, ...]
    model_id: str
    artifact: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "vectors": self.vectors.tolist(),
            "tokenCounts": list(self.token_counts),
            "truncated": list(self.truncated),
            "model": self.model_id,
            "artifact": self.artifact,
        }


@dataclass(frozen=True)
class ConfigureOutput:
    model_id: str
    dimension: int
    artifact: str
    quantized: bool


@dataclass(frozen=True)
class WorkerResponse:
    id: int
    status: ResponseStatus
    output: EmbedOutput | ConfigureOutput | None = None
    error: VaultRankError | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "status": self.status.value}
        if isinstance(self.output, EmbedOutput):
            data["output"] = self.output.to_dict()
        elif self.output is not None:
            data["output"] = {
                "model": self.output.model_id,
                "dimension": self.output.dimension,
                "artifact": self.output.artifact,
                "quantized": self.output.quantized,
            }
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


@dataclass(frozen=True)
class ProgressEvent:
    """Unsolicited notification. Has no request id by construction."""

    status: ProgressStatus
    file: str | None = None
    progress: float | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status.value}
        if self.file is not None:
            data["file"] = self.file
        if self.progress is not None:
            data["progress"] = self.progress
        return data


@dataclass
class RequestIdAllocator:
    """Hands out request ids unique among pending requests.

    An id returns to the pool only once its response has been delivered, and
    the lowest free id is reused first.
    """

    _next: int = field(default=1, init=False)
    _free: set[int] = field(default_factory=set, init=False)
    _pending: set[int] = field(default_factory=set, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False)

    def allocate(self) -> int:
        with self._lock:
            if self._free:
                rid = min(self._free)
                self._free.discard(rid)
            else:
                rid = self._next
                self._next += 1
            self._pending.add(rid)
            return rid

    def release(self, rid: int) -> None:
        with self._lock:
            if rid in self._pending:
                self._pending.discard(rid)
                self._free.add(rid)

    @property
    def pending(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._pending)
