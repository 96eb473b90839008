"""Embedding backends, model registry and the inference scheduler."""

from vaultrank.embedding.backends import (
    BackendCapability,
    EmbeddingBackend,
    LocalBackend,
    RemoteBackend,
    create_backend,
)
from vaultrank.embedding.protocol import (
    ConfigureOutput,
    EmbedOutput,
    Priority,
    ProgressEvent,
    ProgressStatus,
    RequestIdAllocator,
)
from vaultrank.embedding.registry import (
    ModelSpec,
    OverflowPolicy,
    TextKind,
    list_models,
    resolve_model,
)
from vaultrank.embedding.scheduler import InferenceScheduler, SchedulerState, SchedulerStatus
from vaultrank.embedding.worker import EmbeddingWorker

__all__ = [
    "BackendCapability",
    "ConfigureOutput",
    "EmbedOutput",
    "EmbeddingBackend",
    "EmbeddingWorker",
    "InferenceScheduler",
    "LocalBackend",
    "ModelSpec",
    "OverflowPolicy",
    "Priority",
    "ProgressEvent",
    "ProgressStatus",
    "RemoteBackend",
    "RequestIdAllocator",
    "SchedulerState",
    "SchedulerStatus",
    "TextKind",
    "create_backend",
    "list_models",
    "resolve_model",
]
