"""Deterministic test doubles shared across the test suite.

The bag-of-words backend stands in for a real embedding model so tests
never download weights and similarities are predictable.
"""

from __future__ import annotations

import threading
import zlib
from collections.abc import Callable
from pathlib import Path
from typing import Any

import numpy as np

from vaultrank.config.models import (
    EmbeddingConfig,
    IndexerConfig,
    SchedulerConfig,
    SearchConfig,
    VaultRankConfig,
)
from vaultrank.core.errors import InferenceError, ModelUnavailable
from vaultrank.embedding.backends import BackendCapability, EmbeddingBackend
from vaultrank.embedding.protocol import ProgressEvent, ProgressStatus
from vaultrank.embedding.registry import ModelSpec, OverflowPolicy, TextKind
from vaultrank.embedding.tokenization import TokenFit
from vaultrank.index.keyword import tokenize

TEST_MODEL = "test/bag-of-words"
TEST_DIMENSION = 4096


class WhitespaceTokenizer:
    """One token per whitespace-separated word."""

    def fit(self, text: str, max_tokens: int) -> TokenFit:
        words = text.split()
        if len(words) <= max_tokens:
            return TokenFit(text=text, token_count=len(words), truncated=False)
        return TokenFit(text=" ".join(words[:max_tokens]), token_count=max_tokens, truncated=True)


def make_spec(
    model_id: str = TEST_MODEL,
    dimension: int = TEST_DIMENSION,
    *,
    max_tokens: int = 512,
    overflow: OverflowPolicy = OverflowPolicy.TRUNCATE,
) -> ModelSpec:
    return ModelSpec(
        model_id=model_id,
        provider="local",
        dimension=dimension,
        max_tokens=max_tokens,
        overflow=overflow,
        tokenizer="whitespace",
        quantized_artifacts=(f"{model_id}-q",),
    )


def bow_vector(text: str, dimension: int = TEST_DIMENSION) -> np.ndarray:
    vec = np.zeros(dimension, dtype=np.float32)
    for token in tokenize(text):
        vec[zlib.crc32(token.encode()) % dimension] += 1.0
    if not vec.any():
        vec[0] = 1.0
    return vec


class BagOfWordsBackend(EmbeddingBackend):
    """Hashes word counts into a fixed-size vector.

    Texts sharing words get positive cosine similarity, unrelated texts
    (almost always) zero. ``gate`` blocks inference until set. With
    ``reject_embed`` every request fails permanently, as a remote service
    answering 400 would.
    """

    capability = BackendCapability.LOCAL_INFERENCE

    def __init__(
        self,
        spec: ModelSpec,
        *,
        fail_load: bool = False,
        fail_embed: int = 0,
        reject_embed: bool = False,
        gate: threading.Event | None = None,
    ) -> None:
        super().__init__(spec, WhitespaceTokenizer())
        self.fail_load = fail_load
        self.fail_embed = fail_embed
        self.reject_embed = reject_embed
        self.gate = gate
        self.calls: list[list[str]] = []

    def load(self, on_progress: Callable[[ProgressEvent], None] | None = None) -> None:
        if self.fail_load:
            raise ModelUnavailable.not_loaded(self.model_id, "test backend refused to load")
        if on_progress is not None:
            on_progress(ProgressEvent(ProgressStatus.INITIATE, file=self.model_id))
            on_progress(ProgressEvent(ProgressStatus.READY, file=self.model_id))
        self._artifact = f"{self.model_id}-q"

    def _embed_texts(self, texts: list[str], kind: TextKind) -> np.ndarray:  # noqa: ARG002
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        self.calls.append(list(texts))
        if self.reject_embed:
            raise InferenceError.failed(self.model_id, "request rejected", retryable=False)
        if self.fail_embed > 0:
            self.fail_embed -= 1
            raise RuntimeError("simulated runtime failure")
        return np.stack([bow_vector(t, self.dimension) for t in texts])


class BackendFactory:
    """Backend factory for EmbeddingWorker that remembers what it built."""

    def __init__(self, **backend_kwargs: Any) -> None:
        self.backend_kwargs = backend_kwargs
        self.max_tokens = 512
        self.overflow = OverflowPolicy.TRUNCATE
        self.fail_models: set[str] = set()
        self.built: list[BagOfWordsBackend] = []

    def __call__(self, config: EmbeddingConfig) -> BagOfWordsBackend:
        spec = make_spec(
            config.model,
            config.dimension or TEST_DIMENSION,
            max_tokens=self.max_tokens,
            overflow=self.overflow,
        )
        backend = BagOfWordsBackend(
            spec, fail_load=config.model in self.fail_models, **self.backend_kwargs
        )
        self.built.append(backend)
        return backend

    @property
    def latest(self) -> BagOfWordsBackend:
        return self.built[-1]

    @property
    def embed_calls(self) -> list[list[str]]:
        return [call for backend in self.built for call in backend.calls]


def make_config(**sections: Any) -> VaultRankConfig:
    """Test config: fake model, fast maintenance timings."""
    defaults: dict[str, Any] = {
        "embedding": EmbeddingConfig(model=TEST_MODEL),
        "indexer": IndexerConfig(debounce_sec=0.05, batch_size=4, queue_full_backoff_sec=0.01),
        "scheduler": SchedulerConfig(),
        "search": SearchConfig(),
    }
    defaults.update(sections)
    return VaultRankConfig(**defaults)


def write_note(vault: Path, doc_id: str, content: str) -> Path:
    path = vault / doc_id
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path
