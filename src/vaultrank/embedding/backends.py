"""Embedding backends behind one interface.

Two capabilities exist: local inference through fastembed (ONNX Runtime) and
a remote embedding API over HTTPS. The backend is chosen once, when the
engine is configured, from ``EmbeddingConfig.provider``; callers only see
``EmbeddingBackend.embed``.

Every backend:

- declares its model's dimensionality, token limit and overflow policy
  (via ModelSpec)
- returns L2-normalized float32 vectors, one row per input text
- reports per-text token counts and truncation flags
"""

from __future__ import annotations

import gc
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from enum import Enum
from typing import Any

import httpx
import numpy as np
import structlog

from vaultrank.config.models import EmbeddingConfig
from vaultrank.core.errors import (
    InferenceError,
    ModelUnavailable,
    TruncationOverflow,
    VaultRankError,
)
from vaultrank.embedding.protocol import EmbedOutput, ProgressEvent, ProgressStatus
from vaultrank.embedding.registry import (
    ModelSpec,
    OverflowPolicy,
    TextKind,
    resolve_model,
)
from vaultrank.embedding.tokenization import (
    CharBudgetTokenizer,
    HuggingFaceTokenizer,
    TokenCounter,
    TokenFit,
)

log = structlog.get_logger()

ProgressCallback = Callable[[ProgressEvent], None]

DEFAULT_BATCH_SIZE = 8
MAX_BACKOFF_SEC = 30.0


class BackendCapability(Enum):
    LOCAL_INFERENCE = "local-inference"
    REMOTE_API = "remote-api"


def _l2_normalize(matrix: np.ndarray) -> np.ndarray:
    matrix = np.asarray(matrix, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms > 0, norms, 1.0)
    return matrix / norms


def _detect_providers(accelerated: bool) -> list[str]:
    """ONNX Runtime execution providers; GPU only when acceleration is allowed."""
    if accelerated:
        import onnxruntime as ort

        if "CUDAExecutionProvider" in ort.get_available_providers():
            return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def _detect_batch_size() -> int:
    """Choose embedding batch size based on available system memory.

    Heuristic:
      >= 16 GB free -> batch 32
      >=  8 GB free -> batch 16
      >=  4 GB free -> batch  8
      otherwise     -> batch  4
    """
    import psutil

    gb = psutil.virtual_memory().available / (1024**3)
    if gb >= 16:
        return 32
    if gb >= 8:
        return 16
    if gb >= 4:
        return 8
    return 4


# ===================================================================
# Interface
# ===================================================================


class EmbeddingBackend(ABC):
    """Uniform embedding interface over local and remote capabilities."""

    capability: BackendCapability

    def __init__(self, spec: ModelSpec, tokenizer: TokenCounter) -> None:
        self.spec = spec
        self.tokenizer = tokenizer
        self._artifact: str | None = None

    @property
    def model_id(self) -> str:
        return self.spec.model_id

    @property
    def dimension(self) -> int:
        return self.spec.dimension

    @property
    def artifact(self) -> str | None:
        """Concrete artifact in use once loaded (e.g. quantized weights)."""
        return self._artifact

    @property
    def is_loaded(self) -> bool:
        return self._artifact is not None

    @abstractmethod
    def load(self, on_progress: ProgressCallback | None = None) -> None:
        """Make the backend ready. Raises ModelUnavailable."""

    @abstractmethod
    def _embed_texts(self, texts: list[str], kind: TextKind) -> np.ndarray:
        """Raw vectors for already-fitted texts."""

    def close(self) -> None:
        self._artifact = None

    def fit(self, text: str, *, allow_truncation: bool = False) -> TokenFit:
        """Apply the model's token limit to one text.

        Under a REJECT policy an oversize input raises TruncationOverflow
        unless the caller explicitly allows truncation.
        """
        fitted = self.tokenizer.fit(text, self.spec.max_tokens)
        if (
            fitted.truncated
            and self.spec.overflow is OverflowPolicy.REJECT
            and not allow_truncation
        ):
            full = self.tokenizer.fit(text, 1 << 30).token_count
            raise TruncationOverflow.exceeded(self.model_id, full, self.spec.max_tokens)
        return fitted

    def embed(
        self,
        texts: Sequence[str],
        model_id: str,
        *,
        kind: TextKind = TextKind.DOCUMENT,
        allow_truncation: bool = False,
    ) -> EmbedOutput:
        """Embed ``texts`` with ``model_id``.

        Raises:
            ModelUnavailable: backend not loaded, or a different model requested.
            TruncationOverflow: oversize input under a REJECT policy.
            InferenceError: the runtime or remote service failed.
        """
        if model_id != self.model_id:
            raise ModelUnavailable.not_loaded(model_id, f"backend serves '{self.model_id}'")
        if not self.is_loaded:
            raise ModelUnavailable.not_loaded(model_id, "backend not loaded")

        fits = [self.fit(t, allow_truncation=allow_truncation) for t in texts]
        if not fits:
            return EmbedOutput(
                vectors=np.empty((0, self.dimension), dtype=np.float32),
                token_counts=(),
                truncated=(),
                model_id=self.model_id,
                artifact=self._artifact or "",
            )

        prefix = self.spec.prefix(kind)
        try:
            raw = self._embed_texts([prefix + f.text for f in fits], kind)
        except VaultRankError:
            raise
        except Exception as e:
            raise InferenceError.failed(self.model_id, str(e)) from e

        if raw.ndim != 2 or raw.shape != (len(fits), self.dimension):
            raise InferenceError.failed(
                self.model_id,
                f"expected shape ({len(fits)}, {self.dimension}), got {tuple(raw.shape)}",
                retryable=False,
            )

        return EmbedOutput(
            vectors=_l2_normalize(raw),
            token_counts=tuple(f.token_count for f in fits),
            truncated=tuple(f.truncated for f in fits),
            model_id=self.model_id,
            artifact=self._artifact or "",
        )


# ===================================================================
# Local (fastembed)
# ===================================================================


class LocalBackend(EmbeddingBackend):
    """fastembed TextEmbedding over ONNX Runtime."""

    capability = BackendCapability.LOCAL_INFERENCE

    def __init__(
        self,
        spec: ModelSpec,
        tokenizer: TokenCounter,
        *,
        threads: int = 2,
        accelerated: bool = True,
        quantized: bool = True,
        batch_size: int | None = None,
    ) -> None:
        super().__init__(spec, tokenizer)
        self.threads = threads or max(1, (os.cpu_count() or 2) // 2)
        self.accelerated = accelerated
        self.quantized = quantized
        self._batch_size = batch_size
        self._model: Any = None

    def load(self, on_progress: ProgressCallback | None = None) -> None:
        if self._model is not None:
            return

        from fastembed import TextEmbedding

        supported = {m["model"] for m in TextEmbedding.list_supported_models()}
        candidates = self.spec.artifact_order(self.quantized)
        if not candidates:
            raise ModelUnavailable.not_loaded(self.model_id, "no artifacts registered")

        # Free memory before loading an ONNX model
        gc.collect()
        providers = _detect_providers(self.accelerated)
        batch_size = self._batch_size or _detect_batch_size()
        errors: list[str] = []

        for artifact in candidates:
            if artifact not in supported:
                errors.append(f"{artifact}: not supported by this fastembed release")
                continue
            if on_progress is not None:
                on_progress(ProgressEvent(ProgressStatus.INITIATE, file=artifact))
            try:
                model = TextEmbedding(
                    model_name=artifact,
                    providers=providers,
                    threads=self.threads,
                    max_length=self.spec.max_tokens,
                )
            except Exception as e:  # noqa: BLE001
                errors.append(f"{artifact}: {e}")
                log.warning("embedding.artifact_failed", artifact=artifact, error=str(e))
                continue
            if on_progress is not None:
                on_progress(ProgressEvent(ProgressStatus.DONE, file=artifact, progress=100.0))

            self._model = model
            self._artifact = artifact
            self._batch_size = batch_size
            log.info(
                "embedding.model_loaded",
                model=self.model_id,
                artifact=artifact,
                quantized=artifact in self.spec.quantized_artifacts,
                providers=providers,
                threads=self.threads,
                batch_size=batch_size,
            )
            if on_progress is not None:
                on_progress(ProgressEvent(ProgressStatus.READY, file=artifact))
            return

        raise ModelUnavailable.not_loaded(self.model_id, "; ".join(errors))

    def close(self) -> None:
        self._model = None
        super().close()
        gc.collect()

    def _embed_texts(self, texts: list[str], kind: TextKind) -> np.ndarray:  # noqa: ARG002
        """Embed in length-sorted batches to cut ONNX padding, then restore order."""
        total = len(texts)
        batch_size = self._batch_size or DEFAULT_BATCH_SIZE

        order = sorted(range(total), key=lambda i: len(texts[i]))
        sorted_texts = [texts[i] for i in order]

        sorted_vecs: list[np.ndarray] = []
        for i in range(0, total, batch_size):
            batch = sorted_texts[i : i + batch_size]
            sorted_vecs.extend(self._model.embed(batch, batch_size=len(batch)))

        out = np.empty((total, self.dimension), dtype=np.float32)
        for new_pos, orig_pos in enumerate(order):
            out[orig_pos] = sorted_vecs[new_pos]
        return out


# ===================================================================
# Remote (HTTPS embedding API)
# ===================================================================

_TASK_TYPES = {
    TextKind.QUERY: "RETRIEVAL_QUERY",
    TextKind.DOCUMENT: "RETRIEVAL_DOCUMENT",
}

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})
_AUTH_STATUS = frozenset({401, 403})


class RemoteBackend(EmbeddingBackend):
    """Batch embedding over a Gemini-style ``batchEmbedContents`` endpoint.

    Transient failures (429, 5xx, transport errors) are retried with
    exponential backoff up to ``retries`` times. Authentication failures are
    permanent.
    """

    capability = BackendCapability.REMOTE_API

    def __init__(
        self,
        spec: ModelSpec,
        tokenizer: TokenCounter,
        *,
        api_key: str | None,
        endpoint: str,
        retries: int = 10,
        retry_base_delay: float = 1.0,
        timeout: float = 30.0,
        batch_size: int = 100,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(spec, tokenizer)
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.retries = retries
        self.retry_base_delay = retry_base_delay
        self.timeout = timeout
        self.batch_size = batch_size
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    def load(self, on_progress: ProgressCallback | None = None) -> None:
        if not self.api_key:
            raise ModelUnavailable.not_loaded(self.model_id, "no API key configured")
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
        self._artifact = self.model_id
        log.info("embedding.remote_ready", model=self.model_id, endpoint=self.endpoint)
        if on_progress is not None:
            on_progress(ProgressEvent(ProgressStatus.READY, file=self.model_id))

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        super().close()

    def _embed_texts(self, texts: list[str], kind: TextKind) -> np.ndarray:
        rows: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            rows.extend(self._embed_batch(texts[i : i + self.batch_size], kind))
        return np.asarray(rows, dtype=np.float32)

    def _embed_batch(self, texts: list[str], kind: TextKind) -> list[list[float]]:
        url = f"{self.endpoint}/models/{self.model_id}:batchEmbedContents"
        payload = {
            "requests": [
                {
                    "model": f"models/{self.model_id}",
                    "content": {"parts": [{"text": t}]},
                    "taskType": _TASK_TYPES[kind],
                    "outputDimensionality": self.dimension,
                }
                for t in texts
            ]
        }
        data = self._post_with_retry(url, payload)
        try:
            return [item["values"] for item in data["embeddings"]]
        except (KeyError, TypeError) as e:
            raise InferenceError.failed(
                self.model_id, f"malformed response: {e}", retryable=False
            ) from e

    def _post_with_retry(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        assert self._client is not None
        headers = {"x-goog-api-key": self.api_key or ""}
        last_reason = ""

        for attempt in range(self.retries + 1):
            if attempt:
                delay = min(self.retry_base_delay * (2 ** (attempt - 1)), MAX_BACKOFF_SEC)
                log.warning(
                    "embedding.remote_retry",
                    model=self.model_id,
                    attempt=attempt,
                    delay_sec=delay,
                    reason=last_reason,
                )
                self._sleep(delay)

            try:
                response = self._client.post(url, json=payload, headers=headers)
            except httpx.TransportError as e:
                last_reason = f"{type(e).__name__}: {e}"
                continue

            if response.status_code in _AUTH_STATUS:
                raise ModelUnavailable.unauthorized(self.model_id, response.status_code)
            if response.status_code in _RETRYABLE_STATUS:
                last_reason = f"HTTP {response.status_code}"
                continue
            if response.is_error:
                raise InferenceError.failed(
                    self.model_id,
                    f"HTTP {response.status_code}: {response.text[:200]}",
                    retryable=False,
                )
            return response.json()  # type: ignore[no-any-return]

        if last_reason.startswith("HTTP"):
            raise InferenceError.failed(
                self.model_id, f"{last_reason} after {self.retries} retries"
            )
        raise ModelUnavailable.not_loaded(
            self.model_id, f"unreachable after {self.retries} retries ({last_reason})"
        )


# ===================================================================
# Factory
# ===================================================================


def create_backend(
    config: EmbeddingConfig,
    *,
    tokenizer: TokenCounter | None = None,
    client: httpx.Client | None = None,
) -> EmbeddingBackend:
    """Resolve the configured provider to a concrete backend (not yet loaded)."""
    spec = resolve_model(config.provider, config.model, config.dimension)

    if spec.provider == "remote":
        return RemoteBackend(
            spec,
            tokenizer or CharBudgetTokenizer(),
            api_key=config.api_key,
            endpoint=config.endpoint,
            retries=config.retries,
            retry_base_delay=config.retry_base_delay_sec,
            timeout=config.timeout_sec,
            client=client,
        )

    if tokenizer is None:
        assert spec.tokenizer is not None
        try:
            tokenizer = HuggingFaceTokenizer.from_pretrained(spec.tokenizer)
        except Exception as e:  # noqa: BLE001
            raise ModelUnavailable.not_loaded(spec.model_id, f"tokenizer: {e}") from e

    return LocalBackend(
        spec,
        tokenizer,
        threads=config.threads,
        accelerated=config.simd,
        quantized=config.quantized,
        batch_size=config.batch_size,
    )
