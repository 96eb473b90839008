"""Inference worker.

Runs in the scheduler's executor thread. Owns the active backend and turns
each request into exactly one terminal WorkerResponse; progress notifications
go through a separate callback and never carry a request id.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from vaultrank.config.models import EmbeddingConfig
from vaultrank.core.errors import (
    InferenceError,
    ModelUnavailable,
    TruncationOverflow,
    VaultRankError,
)
from vaultrank.embedding.backends import EmbeddingBackend, create_backend
from vaultrank.embedding.protocol import (
    ConfigureOutput,
    ConfigureRequest,
    EmbedOutput,
    EmbedRequest,
    ProgressEvent,
    ResponseStatus,
    WorkerResponse,
)

log = structlog.get_logger()

BackendFactory = Callable[[EmbeddingConfig], EmbeddingBackend]


@dataclass
class EmbeddingWorker:
    """Executes configure and embed requests against one backend at a time."""

    base_config: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    backend_factory: BackendFactory = create_backend

    _backend: EmbeddingBackend | None = field(default=None, init=False)

    @property
    def backend(self) -> EmbeddingBackend | None:
        return self._backend

    def handle(
        self,
        request: ConfigureRequest | EmbedRequest,
        emit_progress: Callable[[ProgressEvent], None],
    ) -> WorkerResponse:
        try:
            if isinstance(request, ConfigureRequest):
                output: ConfigureOutput | EmbedOutput = self._configure(request, emit_progress)
            else:
                output = self._embed(request)
        except VaultRankError as e:
            log.warning(
                "worker.request_failed",
                request_id=request.id,
                type=request.type.value,
                error=e.error_name,
                message=e.message,
            )
            return WorkerResponse(id=request.id, status=ResponseStatus.ERROR, error=e)
        except Exception as e:
            log.exception("worker.request_crashed", request_id=request.id)
            model = getattr(request, "model_id", "")
            err = InferenceError.failed(model, f"{type(e).__name__}: {e}")
            return WorkerResponse(id=request.id, status=ResponseStatus.ERROR, error=err)

        return WorkerResponse(id=request.id, status=ResponseStatus.SUCCESS, output=output)

    def _configure(
        self,
        request: ConfigureRequest,
        emit_progress: Callable[[ProgressEvent], None],
    ) -> ConfigureOutput:
        config = self.base_config.model_copy(
            update={
                "provider": request.provider,
                "model": request.model_id,
                "threads": request.num_threads,
                "simd": request.simd,
                "quantized": request.quantized,
                "dimension": request.dimension,
            }
        )
        backend = self.backend_factory(config)
        backend.load(emit_progress)

        previous, self._backend = self._backend, backend
        if previous is not None and previous is not backend:
            previous.close()

        log.info(
            "worker.configured",
            model=backend.model_id,
            dimension=backend.dimension,
            artifact=backend.artifact,
            capability=backend.capability.value,
        )
        return ConfigureOutput(
            model_id=backend.model_id,
            dimension=backend.dimension,
            artifact=backend.artifact or "",
            quantized=backend.artifact in backend.spec.quantized_artifacts,
        )

    def _embed(self, request: EmbedRequest) -> EmbedOutput:
        backend = self._backend
        if backend is None:
            raise ModelUnavailable.not_loaded(request.model_id, "no backend configured")
        try:
            return backend.embed(request.texts, request.model_id, kind=request.kind)
        except TruncationOverflow as e:
            # Recovered locally: retry once with truncation allowed
            log.warning(
                "worker.truncation_recovered",
                request_id=request.id,
                model=request.model_id,
                tokens=e.details.get("tokens"),
                limit=e.details.get("limit"),
            )
            return backend.embed(
                request.texts, request.model_id, kind=request.kind, allow_truncation=True
            )

    def close(self) -> None:
        if self._backend is not None:
            self._backend.close()
            self._backend = None
