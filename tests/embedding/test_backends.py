"""Tests for embedding backends.

The local fastembed runtime is not exercised here (it needs model weights);
the shared EmbeddingBackend contract is tested through the bag-of-words
backend and the remote backend through an httpx mock transport.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import numpy as np
import pytest
from helpers import BagOfWordsBackend, make_spec

from vaultrank.config.models import EmbeddingConfig
from vaultrank.core.errors import (
    InferenceError,
    ModelUnavailable,
    TruncationOverflow,
)
from vaultrank.embedding.backends import (
    BackendCapability,
    RemoteBackend,
    _l2_normalize,
    create_backend,
)
from vaultrank.embedding.protocol import ProgressEvent, ProgressStatus
from vaultrank.embedding.registry import OverflowPolicy, TextKind, resolve_model
from vaultrank.embedding.tokenization import CharBudgetTokenizer

REMOTE_MODEL = "gemini-embedding-001"


class TestNormalize:
    def test_rows_have_unit_length(self) -> None:
        out = _l2_normalize(np.array([[3.0, 4.0], [0.0, 2.0]]))
        assert out.dtype == np.float32
        assert np.allclose(np.linalg.norm(out, axis=1), 1.0)

    def test_zero_row_stays_zero(self) -> None:
        out = _l2_normalize(np.zeros((1, 3)))
        assert not out.any()


class TestEmbeddingBackendContract:
    def test_embed_requires_load(self) -> None:
        backend = BagOfWordsBackend(make_spec())
        with pytest.raises(ModelUnavailable):
            backend.embed(["text"], backend.model_id)

    def test_embed_rejects_other_model(self) -> None:
        backend = BagOfWordsBackend(make_spec())
        backend.load()
        with pytest.raises(ModelUnavailable):
            backend.embed(["text"], "other/model")

    def test_output_shape_and_normalization(self) -> None:
        backend = BagOfWordsBackend(make_spec(dimension=64))
        backend.load()

        out = backend.embed(["alpha beta", "gamma"], backend.model_id)

        assert out.vectors.shape == (2, 64)
        assert out.vectors.dtype == np.float32
        assert np.allclose(np.linalg.norm(out.vectors, axis=1), 1.0)
        assert out.token_counts == (2, 1)
        assert out.truncated == (False, False)
        assert out.artifact == f"{backend.model_id}-q"

    def test_empty_input(self) -> None:
        backend = BagOfWordsBackend(make_spec(dimension=8))
        backend.load()
        out = backend.embed([], backend.model_id)
        assert out.vectors.shape == (0, 8)

    def test_truncate_policy_reports_truncation(self) -> None:
        backend = BagOfWordsBackend(make_spec(max_tokens=3))
        backend.load()

        out = backend.embed(["one two three four five"], backend.model_id)

        assert out.truncated == (True,)
        assert out.token_counts == (3,)
        assert backend.calls == [["one two three"]]

    def test_reject_policy_raises_unless_allowed(self) -> None:
        backend = BagOfWordsBackend(make_spec(max_tokens=3, overflow=OverflowPolicy.REJECT))
        backend.load()

        with pytest.raises(TruncationOverflow) as exc_info:
            backend.embed(["one two three four five"], backend.model_id)
        assert exc_info.value.details["tokens"] == 5

        out = backend.embed(["one two three four five"], backend.model_id, allow_truncation=True)
        assert out.truncated == (True,)

    def test_runtime_failure_becomes_retryable_inference_error(self) -> None:
        backend = BagOfWordsBackend(make_spec(), fail_embed=1)
        backend.load()
        with pytest.raises(InferenceError) as exc_info:
            backend.embed(["text"], backend.model_id)
        assert exc_info.value.retryable

    def test_wrong_shape_is_permanent_inference_error(self) -> None:
        class Broken(BagOfWordsBackend):
            def _embed_texts(self, texts: list[str], kind: TextKind) -> np.ndarray:
                return np.ones((len(texts), 3), dtype=np.float32)

        backend = Broken(make_spec(dimension=8))
        backend.load()
        with pytest.raises(InferenceError) as exc_info:
            backend.embed(["text"], backend.model_id)
        assert not exc_info.value.retryable


# ===================================================================
# Remote backend
# ===================================================================


def _embeddings_payload(n: int, dim: int = 768) -> dict[str, object]:
    return {"embeddings": [{"values": [float(i + 1)] + [0.0] * (dim - 1)} for i in range(n)]}


def make_remote(
    handler: Callable[[httpx.Request], httpx.Response],
    *,
    retries: int = 3,
    sleeps: list[float] | None = None,
    api_key: str | None = "secret",
) -> RemoteBackend:
    recorded = sleeps if sleeps is not None else []
    backend = RemoteBackend(
        resolve_model("remote", REMOTE_MODEL),
        CharBudgetTokenizer(),
        api_key=api_key,
        endpoint="https://embed.test/v1beta/",
        retries=retries,
        retry_base_delay=1.0,
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=recorded.append,
    )
    return backend


class TestRemoteBackend:
    def test_request_shape(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_embeddings_payload(2))

        backend = make_remote(handler)
        events: list[ProgressEvent] = []
        backend.load(events.append)

        out = backend.embed(["first", "second"], REMOTE_MODEL, kind=TextKind.QUERY)

        assert out.vectors.shape == (2, 768)
        assert [e.status for e in events] == [ProgressStatus.READY]
        request = seen[0]
        assert request.url.path == f"/v1beta/models/{REMOTE_MODEL}:batchEmbedContents"
        assert request.headers["x-goog-api-key"] == "secret"
        body = json.loads(request.content)
        assert [r["taskType"] for r in body["requests"]] == ["RETRIEVAL_QUERY"] * 2
        assert body["requests"][0]["outputDimensionality"] == 768
        assert body["requests"][1]["content"]["parts"][0]["text"] == "second"
        assert backend.capability is BackendCapability.REMOTE_API

    def test_load_without_key_is_unavailable(self) -> None:
        backend = make_remote(lambda r: httpx.Response(200), api_key=None)
        with pytest.raises(ModelUnavailable):
            backend.load()

    def test_retries_transient_status_with_backoff(self) -> None:
        statuses = iter([429, 503])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(statuses, 200)
            if status != 200:
                return httpx.Response(status)
            return httpx.Response(200, json=_embeddings_payload(1))

        sleeps: list[float] = []
        backend = make_remote(handler, sleeps=sleeps)
        backend.load()

        out = backend.embed(["text"], REMOTE_MODEL)

        assert out.vectors.shape == (1, 768)
        assert sleeps == [1.0, 2.0]

    def test_retry_budget_exhausted(self) -> None:
        sleeps: list[float] = []
        backend = make_remote(lambda r: httpx.Response(500), retries=2, sleeps=sleeps)
        backend.load()

        with pytest.raises(InferenceError) as exc_info:
            backend.embed(["text"], REMOTE_MODEL)

        assert exc_info.value.retryable
        assert len(sleeps) == 2

    def test_unreachable_service_is_unavailable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        backend = make_remote(handler, retries=1)
        backend.load()

        with pytest.raises(ModelUnavailable):
            backend.embed(["text"], REMOTE_MODEL)

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failure_is_not_retried(self, status: int) -> None:
        sleeps: list[float] = []
        backend = make_remote(lambda r: httpx.Response(status), sleeps=sleeps)
        backend.load()

        with pytest.raises(ModelUnavailable) as exc_info:
            backend.embed(["text"], REMOTE_MODEL)

        assert not exc_info.value.retryable
        assert sleeps == []

    def test_client_error_is_permanent(self) -> None:
        backend = make_remote(lambda r: httpx.Response(400, text="bad request"))
        backend.load()
        with pytest.raises(InferenceError) as exc_info:
            backend.embed(["text"], REMOTE_MODEL)
        assert not exc_info.value.retryable

    def test_malformed_body_is_permanent(self) -> None:
        backend = make_remote(lambda r: httpx.Response(200, json={"unexpected": []}))
        backend.load()
        with pytest.raises(InferenceError) as exc_info:
            backend.embed(["text"], REMOTE_MODEL)
        assert not exc_info.value.retryable


class TestCreateBackend:
    def test_remote_provider(self) -> None:
        config = EmbeddingConfig(provider="remote", model=REMOTE_MODEL, dimension=3072, api_key="k")
        backend = create_backend(config)
        assert isinstance(backend, RemoteBackend)
        assert backend.dimension == 3072
        assert not backend.is_loaded

    def test_unknown_model(self) -> None:
        with pytest.raises(ModelUnavailable):
            create_backend(EmbeddingConfig(provider="local", model="missing/model"))
