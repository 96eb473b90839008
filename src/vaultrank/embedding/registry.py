"""Embedding model registry.

A model identifier fixes everything that must agree for vectors to be
comparable: vector dimensionality, tokenizer, input limit and overflow
policy. The tokenizer is part of the model entry, never a separate setting,
because a mismatched tokenizer corrupts embeddings without raising.

Local models run through fastembed (ONNX Runtime). A local entry may list
quantized and full-precision artifacts of the same logical model; the backend
loads whichever is available and records which one it used.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

from vaultrank.core.errors import ConfigError, ModelUnavailable

Provider = Literal["local", "remote"]


class OverflowPolicy(Enum):
    """What a backend does with input longer than its token limit."""

    TRUNCATE = "truncate"
    REJECT = "reject"


class TextKind(Enum):
    """Embedding role of a text. Some models prefix queries and documents differently."""

    QUERY = "query"
    DOCUMENT = "document"


@dataclass(frozen=True)
class ModelSpec:
    """Registry entry for one logical embedding model."""

    model_id: str
    provider: Provider
    dimension: int
    max_tokens: int
    overflow: OverflowPolicy
    tokenizer: str | None
    quantized_artifacts: tuple[str, ...] = ()
    full_artifacts: tuple[str, ...] = ()
    supported_dimensions: tuple[int, ...] = ()
    query_prefix: str = ""
    document_prefix: str = ""

    def artifact_order(self, quantized: bool) -> list[str]:
        """Artifacts to try, preferred precision first."""
        if quantized:
            return [*self.quantized_artifacts, *self.full_artifacts]
        return [*self.full_artifacts, *self.quantized_artifacts]

    def prefix(self, kind: TextKind) -> str:
        return self.query_prefix if kind is TextKind.QUERY else self.document_prefix

    def with_dimension(self, dimension: int | None) -> ModelSpec:
        """Copy with an output dimensionality override, if the model supports it."""
        if dimension is None or dimension == self.dimension:
            return self
        if dimension not in self.supported_dimensions:
            raise ConfigError.invalid_value(
                "embedding.dimension",
                dimension,
                f"{self.model_id} supports {sorted({self.dimension, *self.supported_dimensions})}",
            )
        return ModelSpec(
            model_id=self.model_id,
            provider=self.provider,
            dimension=dimension,
            max_tokens=self.max_tokens,
            overflow=self.overflow,
            tokenizer=self.tokenizer,
            quantized_artifacts=self.quantized_artifacts,
            full_artifacts=self.full_artifacts,
            supported_dimensions=self.supported_dimensions,
            query_prefix=self.query_prefix,
            document_prefix=self.document_prefix,
        )


# ===================================================================
# Registered models
# ===================================================================

LOCAL_MODELS: dict[str, ModelSpec] = {
    spec.model_id: spec
    for spec in (
        ModelSpec(
            model_id="BAAI/bge-small-en-v1.5",
            provider="local",
            dimension=384,
            max_tokens=512,
            overflow=OverflowPolicy.TRUNCATE,
            tokenizer="BAAI/bge-small-en-v1.5",
            quantized_artifacts=("BAAI/bge-small-en-v1.5",),
        ),
        ModelSpec(
            model_id="sentence-transformers/all-MiniLM-L6-v2",
            provider="local",
            dimension=384,
            max_tokens=256,
            overflow=OverflowPolicy.TRUNCATE,
            tokenizer="sentence-transformers/all-MiniLM-L6-v2",
            full_artifacts=("sentence-transformers/all-MiniLM-L6-v2",),
        ),
        ModelSpec(
            model_id="nomic-ai/nomic-embed-text-v1.5",
            provider="local",
            dimension=768,
            max_tokens=512,
            overflow=OverflowPolicy.TRUNCATE,
            tokenizer="nomic-ai/nomic-embed-text-v1.5",
            quantized_artifacts=("nomic-ai/nomic-embed-text-v1.5-Q",),
            full_artifacts=("nomic-ai/nomic-embed-text-v1.5",),
            query_prefix="search_query: ",
            document_prefix="search_document: ",
        ),
    )
}

REMOTE_MODELS: dict[str, ModelSpec] = {
    spec.model_id: spec
    for spec in (
        ModelSpec(
            model_id="gemini-embedding-001",
            provider="remote",
            dimension=768,
            max_tokens=2048,
            overflow=OverflowPolicy.TRUNCATE,
            tokenizer=None,
            supported_dimensions=(768, 1536, 3072),
        ),
    )
}

DEFAULT_MODELS: dict[Provider, str] = {
    "local": "BAAI/bge-small-en-v1.5",
    "remote": "gemini-embedding-001",
}


def resolve_model(provider: Provider, model_id: str, dimension: int | None = None) -> ModelSpec:
    """Look up a registered model, applying an optional dimension override."""
    registry = LOCAL_MODELS if provider == "local" else REMOTE_MODELS
    spec = registry.get(model_id)
    if spec is None:
        raise ModelUnavailable.unknown_model(model_id, provider)
    return spec.with_dimension(dimension)


def list_models(provider: Provider | None = None) -> list[ModelSpec]:
    """Registered models, optionally filtered by provider."""
    specs = [*LOCAL_MODELS.values(), *REMOTE_MODELS.values()]
    if provider is None:
        return specs
    return [s for s in specs if s.provider == provider]
