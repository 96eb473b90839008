"""VaultRank error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Index
- 4xxx: Embedding
- 5xxx: Scheduling
- 9xxx: Internal
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_MISSING_REQUIRED = 2003
    CONFIG_FILE_NOT_FOUND = 2004

    # Index (3xxx)
    SHARD_MISMATCH = 3001
    INDEX_CORRUPTION = 3002
    REBUILD_FAILED = 3003

    # Embedding (4xxx)
    MODEL_UNAVAILABLE = 4001
    TRUNCATION_OVERFLOW = 4002
    INFERENCE_ERROR = 4003

    # Scheduling (5xxx)
    QUEUE_FULL = 5001

    # Internal (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_TIMEOUT = 9002


@dataclass(frozen=True, slots=True)
class VaultRankError(Exception):
    """Base error with structured context."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'SHARD_MISMATCH')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON output."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigError(VaultRankError):
    """Configuration-related errors."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def missing_required(cls, field: str) -> "ConfigError":
        return cls(
            code=ErrorCode.CONFIG_MISSING_REQUIRED,
            message=f"Missing required config field: {field}",
            details={"field": field},
        )


class ModelUnavailable(VaultRankError):
    """Embedding backend is not loaded or not reachable."""

    @classmethod
    def not_loaded(cls, model_id: str, reason: str) -> "ModelUnavailable":
        return cls(
            code=ErrorCode.MODEL_UNAVAILABLE,
            message=f"Model '{model_id}' is unavailable: {reason}",
            retryable=True,
            details={"model_id": model_id, "reason": reason},
        )

    @classmethod
    def unknown_model(cls, model_id: str, provider: str) -> "ModelUnavailable":
        return cls(
            code=ErrorCode.MODEL_UNAVAILABLE,
            message=f"No {provider} model registered as '{model_id}'",
            details={"model_id": model_id, "provider": provider},
        )

    @classmethod
    def unauthorized(cls, model_id: str, status: int) -> "ModelUnavailable":
        return cls(
            code=ErrorCode.MODEL_UNAVAILABLE,
            message=f"Remote service rejected credentials for '{model_id}' (HTTP {status})",
            details={"model_id": model_id, "status": status},
        )

    @classmethod
    def reconfiguring(cls) -> "ModelUnavailable":
        return cls(
            code=ErrorCode.MODEL_UNAVAILABLE,
            message="Embedding model is being reconfigured",
            retryable=True,
        )


class TruncationOverflow(VaultRankError):
    """Input exceeded the model limit under a reject overflow policy."""

    @classmethod
    def exceeded(cls, model_id: str, tokens: int, limit: int) -> "TruncationOverflow":
        return cls(
            code=ErrorCode.TRUNCATION_OVERFLOW,
            message=f"Input of {tokens} tokens exceeds the {limit}-token limit of '{model_id}'",
            details={"model_id": model_id, "tokens": tokens, "limit": limit},
        )


class InferenceError(VaultRankError):
    """Transient backend failure during inference."""

    @classmethod
    def failed(cls, model_id: str, reason: str, *, retryable: bool = True) -> "InferenceError":
        return cls(
            code=ErrorCode.INFERENCE_ERROR,
            message=f"Inference failed for '{model_id}': {reason}",
            retryable=retryable,
            details={"model_id": model_id, "reason": reason},
        )


class ShardMismatch(VaultRankError):
    """Active shard dimensionality disagrees with the configured model."""

    @classmethod
    def dimension(cls, model_id: str, shard_dim: int, expected_dim: int) -> "ShardMismatch":
        return cls(
            code=ErrorCode.SHARD_MISMATCH,
            message=(
                f"Shard for '{model_id}' holds {shard_dim}-dim vectors, "
                f"configured model produces {expected_dim}"
            ),
            details={"model_id": model_id, "shard_dim": shard_dim, "expected_dim": expected_dim},
        )

    @classmethod
    def inactive(cls, model_id: str, active: str | None) -> "ShardMismatch":
        return cls(
            code=ErrorCode.SHARD_MISMATCH,
            message=f"Shard '{model_id}' is not the active shard (active: {active})",
            details={"model_id": model_id, "active": active},
        )


class QueueFull(VaultRankError):
    """Scheduler queue is at capacity; caller must retry later."""

    @classmethod
    def at_capacity(cls, depth: int, limit: int, priority: str) -> "QueueFull":
        return cls(
            code=ErrorCode.QUEUE_FULL,
            message=f"Inference queue full ({depth}/{limit}) for {priority} priority request",
            retryable=True,
            details={"depth": depth, "limit": limit, "priority": priority},
        )


class IndexCorruption(VaultRankError):
    """Persisted shard or keyword index is unreadable."""

    @classmethod
    def unreadable(cls, path: str, reason: str) -> "IndexCorruption":
        return cls(
            code=ErrorCode.INDEX_CORRUPTION,
            message=f"Index data at {path} is unreadable: {reason}",
            retryable=True,
            details={"path": path, "reason": reason},
        )


class RebuildFailed(VaultRankError):
    """Full rebuild after a model switch did not complete."""

    @classmethod
    def for_model(cls, model_id: str, fallback: str | None, reason: str) -> "RebuildFailed":
        return cls(
            code=ErrorCode.REBUILD_FAILED,
            message=f"Rebuild for '{model_id}' failed: {reason}",
            details={"model_id": model_id, "fallback": fallback, "reason": reason},
        )


class InternalError(VaultRankError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )
