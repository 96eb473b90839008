"""Core module exports."""

from vaultrank.core.errors import (
    ConfigError,
    ErrorCode,
    IndexCorruption,
    InferenceError,
    InternalError,
    ModelUnavailable,
    QueueFull,
    RebuildFailed,
    ShardMismatch,
    TruncationOverflow,
    VaultRankError,
)
from vaultrank.core.logging import configure_logging, get_request_id, query_scope

__all__ = [
    # Errors
    "ConfigError",
    "ErrorCode",
    "IndexCorruption",
    "InferenceError",
    "InternalError",
    "ModelUnavailable",
    "QueueFull",
    "RebuildFailed",
    "ShardMismatch",
    "TruncationOverflow",
    "VaultRankError",
    # Logging
    "configure_logging",
    "get_request_id",
    "query_scope",
]
