"""Pydantic configuration models with env var support.

Configuration Hierarchy (highest to lowest precedence):
1. Direct kwargs to load_config()
2. Environment variables (VAULTRANK__SECTION__KEY)
3. Vault YAML (<vault>/.vaultrank/config.yaml)
4. Global YAML (~/.config/vaultrank/config.yaml)
5. Built-in defaults (this file)

Environment Variable Format:
    VAULTRANK__<SECTION>__<KEY>=<VALUE>

Examples:
    VAULTRANK__LOGGING__LEVEL=DEBUG
    VAULTRANK__EMBEDDING__PROVIDER=remote
    VAULTRANK__SEARCH__MIN_SIMILARITY=0.4
    VAULTRANK__SCHEDULER__QUEUE_MAX_SIZE=512
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
EmbeddingProvider = Literal["local", "remote"]


class LogOutputConfig(BaseModel):
    """Single logging output configuration.

    Env vars: Not directly configurable via env (use YAML for multi-output).
    """

    format: Literal["json", "console"] = "console"
    destination: str = "stderr"  # stderr, stdout, or absolute file path
    level: LogLevel | None = None  # Inherits from parent if None

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        if v in ("stderr", "stdout"):
            return v
        path = Path(v).expanduser()
        if not path.is_absolute():
            raise ValueError(f"File destination must be absolute path: {v}")
        return str(path)


class LoggingConfig(BaseModel):
    """Logging configuration.

    Env vars:
        VAULTRANK__LOGGING__LEVEL: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    level: LogLevel = Field(
        default="INFO",
        description="Root log level. DEBUG logs every embedding request.",
    )
    outputs: list[LogOutputConfig] = Field(default_factory=lambda: [LogOutputConfig()])


class EmbeddingConfig(BaseModel):
    """Embedding backend configuration.

    Env vars:
        VAULTRANK__EMBEDDING__PROVIDER: local or remote
        VAULTRANK__EMBEDDING__MODEL: Registered model identifier
        VAULTRANK__EMBEDDING__API_KEY: Key for the remote embedding API
        VAULTRANK__EMBEDDING__RETRIES: Remote retry budget
    """

    provider: EmbeddingProvider = Field(
        default="local",
        description="Backend family. Resolved once when the engine is configured.",
    )
    model: str = Field(
        default="BAAI/bge-small-en-v1.5",
        description="Embedding model identifier. Must be registered for the provider.",
    )
    dimension: int | None = Field(
        default=None,
        description="Output dimensionality. None uses the registered default for the model. "
        "RISK: Changing this triggers a full rebuild of the vector index.",
    )
    threads: int = Field(
        default=2,
        description="Inference threads for the local runtime.",
    )
    simd: bool = Field(
        default=True,
        description="Allow vectorised CPU kernels in the local runtime.",
    )
    quantized: bool = Field(
        default=True,
        description="Prefer quantized weights when the model ships both variants.",
    )
    batch_size: int | None = Field(
        default=None,
        description="Texts per inference batch. None picks a size from available memory.",
    )
    retries: int = Field(
        default=10,
        description="Retries for transient remote failures (429, 5xx, network).",
    )
    retry_base_delay_sec: float = Field(
        default=1.0,
        description="Base delay for exponential backoff between remote retries.",
    )
    api_key: str | None = Field(
        default=None,
        description="API key for the remote embedding service.",
    )
    endpoint: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Base URL of the remote embedding service.",
    )
    timeout_sec: float = Field(
        default=30.0,
        description="Per-request timeout for the remote embedding service.",
    )

    @field_validator("threads", "retries")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"Must be >= 0, got {v}")
        return v


class SchedulerConfig(BaseModel):
    """Inference scheduler configuration.

    Env vars:
        VAULTRANK__SCHEDULER__MAX_CONCURRENCY: Requests in flight at once
        VAULTRANK__SCHEDULER__QUEUE_MAX_SIZE: Bound for queued requests
        VAULTRANK__SCHEDULER__HIGH_PRIORITY_CEILING: Extra slots for interactive requests
    """

    max_concurrency: int = Field(
        default=1,
        description="Embedding requests in flight at once. "
        "RISK: >1 multiplies model memory for the local runtime.",
    )
    queue_max_size: int = Field(
        default=256,
        description="Queued requests before low-priority submissions are rejected with QueueFull.",
    )
    high_priority_ceiling: int = Field(
        default=32,
        description="Slots beyond queue_max_size that high-priority requests may still use.",
    )

    @field_validator("max_concurrency", "queue_max_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Must be >= 1, got {v}")
        return v


class SearchConfig(BaseModel):
    """Query and fusion configuration.

    Env vars:
        VAULTRANK__SEARCH__MIN_SIMILARITY: Pre-fusion relevance threshold
        VAULTRANK__SEARCH__RESULT_LIMIT: Maximum results returned
        VAULTRANK__SEARCH__SIMILARITY_WEIGHT: GARS similarity weight
        VAULTRANK__SEARCH__CENTRALITY_WEIGHT: GARS centrality weight
        VAULTRANK__SEARCH__ACTIVATION_WEIGHT: GARS activation weight
    """

    min_similarity: float = Field(
        default=0.5,
        description="Candidates whose relevance is below this are dropped before fusion.",
    )
    result_limit: int = Field(
        default=25,
        description="Maximum results returned per query.",
    )
    similarity_weight: float = Field(default=0.6, ge=0.0)
    centrality_weight: float = Field(default=0.2, ge=0.0)
    activation_weight: float = Field(default=0.2, ge=0.0)
    vector_candidates: int = Field(
        default=500,
        description="Nearest neighbours fetched from the vector index before scoring.",
    )
    keyword_candidates: int = Field(
        default=100,
        description="Keyword matches fetched before scoring.",
    )
    similar_notes_limit: int = Field(
        default=20,
        description="Default result count for similar-note lookups.",
    )
    embed_retries: int = Field(
        default=2,
        description="Retries for the query embedding after a transient InferenceError.",
    )
    embed_retry_delay_sec: float = Field(default=0.25)


class GraphConfig(BaseModel):
    """Link-graph centrality configuration.

    Env vars:
        VAULTRANK__GRAPH__DAMPING: PageRank damping factor
        VAULTRANK__GRAPH__MAX_ITERATIONS: Iteration cap
        VAULTRANK__GRAPH__RECOMPUTE_THRESHOLD: Fraction of topology change before recompute
    """

    damping: float = Field(default=0.85, gt=0.0, lt=1.0)
    max_iterations: int = Field(default=100, ge=1)
    tolerance: float = Field(default=1e-6, gt=0.0)
    recompute_threshold: float = Field(
        default=0.05,
        description="Centrality is recomputed once pending node/edge changes exceed this "
        "fraction of the graph size.",
    )
    frontmatter_edge_weight: float = Field(default=1.5, ge=0.0)
    body_edge_weight: float = Field(default=1.0, ge=0.0)


class IndexerConfig(BaseModel):
    """Background maintenance configuration.

    Env vars:
        VAULTRANK__INDEXER__DEBOUNCE_SEC: Debounce window for change events
        VAULTRANK__INDEXER__QUEUE_MAX_SIZE: Bound of the change-event channel
        VAULTRANK__INDEXER__EXCLUDED_FOLDERS: Folder prefixes never indexed
    """

    debounce_sec: float = Field(
        default=0.5,
        description="Quiet period before a batch of change events is processed.",
    )
    queue_max_size: int = Field(
        default=10000,
        description="Bound of the change-event channel. Producers wait when it is full.",
    )
    batch_size: int = Field(
        default=32,
        description="Documents submitted per low-priority embedding request.",
    )
    queue_full_backoff_sec: float = Field(
        default=0.1,
        description="Delay before resubmitting work rejected with QueueFull.",
    )
    excluded_folders: list[str] = Field(
        default_factory=list,
        description="Folder prefixes (case-insensitive) excluded from indexing.",
    )


class IndexConfig(BaseModel):
    """Index storage configuration.

    Env vars:
        VAULTRANK__INDEX__INDEX_PATH: Override index storage location
    """

    index_path: str | None = Field(
        default=None,
        description="Override index storage location. Default: .vaultrank/index in the vault.",
    )


class VaultRankConfig(BaseModel):
    """Root configuration for VaultRank."""

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    indexer: IndexerConfig = Field(default_factory=IndexerConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
