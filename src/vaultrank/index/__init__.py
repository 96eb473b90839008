"""Vector and keyword indexes.

The coordinator lives in ``vaultrank.index.ops``.
"""

from vaultrank.index.keyword import KeywordHit, KeywordIndex, tokenize
from vaultrank.index.store import EmbeddingRecord, ShardInfo, VectorHit, VectorIndexStore

__all__ = [
    "EmbeddingRecord",
    "KeywordHit",
    "KeywordIndex",
    "ShardInfo",
    "VectorHit",
    "VectorIndexStore",
    "tokenize",
]
