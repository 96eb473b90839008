"""Configuration constants.

This module contains truly constant values that should NOT be user-configurable.
These are persistence layout names, scoring heuristics, and protocol limits.

For configurable values, see models.py (SearchConfig, GraphConfig, etc.).
"""

# =============================================================================
# Persistence Layout
# =============================================================================

DATA_DIR_NAME = ".vaultrank"
"""Per-vault directory for config and derived index data. Never indexed."""

INDEX_SUBDIR = "index"
"""Subdirectory of the data dir holding shards and the keyword index."""

SHARD_FORMAT_VERSION = 2
"""Bumped when the on-disk shard layout changes; older shards are rebuilt."""

# =============================================================================
# Keyword Scoring
# =============================================================================
# Discrete boosts layered on top of BM25 so that a title hit outranks a body
# hit of equal frequency.

SCORE_TITLE_MATCH = 1.2
"""Relevance assigned to a keyword-only candidate whose title contains every query term."""

SCORE_BODY_MATCH = 0.85
"""Relevance ceiling for a keyword-only candidate matched in the body."""

HYBRID_BOOST_SCORE = 0.3
"""Added to vector similarity when the candidate also matched lexically."""

HYBRID_TITLE_BOOST = 0.5
"""Added on top of HYBRID_BOOST_SCORE when the lexical match was in the title."""

EXACT_PHRASE_BOOST = 0.5
"""Keyword score bonus when the query appears as an exact phrase in the title or body."""

TITLE_MATCH_BOOST = 1.0
"""Keyword score bonus when every query term appears in the title."""

# =============================================================================
# Query Limits
# =============================================================================

MIN_QUERY_CHARS = 2
"""Queries shorter than this skip keyword lookup."""

CONTENT_PREVIEW_LENGTH = 500
"""Characters of body text kept as result excerpt."""

SEARCH_MAX_LIMIT = 500
"""Hard cap on results for any single query."""
