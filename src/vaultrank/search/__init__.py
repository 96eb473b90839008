"""GARS fusion and the query orchestrator."""

from vaultrank.search.fusion import Candidate, SearchSettings, rank
from vaultrank.search.orchestrator import (
    QueryState,
    RankedResult,
    SearchOrchestrator,
    SearchResults,
)

__all__ = [
    "Candidate",
    "QueryState",
    "RankedResult",
    "SearchOrchestrator",
    "SearchResults",
    "SearchSettings",
    "rank",
]
