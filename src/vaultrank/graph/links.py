"""Link graph and PageRank centrality.

Nodes are document ids; edges are explicit references between notes (body
wikilinks/markdown links and frontmatter relations), never vector
similarity. Frontmatter relations weigh more than body links.

A reference to a note that does not exist yet creates a placeholder node.
When a document later appears under that id, alias or file name, it adopts
the placeholder's incoming edges.

Centrality is a weighted PageRank, cached per node and recomputed lazily:
only when a query needs scores and either some node has none yet or the
topology changed by more than ``recompute_threshold`` since the last run.
"""

from __future__ import annotations

import posixpath
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np
import structlog

from vaultrank.config.models import GraphConfig
from vaultrank.documents.model import Document
from vaultrank.documents.parsing import LinkKind, extract_links, resolve_link

log = structlog.get_logger()


@dataclass(frozen=True)
class Neighbor:
    doc_id: str
    direction: str  # "out" or "in"
    kind: LinkKind
    weight: float
    placeholder: bool = False


def _basename_key(doc_id: str) -> str:
    stem, _ext = posixpath.splitext(posixpath.basename(doc_id))
    return stem.lower()


def pagerank(
    nodes: list[str],
    edges: Iterable[tuple[str, str, float]],
    *,
    damping: float = 0.85,
    max_iterations: int = 100,
    tolerance: float = 1e-6,
) -> tuple[dict[str, float], int]:
    """Weighted PageRank by power iteration.

    Rank mass of nodes without out-edges is spread uniformly. Returns
    (scores, iterations run); scores sum to 1.
    """
    n = len(nodes)
    if n == 0:
        return {}, 0
    index = {node: i for i, node in enumerate(nodes)}

    src: list[int] = []
    dst: list[int] = []
    wts: list[float] = []
    for s, t, w in edges:
        if w > 0 and s in index and t in index:
            src.append(index[s])
            dst.append(index[t])
            wts.append(w)

    src_arr = np.asarray(src, dtype=np.int64)
    dst_arr = np.asarray(dst, dtype=np.int64)
    w_arr = np.asarray(wts, dtype=np.float64)
    out_weight = np.bincount(src_arr, weights=w_arr, minlength=n)
    dangling = out_weight == 0
    share = w_arr / out_weight[src_arr] if len(src_arr) else w_arr

    rank = np.full(n, 1.0 / n)
    iterations = 0
    for iterations in range(1, max_iterations + 1):
        flow = np.bincount(dst_arr, weights=rank[src_arr] * share, minlength=n)
        dangling_mass = rank[dangling].sum()
        new_rank = (1.0 - damping) / n + damping * (flow + dangling_mass / n)
        delta = float(np.abs(new_rank - rank).sum())
        rank = new_rank
        if delta < tolerance:
            break

    return {node: float(rank[i]) for node, i in index.items()}, iterations


class LinkGraph:
    """Directed, weighted reference graph over documents."""

    def __init__(self, config: GraphConfig | None = None) -> None:
        self.config = config or GraphConfig()
        self._out: dict[str, dict[str, LinkKind]] = {}
        self._in: dict[str, set[str]] = {}
        self._real: set[str] = set()
        self._aliases: dict[str, str] = {}
        self._doc_aliases: dict[str, tuple[str, ...]] = {}
        self._scores: dict[str, float] = {}
        self._pending_changes = 0
        self._lock = threading.RLock()

    # --- Mutation ---

    def update_document(self, doc: Document) -> bool:
        """Replace a document's node, aliases and out-edges.

        Returns True if the topology changed.
        """
        with self._lock:
            created = doc.doc_id not in self._real
            self._real.add(doc.doc_id)
            self._ensure_node(doc.doc_id)
            self._set_aliases(doc.doc_id, doc.aliases)
            if created:
                self._adopt_placeholders(doc.doc_id)

            targets: dict[str, LinkKind] = {}
            for link in extract_links(doc.metadata, doc.body):
                target = self._resolve(link.target, doc.doc_id)
                if target == doc.doc_id:
                    continue
                # Frontmatter relations outrank body links between the same pair
                if targets.get(target) is not LinkKind.FRONTMATTER:
                    targets[target] = link.kind

            changed = created or targets != self._out.get(doc.doc_id, {})
            if changed:
                self._replace_out_edges(doc.doc_id, targets)
                self._pending_changes += 1
            return changed

    def remove(self, doc_id: str) -> bool:
        """Remove a document. It stays as a placeholder while still referenced."""
        with self._lock:
            if doc_id not in self._real:
                return False
            self._real.discard(doc_id)
            self._set_aliases(doc_id, ())
            self._replace_out_edges(doc_id, {})
            self._drop_if_orphan(doc_id)
            self._pending_changes += 1
            return True

    def rename(self, old_id: str, new_id: str) -> bool:
        """Move a node, re-pointing incoming references to the new id."""
        with self._lock:
            if old_id not in self._out or old_id == new_id:
                return False
            was_real = old_id in self._real
            out_edges = dict(self._out.get(old_id, {}))
            aliases = self._doc_aliases.get(old_id, ())
            sources = list(self._in.get(old_id, ()))

            self._ensure_node(new_id)
            for source in sources:
                kind = self._out[source].pop(old_id)
                self._in[old_id].discard(source)
                if source != new_id:
                    self._out[source][new_id] = kind
                    self._in[new_id].add(source)

            self._real.discard(old_id)
            self._set_aliases(old_id, ())
            self._replace_out_edges(old_id, {})
            self._drop_node(old_id)

            if was_real:
                self._real.add(new_id)
                self._set_aliases(new_id, aliases)
            out_edges.pop(new_id, None)
            self._replace_out_edges(new_id, out_edges)
            self._scores.pop(old_id, None)
            self._pending_changes += 1
            return True

    def clear(self) -> None:
        with self._lock:
            self._out.clear()
            self._in.clear()
            self._real.clear()
            self._aliases.clear()
            self._doc_aliases.clear()
            self._scores.clear()
            self._pending_changes = 0

    # --- Queries ---

    def __contains__(self, doc_id: object) -> bool:
        return doc_id in self._out

    def is_placeholder(self, doc_id: str) -> bool:
        return doc_id in self._out and doc_id not in self._real

    @property
    def node_count(self) -> int:
        return len(self._out)

    @property
    def edge_count(self) -> int:
        return sum(len(t) for t in self._out.values())

    @property
    def documents(self) -> set[str]:
        return set(self._real)

    def edge_weight(self, kind: LinkKind) -> float:
        if kind is LinkKind.FRONTMATTER:
            return self.config.frontmatter_edge_weight
        return self.config.body_edge_weight

    def neighbors(self, doc_id: str) -> list[Neighbor]:
        """Direct neighbours in both directions, outgoing first."""
        with self._lock:
            result: list[Neighbor] = []
            for target, kind in sorted(self._out.get(doc_id, {}).items()):
                result.append(
                    Neighbor(target, "out", kind, self.edge_weight(kind), target not in self._real)
                )
            for source in sorted(self._in.get(doc_id, ())):
                kind = self._out[source][doc_id]
                result.append(Neighbor(source, "in", kind, self.edge_weight(kind), False))
            return result

    def weighted_adjacency(self, doc_id: str) -> dict[str, float]:
        """Undirected view: neighbour id to the heaviest edge weight either way."""
        weights: dict[str, float] = {}
        for n in self.neighbors(doc_id):
            weights[n.doc_id] = max(weights.get(n.doc_id, 0.0), n.weight)
        return weights

    # --- Centrality ---

    @property
    def needs_recompute(self) -> bool:
        if any(node not in self._scores for node in self._out):
            return True
        size = max(self.node_count + self.edge_count, 1)
        return self._pending_changes / size > self.config.recompute_threshold

    def centrality(self) -> dict[str, float]:
        """PageRank score per node, recomputed only when needed."""
        with self._lock:
            if self.needs_recompute:
                self.recompute()
            return self._scores

    def score(self, doc_id: str) -> float:
        return self.centrality().get(doc_id, 0.0)

    def recompute(self) -> None:
        with self._lock:
            nodes = sorted(self._out)
            edges = [
                (s, t, self.edge_weight(kind))
                for s, targets in self._out.items()
                for t, kind in targets.items()
            ]
            self._scores, iterations = pagerank(
                nodes,
                edges,
                damping=self.config.damping,
                max_iterations=self.config.max_iterations,
                tolerance=self.config.tolerance,
            )
            self._pending_changes = 0
            log.debug(
                "graph.centrality_recomputed",
                nodes=len(nodes),
                edges=len(edges),
                iterations=iterations,
            )

    # --- Persistence ---

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "documents": sorted(self._real),
                "aliases": {d: list(a) for d, a in sorted(self._doc_aliases.items())},
                "edges": [
                    [s, t, kind.value]
                    for s in sorted(self._out)
                    for t, kind in sorted(self._out[s].items())
                ],
                "placeholders": sorted(n for n in self._out if n not in self._real),
            }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], config: GraphConfig | None = None) -> LinkGraph:
        graph = cls(config)
        for doc_id in data.get("documents", []):
            graph._real.add(doc_id)
            graph._ensure_node(doc_id)
        for doc_id in data.get("placeholders", []):
            graph._ensure_node(doc_id)
        for doc_id, aliases in data.get("aliases", {}).items():
            graph._set_aliases(doc_id, tuple(aliases))
        for source, target, kind in data.get("edges", []):
            graph._ensure_node(source)
            graph._ensure_node(target)
            graph._out[source][target] = LinkKind(kind)
            graph._in[target].add(source)
        return graph

    # --- Internals ---

    def _ensure_node(self, doc_id: str) -> None:
        self._out.setdefault(doc_id, {})
        self._in.setdefault(doc_id, set())

    def _drop_node(self, doc_id: str) -> None:
        self._out.pop(doc_id, None)
        self._in.pop(doc_id, None)
        self._scores.pop(doc_id, None)

    def _drop_if_orphan(self, doc_id: str) -> None:
        if doc_id not in self._real and not self._in.get(doc_id) and not self._out.get(doc_id):
            self._drop_node(doc_id)

    def _replace_out_edges(self, source: str, targets: Mapping[str, LinkKind]) -> None:
        old = self._out.get(source, {})
        for target in set(old) - set(targets):
            self._in[target].discard(source)
            self._drop_if_orphan(target)
        self._ensure_node(source)
        self._out[source] = dict(targets)
        for target in targets:
            self._ensure_node(target)
            self._in[target].add(source)

    def _set_aliases(self, doc_id: str, aliases: Iterable[str]) -> None:
        for alias in self._doc_aliases.pop(doc_id, ()):
            if self._aliases.get(alias.lower()) == doc_id:
                del self._aliases[alias.lower()]
        aliases = tuple(aliases)
        if aliases:
            self._doc_aliases[doc_id] = aliases
            for alias in aliases:
                self._aliases[alias.lower()] = doc_id

    def _resolve(self, target: str, source_id: str) -> str:
        resolved = resolve_link(target, source_id, self._aliases)
        if resolved in self._real:
            return resolved
        # Shortest-path note with the same file name
        key = _basename_key(resolved)
        matches = sorted(
            (d for d in self._real if _basename_key(d) == key),
            key=lambda d: (d.count("/"), d),
        )
        return matches[0] if matches and "/" not in resolved else resolved

    def _adopt_placeholders(self, doc_id: str) -> None:
        """Re-point references that were waiting for this document."""
        keys = {_basename_key(doc_id)} | {a.lower() for a in self._doc_aliases.get(doc_id, ())}
        for placeholder in [n for n in self._out if n not in self._real and n != doc_id]:
            if "/" in placeholder or _basename_key(placeholder) not in keys:
                continue
            for source in list(self._in.get(placeholder, ())):
                kind = self._out[source].pop(placeholder)
                if source != doc_id:
                    self._out[source].setdefault(doc_id, kind)
                    self._in[doc_id].add(source)
            self._drop_node(placeholder)
