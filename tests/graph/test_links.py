"""Tests for the link graph and PageRank centrality."""

from __future__ import annotations

import pytest

from vaultrank.config.models import GraphConfig
from vaultrank.documents.parsing import LinkKind, parse_document
from vaultrank.graph.links import LinkGraph, pagerank


def add(graph: LinkGraph, doc_id: str, content: str) -> bool:
    return graph.update_document(parse_document(doc_id, content))


def out_ids(graph: LinkGraph, doc_id: str) -> list[str]:
    return [n.doc_id for n in graph.neighbors(doc_id) if n.direction == "out"]


class TestPageRank:
    def test_scores_sum_to_one_and_hub_wins(self) -> None:
        nodes = ["a", "b", "c", "hub"]
        edges = [("a", "hub", 1.0), ("b", "hub", 1.0), ("c", "hub", 1.0), ("hub", "a", 1.0)]

        scores, iterations = pagerank(nodes, edges)

        assert sum(scores.values()) == pytest.approx(1.0)
        assert max(scores, key=scores.__getitem__) == "hub"
        assert iterations >= 1

    def test_empty_graph(self) -> None:
        assert pagerank([], []) == ({}, 0)

    def test_isolated_nodes_share_rank_evenly(self) -> None:
        scores, _ = pagerank(["a", "b"], [])
        assert scores["a"] == pytest.approx(0.5)
        assert scores["b"] == pytest.approx(0.5)

    def test_heavier_edge_carries_more_rank(self) -> None:
        edges = [("src", "heavy", 1.5), ("src", "light", 1.0)]
        scores, _ = pagerank(["heavy", "light", "src"], edges)
        assert scores["heavy"] > scores["light"]


class TestUpdates:
    def test_links_create_edges_and_placeholders(self) -> None:
        graph = LinkGraph()

        assert add(graph, "a.md", "see [[B]] and [c](c.md)")

        assert out_ids(graph, "a.md") == ["B.md", "c.md"]
        assert graph.is_placeholder("B.md")
        assert graph.edge_count == 2
        assert graph.documents == {"a.md"}

    def test_unchanged_links_report_no_change(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "[[b]]")
        assert not add(graph, "a.md", "different words, same [[b]]")

    def test_self_link_ignored(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "[[a]]")
        assert graph.edge_count == 0

    def test_placeholder_adopted_by_basename(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "[[Target]]")

        add(graph, "notes/Target.md", "body")

        assert out_ids(graph, "a.md") == ["notes/Target.md"]
        assert "Target.md" not in graph
        assert not graph.is_placeholder("notes/Target.md")

    def test_placeholder_adopted_by_alias(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "[[ml]]")

        add(graph, "machine-learning.md", "---\naliases: [ML]\n---\nbody")

        assert out_ids(graph, "a.md") == ["machine-learning.md"]

    def test_alias_resolves_new_links(self) -> None:
        graph = LinkGraph()
        add(graph, "machine-learning.md", "---\naliases: [ML]\n---\nbody")

        add(graph, "c.md", "[[ML]]")

        assert out_ids(graph, "c.md") == ["machine-learning.md"]

    def test_shortest_path_basename_match(self) -> None:
        graph = LinkGraph()
        add(graph, "deep/nested/topic.md", "x")
        add(graph, "top/topic.md", "x")

        add(graph, "a.md", "[[topic]]")

        assert out_ids(graph, "a.md") == ["top/topic.md"]

    def test_frontmatter_relation_outweighs_body_link(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "---\nrelated: ['[[b]]']\n---\nalso [[b]] and [[c]]")

        by_id = {n.doc_id: n for n in graph.neighbors("a.md")}

        assert by_id["b.md"].kind is LinkKind.FRONTMATTER
        assert by_id["b.md"].weight == 1.5
        assert by_id["c.md"].weight == 1.0
        assert graph.weighted_adjacency("b.md") == {"a.md": 1.5}


class TestRemoveAndRename:
    def test_remove_unreferenced_drops_node(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "[[b]]")

        assert graph.remove("a.md")

        assert "a.md" not in graph
        assert "b.md" not in graph
        assert not graph.remove("a.md")

    def test_remove_referenced_leaves_placeholder(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "[[b]]")
        add(graph, "b.md", "text")

        graph.remove("b.md")

        assert graph.is_placeholder("b.md")
        assert out_ids(graph, "a.md") == ["b.md"]

    def test_rename_repoints_incoming_links(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "[[b]]")
        add(graph, "b.md", "[[c]]")

        assert graph.rename("b.md", "renamed.md")

        assert "b.md" not in graph
        assert out_ids(graph, "a.md") == ["renamed.md"]
        assert out_ids(graph, "renamed.md") == ["c.md"]
        assert "renamed.md" in graph.documents

    def test_rename_unknown_is_noop(self) -> None:
        assert not LinkGraph().rename("x.md", "y.md")


class TestCentrality:
    def test_hub_has_highest_score(self) -> None:
        graph = LinkGraph()
        for i in range(4):
            add(graph, f"n{i}.md", "[[hub]]")
        add(graph, "hub.md", "center")

        scores = graph.centrality()

        assert max(scores, key=scores.__getitem__) == "hub.md"
        assert sum(scores.values()) == pytest.approx(1.0)

    def test_recompute_is_lazy_below_threshold(self) -> None:
        """Small topology changes reuse cached scores until the threshold is crossed."""
        graph = LinkGraph(GraphConfig(recompute_threshold=0.05))
        add(graph, "hub.md", "center")
        for i in range(30):
            add(graph, f"n{i:02d}.md", "[[hub]]")
        graph.centrality()
        assert not graph.needs_recompute

        add(graph, "n00.md", "[[n01]]")
        assert not graph.needs_recompute

        for i in range(1, 5):
            add(graph, f"n{i:02d}.md", f"[[n{i + 1:02d}]]")
        assert graph.needs_recompute

    def test_new_node_forces_recompute(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "text")
        graph.centrality()

        add(graph, "b.md", "text")

        assert graph.needs_recompute
        assert graph.score("b.md") > 0


class TestPersistence:
    def test_dict_roundtrip(self) -> None:
        graph = LinkGraph()
        add(graph, "a.md", "---\nrelated: ['[[b]]']\n---\n[[missing]]")
        add(graph, "b.md", "---\naliases: [Bee]\n---\nbody")

        restored = LinkGraph.from_dict(graph.to_dict())

        assert restored.neighbors("a.md") == graph.neighbors("a.md")
        assert restored.is_placeholder("missing.md")
        assert restored.documents == {"a.md", "b.md"}
        add(restored, "c.md", "[[bee]]")
        assert out_ids(restored, "c.md") == ["b.md"]
