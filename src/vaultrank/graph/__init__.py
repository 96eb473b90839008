"""Reference graph between documents and its centrality scores."""

from vaultrank.graph.links import LinkGraph, Neighbor, pagerank

__all__ = ["LinkGraph", "Neighbor", "pagerank"]
