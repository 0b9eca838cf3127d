"""Dependency graph: addresses, builder, expansion and algorithms."""

from converge.graph.builder import GraphBuilder, ResourceGraph
from converge.graph.types import GraphEdge, GraphNode, ResourceAddress

__all__ = ["GraphBuilder", "ResourceGraph", "GraphEdge", "GraphNode", "ResourceAddress"]
