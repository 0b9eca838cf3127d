"""Dependency graph builder.

Constructs the dependency graph of a loaded configuration, showing how
variables and locals flow into resources and data sources, and how those
flow into each other and into outputs.

Architecture:
- Static: references are found by walking parse trees, nothing is evaluated
- Zero fallbacks: an unresolved reference or a cycle raises before planning
- Same dict format as the analyzer/visualizer expect (dataclass -> asdict)

Usage:
    graph = GraphBuilder(config).build()
    graph.topological_order()
    graph.to_dict()
    # Returns: {'nodes': [...], 'edges': [...], 'metadata': {...}}
"""

from dataclasses import asdict
from typing import Any

from converge.declaration.model import Configuration, ResourceBlock
from converge.errors import CycleError, ExpressionError, GraphError, UnresolvedReferenceError
from converge.expressions.evaluator import find_function_names, find_references
from converge.expressions.functions import is_known_function
from converge.graph.analyzer import GraphAnalyzer
from converge.graph.types import GraphEdge, GraphNode, ResourceAddress
from converge.utils.logging import logger

_EDGE_TYPES = {
    "var": "variable_reference",
    "local": "local_reference",
    "resource": "resource_reference",
    "data": "data_reference",
}


class ResourceGraph:
    """Built dependency graph with query helpers."""

    def __init__(self, config: Configuration, nodes: dict[str, GraphNode], edges: list[GraphEdge]):
        self.config = config
        self.nodes = nodes
        self.edges = edges
        self._analyzer = GraphAnalyzer()
        self._dependencies: dict[str, set[str]] = {node_id: set() for node_id in nodes}
        self._dependents: dict[str, set[str]] = {node_id: set() for node_id in nodes}
        for edge in edges:
            self._dependencies[edge.target].add(edge.source)
            self._dependents[edge.source].add(edge.target)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def dependencies(self, node_id: str) -> list[str]:
        """Direct dependencies of a node."""
        return sorted(self._dependencies[self._check(node_id)])

    def dependents(self, node_id: str) -> list[str]:
        """Direct dependents of a node."""
        return sorted(self._dependents[self._check(node_id)])

    def transitive_dependencies(self, node_id: str) -> set[str]:
        return self._analyzer.reachable(self.to_dict(), [self._check(node_id)], "upstream")

    def transitive_dependents(self, node_id: str) -> set[str]:
        return self._analyzer.reachable(self.to_dict(), [self._check(node_id)], "downstream")

    def resource_dependencies(self, node_id: str) -> list[str]:
        """Resources and data sources a node depends on, seeing through locals."""
        found = set()
        pending = list(self._dependencies[self._check(node_id)])
        seen = set()
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            node_type = self.nodes[current].node_type
            if node_type in ("resource", "data"):
                found.add(current)
            elif node_type == "local":
                pending.extend(self._dependencies[current])
        return sorted(found)

    def topological_order(self) -> list[str]:
        return self._analyzer.topological_order(self.to_dict())

    def layers(self) -> dict[int, list[str]]:
        """Groups of mutually independent nodes, in dependency order."""
        return self._analyzer.identify_layers(self.to_dict())

    def block_order(self) -> list[str]:
        """Resource and data blocks in dependency order."""
        return [
            node_id
            for node_id in self.topological_order()
            if self.nodes[node_id].node_type in ("resource", "data")
        ]

    def to_dict(self) -> dict[str, Any]:
        stats = {
            "total_resources": sum(1 for n in self.nodes.values() if n.node_type == "resource"),
            "total_data_sources": sum(1 for n in self.nodes.values() if n.node_type == "data"),
            "total_variables": sum(1 for n in self.nodes.values() if n.node_type == "variable"),
            "total_locals": sum(1 for n in self.nodes.values() if n.node_type == "local"),
            "total_outputs": sum(1 for n in self.nodes.values() if n.node_type == "output"),
            "edges_created": len(self.edges),
            "files_processed": len(self.config.files),
        }
        return {
            "nodes": [asdict(node) for node in self.nodes.values()],
            "edges": [asdict(edge) for edge in self.edges],
            "metadata": {
                "root": str(self.config.root),
                "graph_type": "converge_dependency",
                "stats": stats,
            },
        }

    def _check(self, node_id: str) -> str:
        if node_id not in self.nodes:
            raise GraphError(f"unknown graph node: {node_id}")
        return node_id


class GraphBuilder:
    """Build the dependency graph of a configuration.

    Zero fallbacks: every reference must resolve and the result must be
    acyclic, otherwise build() raises.
    """

    def __init__(self, config: Configuration):
        self.config = config
        self.nodes: dict[str, GraphNode] = {}
        self.edges: list[GraphEdge] = []

    def build(self) -> ResourceGraph:
        config = self.config

        for name, variable in config.variables.items():
            self.nodes[f"var.{name}"] = GraphNode(
                id=f"var.{name}",
                file=variable.source,
                node_type="variable",
                resource_type=variable.type,
                name=name,
                is_sensitive=variable.sensitive,
            )
        for name in config.locals:
            self.nodes[f"local.{name}"] = GraphNode(
                id=f"local.{name}",
                file=config.local_sources[name],
                node_type="local",
                resource_type="local",
                name=name,
            )
        for address, block in config.blocks.items():
            self.nodes[address] = GraphNode(
                id=address,
                file=block.source,
                node_type="resource" if block.mode == "managed" else "data",
                resource_type=block.type,
                name=block.name,
                metadata={
                    "expansion": block.expansion_kind,
                    "provider": block.provider_name,
                    "create_before_destroy": block.lifecycle.create_before_destroy,
                    "prevent_destroy": block.lifecycle.prevent_destroy,
                },
            )
        for name, output in config.outputs.items():
            self.nodes[f"output.{name}"] = GraphNode(
                id=f"output.{name}",
                file=output.source,
                node_type="output",
                resource_type="output",
                name=name,
                is_sensitive=output.sensitive,
            )

        for name, value in config.locals.items():
            self._link(f"local.{name}", value, config.local_sources[name], None)

        for address, block in config.blocks.items():
            self._link(address, block.config, block.source, block)
            if block.count is not None:
                self._link(address, block.count, block.source, block, meta="count")
            if block.for_each is not None:
                self._link(address, block.for_each, block.source, block, meta="for_each")
            self._link_depends_on(address, block.depends_on, block.source)

        for name, output in config.outputs.items():
            self._link(f"output.{name}", output.value, output.source, None)
            self._link_depends_on(f"output.{name}", output.depends_on, output.source)

        graph = ResourceGraph(config, self.nodes, self._dedupe(self.edges))

        cycles = GraphAnalyzer().detect_cycles(graph.to_dict())
        if cycles:
            raise CycleError([cycle["nodes"] for cycle in cycles])

        logger.info(
            "Built dependency graph: {} nodes, {} edges",
            len(graph.nodes),
            len(graph.edges),
        )
        return graph

    def _link(
        self,
        target: str,
        value: Any,
        source_file: str,
        block: ResourceBlock | None,
        meta: str | None = None,
    ) -> None:
        for fn_name in find_function_names(value):
            if not is_known_function(fn_name):
                raise ExpressionError(f"{target}: unknown function {fn_name}()")

        for ref in find_references(value):
            if ref.kind == "path":
                continue
            if ref.kind == "count":
                if block is None or block.count is None or meta == "count":
                    raise GraphError(f"{target}: count.index is only valid inside a resource with count")
                continue
            if ref.kind == "each":
                if block is None or block.for_each is None or meta == "for_each":
                    raise GraphError(f"{target}: each.key/each.value are only valid inside a resource with for_each")
                continue

            if ref.kind == "var":
                declared = ref.address[len("var."):] in self.config.variables
            elif ref.kind == "local":
                declared = ref.address[len("local."):] in self.config.locals
            else:
                declared = ref.address in self.config.blocks
            if not declared:
                raise UnresolvedReferenceError(ref.address, target, source_file)

            metadata = {}
            if ref.attribute:
                metadata["attribute"] = ref.attribute
            if meta:
                metadata["meta_argument"] = meta
            self.edges.append(
                GraphEdge(
                    source=ref.address,
                    target=target,
                    file=source_file,
                    edge_type=_EDGE_TYPES[ref.kind],
                    expression=ref.address + (f".{ref.attribute}" if ref.attribute else ""),
                    metadata=metadata,
                )
            )

    def _link_depends_on(self, target: str, depends_on: list[str], source_file: str) -> None:
        for entry in depends_on:
            try:
                address = ResourceAddress.parse(entry)
            except GraphError:
                raise UnresolvedReferenceError(entry, target, source_file) from None
            if address.key is not None or address.block not in self.config.blocks:
                raise UnresolvedReferenceError(entry, target, source_file)
            self.edges.append(
                GraphEdge(
                    source=address.block,
                    target=target,
                    file=source_file,
                    edge_type="explicit_dependency",
                    expression=entry,
                    metadata={"explicit_depends_on": True},
                )
            )

    @staticmethod
    def _dedupe(edges: list[GraphEdge]) -> list[GraphEdge]:
        unique: dict[tuple[str, str, str], GraphEdge] = {}
        for edge in edges:
            unique.setdefault((edge.source, edge.target, edge.edge_type), edge)
        return list(unique.values())
