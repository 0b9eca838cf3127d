"""Pure graph algorithms over the dependency graph.

This module provides ONLY non-interpretive algorithms:
- Cycle detection (DFS)
- Layer identification (Kahn's topological sort)
- Transitive closure in either direction (BFS)

Graphs are passed as ``{'nodes': [{'id': ...}], 'edges': [{'source', 'target'}]}``,
the same shape ``ResourceGraph.to_dict()`` produces.
"""

from collections import defaultdict, deque
from typing import Any


class GraphAnalyzer:
    """Analyze dependency graphs using pure algorithms."""

    def detect_cycles(self, graph: dict[str, Any]) -> list[dict[str, Any]]:
        """
        Detect cycles in the dependency graph using DFS.

        Args:
            graph: Graph with 'nodes' and 'edges' keys

        Returns:
            List of cycles, each with nodes (first node repeated at the end) and size
        """
        adj = defaultdict(list)
        for edge in graph.get("edges", []):
            adj[edge["source"]].append(edge["target"])

        visited = set()
        rec_stack = set()
        cycles = []
        seen = set()

        def dfs(node: str, path: list[str]) -> None:
            visited.add(node)
            rec_stack.add(node)
            path.append(node)

            for neighbor in sorted(adj[node]):
                if neighbor not in visited:
                    dfs(neighbor, path.copy())
                elif neighbor in rec_stack:
                    cycle_start = path.index(neighbor)
                    cycle_nodes = path[cycle_start:] + [neighbor]
                    signature = frozenset(cycle_nodes)
                    if signature not in seen:
                        seen.add(signature)
                        cycles.append({
                            "nodes": cycle_nodes,
                            "size": len(cycle_nodes) - 1,
                        })

            rec_stack.remove(node)

        for node in sorted(n["id"] for n in graph.get("nodes", [])):
            if node not in visited:
                dfs(node, [])

        cycles.sort(key=lambda c: c["size"], reverse=True)
        return cycles

    def identify_layers(self, graph: dict[str, Any]) -> dict[int, list[str]]:
        """
        Group nodes into layers using Kahn's algorithm.

        Layer 0 holds nodes without dependencies; every node sits one layer
        after the deepest of its dependencies. Nodes on a cycle never reach
        in-degree zero and are left out.

        Returns:
            Dict mapping layer number to sorted list of node IDs
        """
        nodes = sorted({node["id"] for node in graph.get("nodes", [])})
        in_degree = {node_id: 0 for node_id in nodes}
        adj = defaultdict(list)

        for edge in graph.get("edges", []):
            adj[edge["source"]].append(edge["target"])
            in_degree[edge["target"]] = in_degree.get(edge["target"], 0) + 1

        layers = {}
        current_layer = [node_id for node_id in nodes if in_degree[node_id] == 0]
        layer_num = 0

        while current_layer:
            layers[layer_num] = sorted(current_layer)
            next_layer = []

            for node in current_layer:
                for neighbor in adj[node]:
                    in_degree[neighbor] -= 1
                    if in_degree[neighbor] == 0:
                        next_layer.append(neighbor)

            current_layer = next_layer
            layer_num += 1

        return layers

    def topological_order(self, graph: dict[str, Any]) -> list[str]:
        """Flatten layers into one dependency-respecting order."""
        order = []
        layers = self.identify_layers(graph)
        for layer_num in sorted(layers):
            order.extend(layers[layer_num])
        return order

    def reachable(self, graph: dict[str, Any], starts: list[str], direction: str) -> set[str]:
        """
        Every node reachable from ``starts`` (starts excluded).

        Args:
            direction: "downstream" follows edges source -> target (dependents),
                "upstream" follows them backwards (dependencies)
        """
        adj = defaultdict(list)
        for edge in graph.get("edges", []):
            if direction == "downstream":
                adj[edge["source"]].append(edge["target"])
            else:
                adj[edge["target"]].append(edge["source"])

        found = set()
        to_visit = deque(starts)
        visited = set()

        while to_visit:
            node = to_visit.popleft()
            if node in visited:
                continue
            visited.add(node)
            for neighbor in adj[node]:
                if neighbor not in starts:
                    found.add(neighbor)
                to_visit.append(neighbor)

        return found

    def get_graph_summary(self, graph: dict[str, Any]) -> dict[str, Any]:
        """Basic counts without interpretation."""
        by_type: dict[str, int] = defaultdict(int)
        for node in graph.get("nodes", []):
            by_type[node.get("node_type", "unknown")] += 1
        edge_types: dict[str, int] = defaultdict(int)
        for edge in graph.get("edges", []):
            edge_types[edge.get("edge_type", "unknown")] += 1
        layers = self.identify_layers(graph)
        return {
            "node_count": len(graph.get("nodes", [])),
            "edge_count": len(graph.get("edges", [])),
            "nodes_by_type": dict(by_type),
            "edges_by_type": dict(edge_types),
            "depth": len(layers),
            "widest_layer": max((len(v) for v in layers.values()), default=0),
        }
