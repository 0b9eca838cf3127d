"""Graphviz DOT export of the dependency graph.

Visual encoding:
- Node shape: type (box=resource, cylinder=data source, ellipse=variable/local, note=output)
- Node color: planned action when a plan is given, otherwise node type
- Edge style: dashed for explicit depends_on, solid for references
"""

from typing import Any


class GraphVisualizer:
    """Transform a dependency graph into DOT."""

    TYPE_COLORS = {
        "resource": "#1976D2",
        "data": "#00897B",
        "variable": "#757575",
        "local": "#9E9E9E",
        "output": "#6A1B9A",
    }

    ACTION_COLORS = {
        "create": "#388E3C",
        "update": "#FBC02D",
        "replace": "#F57C00",
        "delete": "#D32F2F",
        "read": "#00897B",
        "no-op": "#BDBDBD",
    }

    SHAPES = {
        "resource": "box",
        "data": "cylinder",
        "variable": "ellipse",
        "local": "ellipse",
        "output": "note",
    }

    def generate_dot(
        self,
        graph: dict[str, Any],
        actions: dict[str, str] | None = None,
        options: dict[str, Any] | None = None,
    ) -> str:
        """
        Generate DOT for a graph dict (``ResourceGraph.to_dict()``).

        Args:
            graph: Graph dict with 'nodes' and 'edges'
            actions: Optional block address -> planned action, used for coloring
            options: 'title', 'resources_only'

        Returns:
            DOT format string ready for Graphviz
        """
        options = options or {}
        actions = actions or {}
        resources_only = options.get("resources_only", False)

        nodes = graph.get("nodes", [])
        if resources_only:
            nodes = [n for n in nodes if n["node_type"] in ("resource", "data")]
        shown = {n["id"] for n in nodes}

        dot_lines = ["digraph G {"]
        dot_lines.append("  rankdir=LR;")
        dot_lines.append('  bgcolor="white";')
        dot_lines.append('  node [fontname="Arial", fontsize=10, style=filled, fontcolor="white"];')
        dot_lines.append('  edge [fontname="Arial", fontsize=8, color="#666666"];')
        if options.get("title"):
            dot_lines.append(f'  label="{options["title"]}";')
            dot_lines.append("  labelloc=t;")

        for node in sorted(nodes, key=lambda n: n["id"]):
            node_type = node["node_type"]
            action = actions.get(node["id"])
            color = self.ACTION_COLORS.get(action) if action else None
            color = color or self.TYPE_COLORS.get(node_type, "#808080")
            label = node["id"] if not action else f"{node['id']}\\n({action})"
            attrs = [
                f'label="{label}"',
                f'fillcolor="{color}"',
                f"shape={self.SHAPES.get(node_type, 'box')}",
            ]
            dot_lines.append(f'  {self._sanitize_id(node["id"])} [{", ".join(attrs)}];')

        for edge in graph.get("edges", []):
            if edge["source"] not in shown or edge["target"] not in shown:
                continue
            style = "dashed" if edge["edge_type"] == "explicit_dependency" else "solid"
            dot_lines.append(
                f"  {self._sanitize_id(edge['source'])} -> {self._sanitize_id(edge['target'])} "
                f"[style={style}];"
            )

        dot_lines.append("}")
        return "\n".join(dot_lines)

    def _sanitize_id(self, node_id: str) -> str:
        """Quote node IDs for DOT; addresses contain dots and brackets."""
        escaped = node_id.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
