"""Export the dependency graph."""

import json
from pathlib import Path

import click
from rich.table import Table

from converge.graph.analyzer import GraphAnalyzer
from converge.graph.builder import GraphBuilder
from converge.graph.visualizer import GraphVisualizer
from converge.pipeline.ui import console
from converge.utils.error_handler import handle_exceptions

from .options import load_workspace, workspace_options

ACTION_PRIORITY = ["replace", "delete", "create", "update", "read", "no-op"]


@click.command("graph")
@handle_exceptions
@workspace_options
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["summary", "json", "dot"]),
    default="summary",
    help="Output format",
)
@click.option("--out", type=click.Path(dir_okay=False), help="Write to a file instead of stdout")
@click.option("--plan", "with_plan", is_flag=True, help="Color nodes by planned action (dot) / include actions (json)")
@click.option("--resources-only", is_flag=True, help="Leave variables, locals and outputs out of DOT output")
def graph(config_dir, var_assignments, var_files, fmt, out, with_plan, resources_only):
    """Build the dependency graph and print or export it.

    Nodes are variables, locals, resources, data sources and outputs.
    Edges run from a dependency to its dependent and are typed
    (variable_reference, local_reference, resource_reference,
    data_reference, explicit_dependency, output_reference).

    Examples:
      converge graph --dir examples/fargate
      converge graph --format dot --plan | dot -Tsvg > graph.svg
      converge graph --format json --out .converge/graph.json

    Output:
      summary: layer-by-layer listing of resource and data blocks
      json:    nodes, edges and metadata (graph_type converge_dependency)
      dot:     Graphviz source
    """
    workspace = load_workspace(config_dir, var_files, var_assignments)
    dependency_graph = GraphBuilder(workspace.config).build()
    graph_dict = dependency_graph.to_dict()

    actions: dict[str, str] = {}
    if with_plan:
        state = workspace.open_state() if workspace.state_exists() else None
        try:
            plan = workspace.planner(state, refresh=False).plan()
        finally:
            if state is not None:
                state.close()
        for change in plan.changes:
            current = actions.get(change.block)
            action = change.action.value
            if current is None or ACTION_PRIORITY.index(action) < ACTION_PRIORITY.index(current):
                actions[change.block] = action

    if fmt == "json":
        if actions:
            graph_dict["metadata"]["actions"] = actions
        text = json.dumps(graph_dict, indent=2)
    elif fmt == "dot":
        text = GraphVisualizer().generate_dot(
            graph_dict,
            actions=actions,
            options={"title": str(workspace.root.name), "resources_only": resources_only},
        )
    else:
        text = None

    if text is not None:
        if out:
            output_path = Path(out)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_text(text + "\n", encoding="utf-8")
            click.echo(f"Graph written to {output_path}")
        else:
            click.echo(text)
        return

    summary = GraphAnalyzer().get_graph_summary(graph_dict)
    console.print(
        f"[bold]{summary['node_count']}[/bold] nodes, [bold]{summary['edge_count']}[/bold] edges, "
        f"depth {summary['depth']}, widest layer {summary['widest_layer']}"
    )
    table = Table(title="Apply order (blocks in the same layer are independent)")
    table.add_column("Layer", justify="right", style="dim")
    table.add_column("Blocks", style="cyan")
    blocks = set(dependency_graph.block_order())
    for layer, nodes in sorted(dependency_graph.layers().items()):
        shown = [node for node in nodes if node in blocks]
        if not shown:
            continue
        labels = [f"{node} ({actions[node]})" if node in actions else node for node in shown]
        table.add_row(str(layer), ", ".join(labels))
    console.print(table)
