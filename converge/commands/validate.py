"""Validate a configuration without touching state or providers."""

import json

import click
from rich.table import Table

from converge.declaration.variables import describe_variables
from converge.graph.builder import GraphBuilder
from converge.pipeline.ui import console, print_success
from converge.utils.error_handler import handle_exceptions

from .options import load_workspace, workspace_options


@click.command()
@handle_exceptions
@workspace_options
@click.option("--show-vars", is_flag=True, help="List resolved variable values (sensitive ones masked)")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def validate(config_dir, var_assignments, var_files, show_vars, as_json):
    """Check that a configuration loads, resolves and forms an acyclic graph.

    Loads every *.tf.json / *.cv.json / *.cv.yaml file in the directory,
    resolves variables, checks that every reference points at something
    declared, that count/for_each are used correctly, and that the
    dependency graph has no cycles. Nothing remote is contacted.

    Examples:
      converge validate --dir examples/fargate
      converge validate --dir infra --var az_count=3 --show-vars

    Exit Codes:
      0 = Configuration is valid
      1 = Declaration, variable, reference or cycle error
    """
    workspace = load_workspace(config_dir, var_files, var_assignments)
    graph = GraphBuilder(workspace.config).build()
    summary = workspace.config.summary()
    layers = graph.layers()

    if as_json:
        click.echo(
            json.dumps(
                {
                    "valid": True,
                    "summary": summary,
                    "graph": graph.to_dict()["metadata"]["stats"],
                    "depth": len(layers),
                    "variables": describe_variables(workspace.config, workspace.variables)
                    if show_vars
                    else None,
                },
                indent=2,
                default=str,
            )
        )
        return

    print_success(
        f"Configuration valid: {summary['resources']} resources, "
        f"{summary['data_sources']} data sources, {summary['variables']} variables, "
        f"{summary['outputs']} outputs in {summary['files']} file(s)"
    )
    console.print(f"  Dependency depth: {len(layers)} layer(s), {len(graph.edges)} edge(s)")

    if show_vars:
        table = Table(title="Variables")
        table.add_column("Name", style="cyan")
        table.add_column("Type")
        table.add_column("Value")
        table.add_column("Description", style="dim")
        for row in describe_variables(workspace.config, workspace.variables):
            table.add_row(row["name"], row["type"], json.dumps(row["value"], default=str), row["description"])
        console.print(table)
