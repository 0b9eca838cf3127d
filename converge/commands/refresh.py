"""Update state from the remote objects it records."""

import json
from dataclasses import replace

import click
from rich.table import Table

from converge.pipeline.ui import console, print_success, print_warning
from converge.planning.planner import drifted_attributes, read_remote
from converge.utils.error_handler import handle_exceptions
from converge.utils.logging import logger

from .options import load_workspace, workspace_options


@click.command()
@handle_exceptions
@workspace_options
@click.option("--dry-run", is_flag=True, help="Report drift without writing state")
@click.option("--json", "as_json", is_flag=True, help="Print the drift report as JSON")
def refresh(config_dir, var_assignments, var_files, dry_run, as_json):
    """Detect drift and record the remote truth in state.

    Reads every object in state back from its provider. Objects deleted
    outside converge are dropped from state; changed attributes are
    overwritten with what the provider reports. The configuration is not
    consulted, so nothing is planned or changed remotely.

    Examples:
      converge refresh --dir examples/fargate
      converge refresh --dry-run --json
    """
    workspace = load_workspace(config_dir, var_files, var_assignments)
    registry = workspace.registry
    state = workspace.open_state()
    drift = []
    try:
        with state.locked(operation="refresh"):
            for entry in state.list():
                current = read_remote(registry, entry)
                if current is None:
                    drift.append({"address": entry.address, "kind": "deleted", "attributes": []})
                    if not dry_run:
                        state.remove(entry.address)
                    continue
                changed = drifted_attributes(entry.attributes, current)
                if not changed:
                    continue
                drift.append({"address": entry.address, "kind": "modified", "attributes": changed})
                if not dry_run:
                    state.put(replace(entry, attributes=current))
    finally:
        state.close()
    logger.info("Refresh: {} drifted object(s){}", len(drift), " (dry run)" if dry_run else "")

    if as_json:
        click.echo(json.dumps({"dry_run": dry_run, "drift": drift}, indent=2))
        return

    if not drift:
        print_success("No drift: state matches every remote object")
        return

    table = Table(title="Drift")
    table.add_column("Address", style="cyan")
    table.add_column("Kind")
    table.add_column("Attributes", style="dim")
    for item in drift:
        style = "delete" if item["kind"] == "deleted" else "update"
        table.add_row(item["address"], f"[{style}]{item['kind']}[/{style}]", ", ".join(item["attributes"]))
    console.print(table)
    if dry_run:
        print_warning("Dry run: state not updated")
    else:
        print_success(f"State updated for {len(drift)} object(s)")
