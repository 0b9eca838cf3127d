"""Compute and show an execution plan."""

import json
import sys
from pathlib import Path

import click

from converge.pipeline.ui import console
from converge.planning.render import render_plan
from converge.utils.error_handler import handle_exceptions
from converge.utils.exit_codes import ExitCodes

from .options import load_workspace, workspace_options


@click.command()
@handle_exceptions
@workspace_options
@click.option("--out", type=click.Path(dir_okay=False), help="Save the plan for 'converge apply PLAN_FILE'")
@click.option("--destroy", is_flag=True, help="Plan the deletion of everything in state")
@click.option("--target", "targets", multiple=True, metavar="ADDRESS", help="Limit to ADDRESS and its dependencies (repeatable)")
@click.option("--refresh/--no-refresh", default=True, help="Read remote objects first to detect drift (default: on)")
@click.option("--show-unchanged", is_flag=True, help="List instances with no changes too")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
@click.option(
    "--detailed-exitcode",
    is_flag=True,
    help="Exit 4 when the plan contains changes, 0 when it does not",
)
def plan(config_dir, var_assignments, var_files, out, destroy, targets, refresh, show_unchanged, as_json, detailed_exitcode):
    """Show what apply would change, without changing anything.

    Diffs the configuration against the last-known state:
      +    create   instance not in state
      ~    update   mutable attribute changed
      -/+  replace  attribute the provider cannot change in place
      -    delete   instance no longer declared
      <=   read     data source read during apply

    With --refresh (the default) every state entry is read back from its
    provider first; changes made outside converge are reported as drift.

    Examples:
      converge plan --dir examples/fargate
      converge plan --out plan.json && converge apply plan.json
      converge plan --target aws_ecs_service.main
      converge plan --destroy

    Exit Codes (with --detailed-exitcode):
      0 = No changes
      4 = Changes present
    """
    workspace = load_workspace(config_dir, var_files, var_assignments)
    state = workspace.open_state() if workspace.state_exists() else None
    try:
        result = workspace.planner(state, refresh=refresh, destroy=destroy, targets=targets).plan()
    finally:
        if state is not None:
            state.close()

    if out:
        result.save(Path(out))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        render_plan(result, console, show_unchanged=show_unchanged)
        if out:
            console.print(f"\nPlan saved to [path]{out}[/path]. Apply it with: [cmd]converge apply {out}[/cmd]")

    if detailed_exitcode and result.has_changes:
        sys.exit(ExitCodes.CHANGES_PRESENT)
