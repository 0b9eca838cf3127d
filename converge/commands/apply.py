"""Apply a plan: create, update, replace and delete resources."""

import json
import sys
from pathlib import Path

import click

from converge.events import ConsoleLogger
from converge.pipeline.executor import Executor
from converge.pipeline.renderer import RichRenderer
from converge.pipeline.structures import ApplyResult, ChangeStatus
from converge.pipeline.ui import console, print_status_panel
from converge.planning.changes import Plan
from converge.planning.render import render_plan
from converge.utils.error_handler import handle_exceptions
from converge.utils.exit_codes import ExitCodes
from converge.workspace import Workspace

from .options import load_workspace, workspace_options


def print_apply_complete_panel(result: ApplyResult, destroy: bool = False) -> None:
    """Print the APPLY COMPLETE / INCOMPLETE status panel."""
    verb = "DESTROY" if destroy else "APPLY"
    applied = result.count(ChangeStatus.APPLIED)
    failed = result.count(ChangeStatus.FAILED)
    skipped = result.count(ChangeStatus.SKIPPED)
    cancelled = result.count(ChangeStatus.CANCELLED)
    detail = f"Total time: {result.elapsed:.1f}s (run #{result.run_id})"

    if result.complete:
        print_status_panel(f"{verb} COMPLETE", f"{applied} change(s) applied", detail, level="success")
    elif result.cancelled:
        print_status_panel(
            f"{verb} CANCELLED",
            f"{applied} applied, {cancelled} cancelled, {failed} failed, {skipped} skipped",
            detail,
            level="high",
        )
    else:
        print_status_panel(
            f"{verb} INCOMPLETE",
            f"{applied} applied, {failed} failed, {skipped} skipped",
            detail,
            level="critical",
        )


def require_approval_for_json(as_json: bool, auto_approve: bool) -> None:
    """Refuse --json without --auto-approve: JSON mode never prompts."""
    if as_json and not auto_approve:
        raise click.UsageError("--json cannot prompt for confirmation; add --auto-approve")


def run_apply(
    workspace: Workspace,
    plan: Plan,
    auto_approve: bool,
    parallelism: int | None,
    as_json: bool,
    quiet: bool,
) -> None:
    """Render, confirm, execute; exits with APPLY_INCOMPLETE on partial success."""
    if not as_json:
        render_plan(plan, console, details=not quiet)

    if not plan.has_changes and not plan.destroy:
        if not as_json:
            console.print("\n[success]Nothing to apply.[/success]")

    elif not auto_approve:
        verb = "destroy these resources" if plan.destroy else "perform these actions"
        click.confirm(f"\nDo you want to {verb}?", abort=True)

    state = workspace.open_state(create=True)
    try:
        if as_json or not sys.stdout.isatty():
            observer = ConsoleLogger(quiet=quiet or as_json)
            renderer = None
        else:
            renderer = observer = RichRenderer(quiet=quiet)

        executor = Executor(
            plan,
            state,
            workspace.registry,
            parallelism=parallelism or workspace.parallelism,
            retry=workspace.retry_policy(),
            call_timeout=workspace.call_timeout,
            observer=observer,
            handle_signals=True,
        )
        if renderer:
            renderer.start()
        try:
            result = executor.run()
        finally:
            if renderer:
                renderer.stop()
    finally:
        state.close()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        console.print()
        print_apply_complete_panel(result, destroy=plan.destroy)

    if not result.complete:
        sys.exit(ExitCodes.APPLY_INCOMPLETE)


@click.command()
@handle_exceptions
@workspace_options
@click.argument("plan_file", required=False, type=click.Path(exists=True, dir_okay=False))
@click.option("--auto-approve", is_flag=True, help="Skip the interactive confirmation")
@click.option("--target", "targets", multiple=True, metavar="ADDRESS", help="Limit to ADDRESS and its dependencies (repeatable)")
@click.option("--refresh/--no-refresh", default=True, help="Read remote objects first to detect drift (default: on)")
@click.option("--parallelism", type=click.IntRange(min=1), help="Max concurrent provider calls (default: limits.parallelism)")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON (requires --auto-approve or PLAN_FILE)")
@click.option("--quiet", is_flag=True, help="Minimal output")
def apply(config_dir, var_assignments, var_files, plan_file, auto_approve, targets, refresh, parallelism, as_json, quiet):
    """Reconcile remote objects with the configuration.

    Plans (or loads PLAN_FILE), asks for confirmation, then applies the
    changes in dependency order. Independent changes run in parallel up to
    --parallelism; transient provider failures are retried with backoff.
    State is written after every change, so an interrupted run (Ctrl+C)
    keeps whatever was already done; dependents of a failed change are
    skipped.

    A saved plan is refused if the state changed since it was made.

    Examples:
      converge apply --dir examples/fargate
      converge apply --auto-approve --parallelism 4
      converge apply plan.json

    Exit Codes:
      0  = Every change applied
      2  = Usage error (e.g. --json without --auto-approve)
      3  = Some changes failed, were skipped or cancelled
      10 = State is locked by another process
    """
    workspace = load_workspace(config_dir, var_files, var_assignments)
    if plan_file:
        if targets:
            raise click.UsageError("--target cannot be combined with a saved plan")
        plan = Plan.load(Path(plan_file))
        auto_approve = True
    else:
        require_approval_for_json(as_json, auto_approve)
        state = workspace.open_state(create=True)
        try:
            plan = workspace.planner(state, refresh=refresh, targets=targets).plan()
        finally:
            state.close()
    run_apply(workspace, plan, auto_approve, parallelism, as_json, quiet)


@click.command()
@handle_exceptions
@workspace_options
@click.option("--auto-approve", is_flag=True, help="Skip the interactive confirmation")
@click.option("--target", "targets", multiple=True, metavar="ADDRESS", help="Destroy ADDRESS and everything depending on it")
@click.option("--refresh/--no-refresh", default=True, help="Read remote objects first (default: on)")
@click.option("--parallelism", type=click.IntRange(min=1), help="Max concurrent provider calls")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON (requires --auto-approve)")
@click.option("--quiet", is_flag=True, help="Minimal output")
def destroy(config_dir, var_assignments, var_files, auto_approve, targets, refresh, parallelism, as_json, quiet):
    """Delete every object recorded in state, dependents first.

    Resources with lifecycle.prevent_destroy stop the plan before anything
    is deleted.

    Examples:
      converge destroy --dir examples/fargate --auto-approve
      converge destroy --target aws_ecs_service.main
    """
    require_approval_for_json(as_json, auto_approve)
    workspace = load_workspace(config_dir, var_files, var_assignments)
    state = workspace.open_state()
    try:
        plan = workspace.planner(state, refresh=refresh, destroy=True, targets=targets).plan()
    finally:
        state.close()
    run_apply(workspace, plan, auto_approve, parallelism, as_json, quiet)
