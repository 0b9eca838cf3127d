"""Inspect and edit the state database."""

import json
from pathlib import Path

import click
from rich.table import Table

from converge.errors import StateError
from converge.pipeline.ui import console, print_success, print_warning
from converge.utils.error_handler import handle_exceptions

from .options import load_workspace

dir_option = click.option(
    "--dir",
    "config_dir",
    default=".",
    type=click.Path(exists=True, file_okay=False),
    help="Configuration directory",
)


@click.group()
def state():
    """Inspect and edit recorded state.

    State maps every resource instance address (aws_subnet.private[0]) to
    the attributes last seen for it. Edits here never touch remote objects.
    """
    pass


@state.command("list")
@handle_exceptions
@dir_option
@click.argument("prefix", required=False)
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def list_entries(config_dir, prefix, as_json):
    """List instance addresses, optionally under a block PREFIX."""
    store = load_workspace(config_dir).open_state()
    try:
        entries = store.list(prefix)
        deposed = store.deposed(prefix)
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps([entry.address for entry in entries], indent=2))
        return
    for entry in entries:
        click.echo(entry.address)
    for entry in deposed:
        click.echo(f"{entry.address} (deposed {entry.deposed})")


@state.command("show")
@handle_exceptions
@dir_option
@click.argument("address")
def show(config_dir, address):
    """Show every recorded attribute of one instance."""
    store = load_workspace(config_dir).open_state()
    try:
        entry = store.get(address)
    finally:
        store.close()
    if entry is None:
        raise StateError(f"{address} is not in state")

    console.print(f"[bold]{entry.address}[/bold]  [dim]provider={entry.provider} updated={entry.updated_at}[/dim]")
    table = Table(show_header=True)
    table.add_column("Attribute", style="cyan")
    table.add_column("Value")
    for key in sorted(entry.attributes):
        table.add_row(key, json.dumps(entry.attributes[key]))
    console.print(table)
    if entry.dependencies:
        console.print(f"[dim]Depends on: {', '.join(entry.dependencies)}[/dim]")


@state.command("rm")
@handle_exceptions
@dir_option
@click.argument("addresses", nargs=-1, required=True)
def rm(config_dir, addresses):
    """Forget instances without deleting the remote objects.

    An address without an index removes every instance of that block.
    """
    store = load_workspace(config_dir).open_state()
    removed = []
    try:
        with store.locked(operation="state rm"):
            for address in addresses:
                entries = store.list(address)
                if not entries:
                    print_warning(f"{address} is not in state")
                for entry in entries:
                    store.remove(entry.address)
                    removed.append(entry.address)
    finally:
        store.close()
    for address in removed:
        click.echo(f"Removed {address}")
    print_success(f"{len(removed)} instance(s) removed from state")


@state.command("pull")
@handle_exceptions
@dir_option
@click.option("--out", type=click.Path(dir_okay=False), help="Write the snapshot to a file")
def pull(config_dir, out):
    """Export state as a JSON snapshot."""
    store = load_workspace(config_dir).open_state()
    try:
        snapshot = store.export()
    finally:
        store.close()
    text = json.dumps(snapshot, indent=2)
    if out:
        Path(out).write_text(text + "\n", encoding="utf-8")
        click.echo(f"State (serial {snapshot['serial']}) written to {out}")
    else:
        click.echo(text)


@state.command("push")
@handle_exceptions
@dir_option
@click.argument("snapshot_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--force", is_flag=True, help="Accept a snapshot from another lineage or an older serial")
def push(config_dir, snapshot_file, force):
    """Replace state with a snapshot made by 'state pull'."""
    try:
        snapshot = json.loads(Path(snapshot_file).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise StateError(f"{snapshot_file} is not valid JSON: {e}") from None

    store = load_workspace(config_dir).open_state(create=True)
    try:
        with store.locked(operation="state push"):
            store.import_(snapshot, force=force)
        serial = store.serial()
    finally:
        store.close()
    print_success(f"State replaced from {snapshot_file} (serial {serial})")


@state.command("unlock")
@handle_exceptions
@dir_option
@click.argument("lock_id")
def unlock(config_dir, lock_id):
    """Release a lock left behind by a crashed process.

    The LOCK_ID is printed in the 'state is locked' error.
    """
    store = load_workspace(config_dir).open_state()
    try:
        released = store.force_unlock(lock_id)
    finally:
        store.close()
    if not released:
        raise StateError(f"no lock with id {lock_id}")
    print_success(f"Lock {lock_id} released")


@state.command("journal")
@handle_exceptions
@dir_option
@click.option("--limit", default=10, type=click.IntRange(min=1), help="Number of runs to show")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
def journal(config_dir, limit, as_json):
    """Show recent apply runs and what each did."""
    store = load_workspace(config_dir).open_state()
    try:
        runs = store.journal(limit)
    finally:
        store.close()

    if as_json:
        click.echo(json.dumps(runs, indent=2))
        return
    if not runs:
        console.print("[dim]No runs recorded.[/dim]")
        return
    for run in runs:
        style = {"succeeded": "success", "running": "info"}.get(run["status"], "error")
        console.print(
            f"[bold]#{run['id']}[/bold] {run['kind']} [{style}]{run['status']}[/{style}] "
            f"[dim]{run['started_at']} request={run['request_id']}[/dim]"
        )
        for event in run["events"]:
            message = f" - {event['message']}" if event["message"] else ""
            console.print(
                f"    {event['status']:<10} {event['action']:<8} {event['address']} "
                f"(attempt {event['attempt']}){message}"
            )
