"""Show output values from state."""

import json

import click
from rich.table import Table

from converge.errors import StateError
from converge.pipeline.ui import console
from converge.utils.error_handler import handle_exceptions

from .options import load_workspace

SENSITIVE_MASK = "(sensitive)"


@click.command()
@handle_exceptions
@click.argument("name", required=False)
@click.option("--dir", "config_dir", default=".", type=click.Path(exists=True, file_okay=False), help="Configuration directory")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON")
@click.option("--raw", is_flag=True, help="Print NAME's value as a bare string (for scripts)")
def output(name, config_dir, as_json, raw):
    """Print outputs recorded by the last complete apply.

    Sensitive outputs are masked in the listing; ask for one by NAME to
    see its value.

    Examples:
      converge output
      converge output alb_hostname --raw
      converge output --json
    """
    workspace = load_workspace(config_dir)
    state = workspace.open_state()
    try:
        outputs = state.outputs()
    finally:
        state.close()

    if name:
        if name not in outputs:
            raise StateError(f"output {name!r} not found (known: {', '.join(outputs) or 'none'})")
        value = outputs[name]["value"]
        if raw:
            click.echo(value if isinstance(value, str) else json.dumps(value))
        else:
            click.echo(json.dumps(value, indent=2))
        return

    if raw:
        raise click.UsageError("--raw needs an output NAME")

    if as_json:
        click.echo(
            json.dumps(
                {
                    key: {
                        "value": SENSITIVE_MASK if item["sensitive"] else item["value"],
                        "sensitive": item["sensitive"],
                    }
                    for key, item in outputs.items()
                },
                indent=2,
            )
        )
        return

    if not outputs:
        console.print("[dim]No outputs recorded.[/dim]")
        return
    table = Table(title="Outputs")
    table.add_column("Name", style="cyan")
    table.add_column("Value")
    for key, item in outputs.items():
        shown = SENSITIVE_MASK if item["sensitive"] else json.dumps(item["value"])
        table.add_row(key, shown)
    console.print(table)
