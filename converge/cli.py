"""converge CLI - Main entry point and command registration hub."""
# ruff: noqa: E402 - Intentional lazy loading: commands imported after cli group definition

import platform
import subprocess
import sys

import click
from rich.table import Table

from converge import __version__
from converge.pipeline.ui import console
from converge.utils.logging import set_console_level

if platform.system() == "Windows":
    subprocess.run(["cmd", "/c", "chcp", "65001"], shell=False, capture_output=True, timeout=1)
    import codecs

    sys.stdout = codecs.getwriter("utf-8")(sys.stdout.buffer, "strict")
    sys.stderr = codecs.getwriter("utf-8")(sys.stderr.buffer, "strict")


class VerboseGroup(click.Group):
    """Categorized help generated from the registered commands."""

    def format_commands(self, ctx, formatter):
        """Override to suppress default command listing (we use categorized format in format_help)."""
        pass

    COMMAND_CATEGORIES = {
        "AUTHORING": {
            "title": "AUTHORING",
            "description": "Check a configuration before touching anything remote",
            "commands": ["validate", "graph", "check", "render"],
            "command_meta": {
                "validate": {
                    "run_when": "After every edit",
                },
                "graph": {
                    "use_when": "Need to see apply order or export Graphviz",
                },
                "check": {
                    "use_when": "Verifying subnet, routing, ingress and task wiring",
                },
                "render": {
                    "use_when": "Debugging a templatefile() template",
                },
            },
        },
        "RECONCILIATION": {
            "title": "RECONCILIATION",
            "description": "Plan and apply changes to remote objects",
            "commands": ["plan", "apply", "destroy", "refresh"],
            "command_meta": {
                "plan": {
                    "run_when": "Before every apply",
                },
                "apply": {
                    "use_when": "Making remote objects match the configuration",
                },
                "destroy": {
                    "use_when": "Tearing everything down",
                },
                "refresh": {
                    "use_when": "Recording drift without planning",
                },
            },
        },
        "STATE": {
            "title": "STATE",
            "description": "Recorded state, outputs and run history",
            "commands": ["output", "state"],
            "command_meta": {
                "output": {
                    "use_when": "Need an output value in a script",
                },
                "state": {
                    "use_when": "Inspecting, forgetting or unlocking state",
                },
            },
        },
    }

    def format_help(self, ctx, formatter):
        """Generate Rich-styled categorized help."""
        super().format_help(ctx, formatter)

        registered = {
            name: cmd
            for name, cmd in self.commands.items()
            if not name.startswith("_") and not getattr(cmd, "hidden", False)
        }

        console.print()
        console.rule("[bold]COMMANDS[/bold]")

        for _category_id, category_data in self.COMMAND_CATEGORIES.items():
            console.print(f"\n[bold cyan]{category_data['title']}[/bold cyan]")
            console.print(f"[dim]{category_data['description']}[/dim]")

            table = Table(show_header=False, box=None, padding=(0, 2, 0, 0))
            table.add_column("Command", style="cmd", width=12)
            table.add_column("Description", style="white")
            table.add_column("Hint", style="dim", width=44)

            for cmd_name in category_data["commands"]:
                if cmd_name not in registered:
                    continue
                cmd = registered[cmd_name]

                first_line = (cmd.help or "").split("\n")[0].strip()
                period_idx = first_line.find(".")
                short_help = first_line[:period_idx] if period_idx > 0 else first_line
                if len(short_help) > 50:
                    short_help = short_help[:50].rsplit(" ", 1)[0] + "..."

                cmd_meta = category_data.get("command_meta", {}).get(cmd_name, {})
                hint = ""
                if "use_when" in cmd_meta:
                    hint = f"USE: {cmd_meta['use_when']}"
                elif "run_when" in cmd_meta:
                    hint = f"RUN: {cmd_meta['run_when']}"

                table.add_row(cmd_name, short_help, hint)

            console.print(table)

        console.print()
        console.rule()
        console.print("For detailed options: [cmd]converge <command> --help[/cmd]")


@click.group(cls=VerboseGroup)
@click.version_option(version=__version__, prog_name="converge")
@click.help_option("-h", "--help")
@click.option("-v", "--verbose", count=True, help="More log output on stderr (-v info, -vv debug)")
def cli(verbose):
    """converge - Declarative infrastructure reconciliation

    \b
    QUICK START:
      converge validate --dir examples/fargate
      converge plan --dir examples/fargate
      converge apply --dir examples/fargate

    \b
    For detailed options: converge <command> --help"""
    if verbose:
        set_console_level("DEBUG" if verbose > 1 else "INFO")


from converge.commands.apply import apply, destroy
from converge.commands.check import check
from converge.commands.graph import graph
from converge.commands.output import output
from converge.commands.plan import plan
from converge.commands.refresh import refresh
from converge.commands.render import render
from converge.commands.state import state
from converge.commands.validate import validate

cli.add_command(validate)
cli.add_command(graph)
cli.add_command(check)
cli.add_command(render)

cli.add_command(plan)
cli.add_command(apply)
cli.add_command(destroy)
cli.add_command(refresh)

cli.add_command(output)
cli.add_command(state)


def main():
    """Main entry point for console script."""
    cli()


if __name__ == "__main__":
    main()
