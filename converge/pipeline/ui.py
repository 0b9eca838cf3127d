"""Shared Rich console and the few message helpers the commands print with.

Commands import ``console`` from here instead of building their own, so the
plan symbols, severities and status panels use one set of styles.
"""

import sys

from rich.console import Console
from rich.panel import Panel
from rich.text import Text
from rich.theme import Theme

# Plan action styles are named after Action values ("no-op" -> "noop")
CONVERGE_THEME = Theme({
    "info": "bold cyan",
    "warning": "bold yellow",
    "error": "bold red",
    "success": "bold green",
    "critical": "bold red",
    "high": "bold yellow",
    "medium": "bold blue",
    "low": "cyan",
    "create": "green",
    "update": "yellow",
    "replace": "magenta",
    "delete": "red",
    "read": "cyan",
    "noop": "dim white",
    "cmd": "bold magenta",
    "path": "bold cyan",
    "dim": "dim white",
})

console = Console(theme=CONVERGE_THEME, force_terminal=sys.stdout.isatty())

# level -> border colour; the heading uses the matching theme style
PANEL_BORDERS = {
    "critical": "red",
    "high": "yellow",
    "medium": "blue",
    "low": "cyan",
    "success": "green",
    "info": "cyan",
}


def print_warning(msg: str) -> None:
    console.print(f"[warning]WARNING:[/warning] {msg}")


def print_success(msg: str) -> None:
    console.print(f"[success]OK:[/success] {msg}")


def print_status_panel(status: str, message: str, detail: str, level: str = "info") -> None:
    """Boxed end-of-command status, e.g. APPLY COMPLETE or CHECK FAILED.

    ``level`` is a severity or "success"/"info" and picks the border colour.
    """
    border = PANEL_BORDERS.get(level, "white")
    heading = level if level in PANEL_BORDERS else "white"
    body = Text.assemble(
        (f"STATUS: [{status}]\n", CONVERGE_THEME.styles.get(heading, heading)),
        (f"{message}\n", border),
        (detail, border),
    )
    console.print(Panel(body, border_style=border, expand=False))
