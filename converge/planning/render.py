"""Human rendering of a Plan on the shared Rich console."""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from converge.expressions.values import render_value
from converge.planning.changes import Action, Plan, ResourceChange

SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.REPLACE: "-/+",
    Action.DELETE: "-",
    Action.READ: "<=",
    Action.NO_OP: " ",
}


def _style(action: Action) -> str:
    return action.value.replace("-", "")


def _attribute_lines(change: ResourceChange) -> list[str]:
    before = change.before or {}
    after = change.after or {}
    if change.action in (Action.CREATE, Action.READ):
        return [f"{key} = {render_value(value)}" for key, value in sorted(after.items())]
    if change.action == Action.DELETE:
        return [f"{key} = {render_value(value)}" for key, value in sorted(before.items())]

    lines = []
    for key in change.changed_attributes:
        old = render_value(before.get(key)) if key in before else "null"
        new = render_value(after.get(key)) if key in after else "null"
        marker = "  # forces replacement" if key in change.replace_reasons else ""
        lines.append(f"{key}: {old} -> {new}{marker}")
    return lines


def render_plan(plan: Plan, console: Console, show_unchanged: bool = False, details: bool = True) -> None:
    """Print every change with its reason, attribute diff and the totals."""
    if plan.drift:
        console.rule("[warning]Drift detected[/warning]")
        for item in plan.drift:
            attrs = f": {', '.join(item['attributes'])}" if item["attributes"] else ""
            console.print(f"  [warning]![/warning] {escape(item['address'])} {item['kind']}{escape(attrs)}")
        console.print()

    for change in plan.changes:
        if change.action == Action.NO_OP and not show_unchanged:
            continue
        style = _style(change.action)
        symbol = SYMBOLS[change.action]
        console.print(
            f"[{style}]{symbol:>3}[/{style}] [bold]{escape(change.label)}[/bold] "
            f"[dim]({change.action.value}: {escape(change.reason or '-')})[/dim]"
        )
        if details and change.action != Action.NO_OP:
            for line in _attribute_lines(change):
                console.print(f"      {escape(line)}", highlight=False)

    if plan.outputs:
        console.print()
        console.print("[bold]Outputs:[/bold]")
        for name, value in plan.outputs.items():
            shown = "(sensitive)" if plan.output_decls.get(name, {}).get("sensitive") else render_value(value)
            console.print(f"  {escape(name)} = {escape(shown)}", highlight=False)

    console.print()
    console.print(summary_line(plan.summary()))


def summary_line(summary: dict[str, int]) -> str:
    if not any(summary[action.value] for action in Action if action != Action.NO_OP):
        return "[success]No changes.[/success] Infrastructure matches the configuration."
    return (
        f"Plan: [create]{summary['create']} to create[/create], "
        f"[update]{summary['update']} to update[/update], "
        f"[replace]{summary['replace']} to replace[/replace], "
        f"[delete]{summary['delete']} to delete[/delete]"
        + (f", [read]{summary['read']} to read[/read]" if summary["read"] else "")
        + "."
    )


def changes_table(changes: list[ResourceChange], title: str = "Changes") -> Table:
    """Compact table of changes, used by ``graph --plan`` and ``refresh``."""
    table = Table(title=title)
    table.add_column("Action", width=8)
    table.add_column("Address", style="cyan", no_wrap=True)
    table.add_column("Reason")
    for change in changes:
        style = _style(change.action)
        table.add_row(f"[{style}]{change.action.value}[/{style}]", escape(change.label), escape(change.reason))
    return table


def plan_json(plan: Plan) -> dict[str, Any]:
    """Machine-readable plan (same as the saved plan file)."""
    return plan.to_dict()
