"""Render a template file the way templatefile() does."""

import json
import sys
from pathlib import Path

import click
import yaml

from converge.checks.topology import DEFAULT_CONTAINERS, SEVERITY_ORDER, validate_container_definitions
from converge.errors import VariableError
from converge.expressions.evaluator import render_template
from converge.pipeline.ui import print_success
from converge.utils.error_handler import handle_exceptions
from converge.utils.exit_codes import ExitCodes


def _parse_settings(settings: tuple[str, ...]) -> dict:
    values = {}
    for item in settings:
        name, sep, raw = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint="--set")
        # 256 -> int, true -> bool, anything else stays a string
        values[name.strip()] = yaml.safe_load(raw) if raw else ""
    return values


@click.command()
@handle_exceptions
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.option("--set", "settings", multiple=True, metavar="NAME=VALUE", help="Template variable (repeatable)")
@click.option("--vars-file", type=click.Path(exists=True, dir_okay=False), help="YAML/JSON map of template variables")
@click.option("--check", "check_containers", is_flag=True, help="Validate the output as ECS container definitions")
@click.option(
    "--expect-containers",
    default=",".join(DEFAULT_CONTAINERS),
    show_default=True,
    help="Container names --check expects, in order",
)
@click.option("--pretty", is_flag=True, help="Re-indent JSON output")
def render(template, settings, vars_file, check_containers, expect_containers, pretty):
    """Render TEMPLATE with the given variables and print the result.

    Useful for debugging task definition templates before a plan:
    ${name} placeholders and expressions are evaluated exactly as
    templatefile() would at plan time.

    Examples:
      converge render templates/task_definition.json.tpl --vars-file vals.yaml --check
      converge render app.json.tpl --set app_port=8080 --set fargate_cpu=256 --pretty

    Exit Codes:
      0 = Rendered (and valid with --check)
      1 = High severity problems with --check
      2 = Output is not valid JSON with --check
    """
    template_vars = {}
    if vars_file:
        with open(vars_file, encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise VariableError(f"{vars_file} must contain a map of template variables")
        template_vars.update(loaded)
    template_vars.update(_parse_settings(settings))

    template_path = Path(template).resolve()
    rendered = render_template(str(template_path), template_vars)

    output = rendered
    if pretty:
        try:
            output = json.dumps(json.loads(rendered), indent=2)
        except json.JSONDecodeError:
            click.echo("Warning: --pretty: output is not JSON, printed as is", err=True)
    click.echo(output)

    if not check_containers:
        return

    expected = tuple(name.strip() for name in expect_containers.split(",") if name.strip())
    problems = validate_container_definitions(rendered, expected)
    if not problems:
        print_success(f"Container definitions valid: {', '.join(expected)}")
        return

    worst = min(SEVERITY_ORDER[severity.value] for severity, _, _ in problems)
    for severity, title, description in problems:
        click.echo(f"[{severity.value.upper()}] {title}: {description}", err=True)
    if worst == 0:
        sys.exit(ExitCodes.CRITICAL_SEVERITY)
    if worst == 1:
        sys.exit(ExitCodes.HIGH_SEVERITY)
