"""Structural checks of the planned topology."""

import json
import sys
from collections import Counter
from pathlib import Path

import click
from rich.table import Table

from converge.checks.topology import (
    DEFAULT_AZ_VARIABLE,
    DEFAULT_CONTAINERS,
    RULES,
    SEVERITY_ORDER,
    build_context,
    run_checks,
)
from converge.pipeline.ui import console, print_status_panel
from converge.utils.error_handler import handle_exceptions
from converge.utils.exit_codes import ExitCodes

from .options import load_workspace, workspace_options


@click.command()
@handle_exceptions
@workspace_options
@click.option("--rule", "rules", multiple=True, type=click.Choice(sorted(RULES)), help="Run only these rules (repeatable)")
@click.option("--az-var", default=DEFAULT_AZ_VARIABLE, show_default=True, help="Variable holding the availability-zone count")
@click.option(
    "--expect-containers",
    default=",".join(DEFAULT_CONTAINERS),
    show_default=True,
    help="Comma-separated container names the task definition must declare, in order",
)
@click.option(
    "--severity",
    type=click.Choice(["critical", "high", "medium", "low", "all"]),
    default="all",
    help="Minimum severity to report",
)
@click.option("--json", "as_json", is_flag=True, help="Print findings as JSON")
@click.option("--out", type=click.Path(dir_okay=False), help="Also write findings to a JSON file")
def check(config_dir, var_assignments, var_files, rules, az_var, expect_containers, severity, as_json, out):
    """Verify structural properties of the planned infrastructure.

    Plans the configuration symbolically (no state, no providers) and
    checks the resulting instances:
      subnet-count           one private and one public subnet per AZ
      private-subnet-route   each private subnet routes through the NAT
                             gateway of its own AZ
      task-ingress           task security group accepts traffic only
                             from the load balancer's security group
      service-load-balancer  service targets the app container on its
                             container port through a target group
      task-definition        rendered container definitions are valid
                             JSON listing the expected containers

    Examples:
      converge check --dir examples/fargate
      converge check --rule task-ingress --severity high
      converge check --json --out .converge/findings.json

    Exit Codes:
      0 = No high or critical findings
      1 = High severity findings
      2 = Critical findings
    """
    workspace = load_workspace(config_dir, var_files, var_assignments)
    expected = tuple(name.strip() for name in expect_containers.split(",") if name.strip())
    ctx = build_context(
        workspace.config,
        workspace.variables,
        az_variable=az_var,
        expected_containers=expected,
        max_instances=workspace.max_instances,
    )
    findings = run_checks(ctx, list(rules) or None)
    if severity != "all":
        findings = [f for f in findings if SEVERITY_ORDER[f.severity] <= SEVERITY_ORDER[severity]]

    findings_json = [f.to_dict() for f in findings]
    if out:
        output_path = Path(out)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(findings_json, f, indent=2)

    severity_counts = Counter(f.severity for f in findings)
    if severity_counts["critical"]:
        exit_code = ExitCodes.CRITICAL_SEVERITY
    elif severity_counts["high"]:
        exit_code = ExitCodes.HIGH_SEVERITY
    else:
        exit_code = ExitCodes.SUCCESS

    if as_json:
        click.echo(json.dumps(findings_json, indent=2))
    else:
        _print_findings(findings, severity_counts, out)

    if exit_code != ExitCodes.SUCCESS:
        sys.exit(exit_code)


def _print_findings(findings, severity_counts, out):
    if not findings:
        print_status_panel("PASSED", "No topology findings", "Every structural check passed", level="success")
        return

    table = Table(title=f"Topology findings ({len(findings)})")
    table.add_column("Severity")
    table.add_column("Rule", style="dim")
    table.add_column("Address", style="cyan")
    table.add_column("Finding")
    for finding in findings:
        sev = finding.severity
        table.add_row(f"[{sev}]{sev.upper()}[/{sev}]", finding.rule_name, finding.address or "-", finding.title)
    console.print(table)

    for finding in findings:
        if SEVERITY_ORDER[finding.severity] > SEVERITY_ORDER["high"]:
            continue
        console.print(f"\n[{finding.severity}][{finding.severity.upper()}][/{finding.severity}] {finding.title}")
        if finding.file_path:
            console.print(f"  [dim]File: {finding.file_path}[/dim]")
        console.print(f"  {finding.description}")
        if finding.remediation:
            console.print(f"  [dim]Fix: {finding.remediation}[/dim]")

    counts = ", ".join(
        f"{severity_counts[sev]} {sev}" for sev in ("critical", "high", "medium", "low", "info") if severity_counts[sev]
    )
    level = "critical" if severity_counts["critical"] else "high" if severity_counts["high"] else "medium"
    detail = f"Findings exported to: {out}" if out else "Run with --json for machine-readable output"
    print_status_panel("FINDINGS", counts, detail, level=level)
