"""CLI tests: every command run through click's CliRunner against a copy of the Fargate example."""

import json
import os
import shutil

import pytest
import yaml
from click.testing import CliRunner

from converge.cli import cli
from converge.state.store import StateStore
from converge.utils.exit_codes import ExitCodes
from converge.workspace import Workspace

COMMANDS = ["validate", "graph", "check", "render", "plan", "apply", "destroy", "refresh", "output", "state"]

TEMPLATE_VARS = {
    "app_image": "nginx:1.25",
    "app_port": 8080,
    "fargate_container_cpu": 256,
    "fargate_container_memory": 512,
    "aws_region": "eu-west-1",
    "log_group": "/ecs/app",
    "userid": "ci",
    "lw_token": "token",
    "lw_serverurl": "https://api.example.net",
}


@pytest.fixture
def runner():
    """Create CLI test runner."""
    return CliRunner()


@pytest.fixture
def project(tmp_path, fargate_dir, monkeypatch):
    """Copy of the Fargate example; the working directory is its parent."""
    target = tmp_path / "infra"
    shutil.copytree(fargate_dir, target)
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("CONVERGE_"):
            monkeypatch.delenv(key)
    monkeypatch.setenv("CONVERGE_RETRY_BASE_DELAY", "0")
    return target


@pytest.fixture
def applied(runner, project):
    """The example applied once."""
    result = runner.invoke(cli, ["apply", "--dir", "infra", "--auto-approve", "--json"])
    assert result.exit_code == 0, result.output
    return project


def run(runner, *args, **kwargs):
    return runner.invoke(cli, list(args), **kwargs)


def stdout_json(result):
    return json.loads(result.stdout)


def break_ingress(project):
    path = project / "main.cv.yaml"
    text = path.read_text(encoding="utf-8")
    old = '          security_groups: ["${aws_security_group.lb.id}"]\n'
    assert old in text
    path.write_text(text.replace(old, '          cidr_blocks: ["0.0.0.0/0"]\n'), encoding="utf-8")


class TestHelp:
    def test_root_help(self, runner):
        result = run(runner, "--help")
        assert result.exit_code == 0
        assert "Declarative infrastructure reconciliation" in result.output

    @pytest.mark.parametrize("command", COMMANDS)
    def test_command_help_ascii(self, runner, command):
        """Help text must stay ASCII for Windows consoles."""
        result = run(runner, command, "--help")
        assert result.exit_code == 0
        try:
            result.output.encode("ascii")
        except UnicodeEncodeError as e:
            pytest.fail(f"Non-ASCII character in converge {command} --help: {e}")

    def test_version(self, runner):
        result = run(runner, "--version")
        assert result.exit_code == 0
        assert "converge" in result.output


class TestValidate:
    def test_valid_example(self, runner, project):
        result = run(runner, "validate", "--dir", "infra", "--json")

        assert result.exit_code == 0, result.output
        data = stdout_json(result)
        assert data["valid"] is True
        assert data["summary"]["resources"] == 18
        assert data["summary"]["outputs"] == 4
        assert data["variables"] is None

    def test_show_vars_masks_sensitive_values(self, runner, project):
        result = run(runner, "validate", "--dir", "infra", "--json", "--show-vars", "--var", "az_count=3")

        rows = {row["name"]: row for row in stdout_json(result)["variables"]}
        assert rows["lw_token"]["value"] == "(sensitive)"
        assert rows["az_count"]["value"] == 3
        assert rows["userid"]["value"] == "demo"

    def test_broken_reference(self, runner, project, tmp_path):
        path = project / "main.cv.yaml"
        path.write_text(
            path.read_text(encoding="utf-8").replace("${aws_ecs_cluster.main.id}", "${aws_ecs_cluster.gone.id}"),
            encoding="utf-8",
        )

        result = run(runner, "validate", "--dir", "infra")

        assert result.exit_code == 1
        assert "UnresolvedReferenceError" in result.output
        assert (tmp_path / ".converge" / "error.log").exists()

    def test_missing_required_variable(self, runner, project):
        (project / "converge.vars.yaml").unlink()
        result = run(runner, "validate", "--dir", "infra")
        assert result.exit_code == 1
        assert "userid" in result.output


class TestPlan:
    def test_json_plan(self, runner, project):
        result = run(runner, "plan", "--dir", "infra", "--json")

        assert result.exit_code == 0, result.output
        data = stdout_json(result)
        assert data["format_version"] == 1
        assert data["summary"]["create"] == 24
        assert not (project / ".converge" / "state.db").exists()

    def test_detailed_exitcode(self, runner, project):
        result = run(runner, "plan", "--dir", "infra", "--detailed-exitcode")
        assert result.exit_code == ExitCodes.CHANGES_PRESENT

    def test_saved_plan_is_applied(self, runner, project, tmp_path):
        result = run(runner, "plan", "--dir", "infra", "--out", "plan.json")
        assert result.exit_code == 0, result.output
        assert (tmp_path / "plan.json").exists()

        result = run(runner, "apply", "--dir", "infra", "plan.json", "--json")

        assert result.exit_code == 0, result.output
        data = stdout_json(result)
        assert data["status"] == "succeeded"
        assert data["summary"]["applied"] == 24

    def test_saved_plan_cannot_be_targeted(self, runner, project):
        run(runner, "plan", "--dir", "infra", "--out", "plan.json")
        result = run(runner, "apply", "--dir", "infra", "plan.json", "--target", "aws_vpc.main")
        assert result.exit_code == 2

    def test_no_changes_after_apply(self, runner, applied):
        result = run(runner, "plan", "--dir", "infra", "--detailed-exitcode")
        assert result.exit_code == 0, result.output

    def test_variable_change_is_planned(self, runner, applied):
        result = run(runner, "plan", "--dir", "infra", "--json", "--var", "app_count=4")

        changes = {c["address"]: c["action"] for c in stdout_json(result)["changes"]}
        assert changes["aws_ecs_service.main"] == "update"
        assert sum(1 for action in changes.values() if action != "no-op") == 1


class TestApply:
    def test_apply_creates_state_and_outputs(self, runner, applied):
        result = run(runner, "output", "--dir", "infra", "--json")

        assert result.exit_code == 0, result.output
        outputs = stdout_json(result)
        assert set(outputs) == {"alb_hostname", "private_subnet_ids", "nat_gateway_ids", "task_definition_arn"}
        assert len(outputs["private_subnet_ids"]["value"]) == 2

    def test_declined_confirmation_changes_nothing(self, runner, project):
        result = run(runner, "apply", "--dir", "infra", input="n\n")

        assert result.exit_code == 1
        listing = run(runner, "state", "list", "--dir", "infra", "--json")
        assert stdout_json(listing) == []

    def test_json_apply_needs_auto_approve(self, runner, project):
        result = run(runner, "apply", "--dir", "infra", "--json", input="y\n")

        assert result.exit_code == 2
        assert "--auto-approve" in result.output
        assert not (project / ".converge" / "state.db").exists()

    def test_json_destroy_needs_auto_approve(self, runner, applied):
        before = stdout_json(run(runner, "state", "list", "--dir", "infra", "--json"))

        result = run(runner, "destroy", "--dir", "infra", "--json", input="n\n")

        assert result.exit_code == 2
        assert "--auto-approve" in result.output
        assert stdout_json(run(runner, "state", "list", "--dir", "infra", "--json")) == before
        assert before

    def test_targeted_apply(self, runner, project):
        result = run(runner, "apply", "--dir", "infra", "--auto-approve", "--json", "--target", "aws_subnet.private")

        assert result.exit_code == 0, result.output
        listing = stdout_json(run(runner, "state", "list", "--dir", "infra", "--json"))
        assert listing == ["aws_subnet.private[0]", "aws_subnet.private[1]", "aws_vpc.main"]

    def test_locked_state(self, runner, applied):
        store = StateStore(applied / ".converge" / "state.db")
        try:
            store.acquire_lock("someone@elsewhere:1")
        finally:
            store.close()

        result = run(runner, "apply", "--dir", "infra", "--auto-approve", "--var", "app_count=3")

        assert result.exit_code == ExitCodes.STATE_LOCKED
        assert "someone@elsewhere:1" in result.output

    def test_destroy(self, runner, applied):
        result = run(runner, "destroy", "--dir", "infra", "--auto-approve", "--json")

        assert result.exit_code == 0, result.output
        assert stdout_json(result)["summary"]["applied"] == 24
        assert stdout_json(run(runner, "state", "list", "--dir", "infra", "--json")) == []
        assert stdout_json(run(runner, "output", "--dir", "infra", "--json")) == {}

    def test_destroy_without_state(self, runner, project):
        result = run(runner, "destroy", "--dir", "infra", "--auto-approve")
        assert result.exit_code == 1
        assert "No state" in result.output


class TestOutput:
    def test_raw_value(self, runner, applied):
        result = run(runner, "output", "--dir", "infra", "alb_hostname", "--raw")

        assert result.exit_code == 0
        assert result.stdout.strip().endswith(".us-east-1.elb.amazonaws.com")

    def test_list_value(self, runner, applied):
        result = run(runner, "output", "--dir", "infra", "nat_gateway_ids")
        assert json.loads(result.stdout)[0].startswith("nat-")

    def test_raw_needs_a_name(self, runner, applied):
        assert run(runner, "output", "--dir", "infra", "--raw").exit_code == 2

    def test_unknown_output(self, runner, applied):
        result = run(runner, "output", "--dir", "infra", "nope")
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_without_state(self, runner, project):
        assert run(runner, "output", "--dir", "infra").exit_code == 1


class TestState:
    def test_list_with_prefix(self, runner, applied):
        result = run(runner, "state", "list", "--dir", "infra", "aws_nat_gateway.gw")
        assert result.stdout.split() == ["aws_nat_gateway.gw[0]", "aws_nat_gateway.gw[1]"]

    def test_show(self, runner, applied):
        result = run(runner, "state", "show", "--dir", "infra", "aws_vpc.main")
        assert result.exit_code == 0
        assert "172.17.0.0/16" in result.output

    def test_show_missing(self, runner, applied):
        assert run(runner, "state", "show", "--dir", "infra", "aws_vpc.other").exit_code == 1

    def test_rm_forgets_a_whole_block(self, runner, applied):
        result = run(runner, "state", "rm", "--dir", "infra", "aws_route_table_association.private")

        assert result.exit_code == 0, result.output
        assert "Removed aws_route_table_association.private[1]" in result.stdout
        plan = stdout_json(run(runner, "plan", "--dir", "infra", "--json"))
        assert plan["summary"]["create"] == 2

    def test_pull_and_push(self, runner, applied, tmp_path):
        result = run(runner, "state", "pull", "--dir", "infra", "--out", "snapshot.json")
        assert result.exit_code == 0
        snapshot = json.loads((tmp_path / "snapshot.json").read_text(encoding="utf-8"))
        assert len(snapshot["resources"]) == 24

        run(runner, "state", "rm", "--dir", "infra", "aws_vpc.main")

        refused = run(runner, "state", "push", "--dir", "infra", "snapshot.json")
        assert refused.exit_code == 1
        assert "older than current serial" in refused.output

        forced = run(runner, "state", "push", "--dir", "infra", "snapshot.json", "--force")
        assert forced.exit_code == 0, forced.output
        listing = stdout_json(run(runner, "state", "list", "--dir", "infra", "--json"))
        assert "aws_vpc.main" in listing

    def test_push_rejects_invalid_json(self, runner, applied, tmp_path):
        (tmp_path / "bad.json").write_text("{", encoding="utf-8")
        result = run(runner, "state", "push", "--dir", "infra", "bad.json")
        assert result.exit_code == 1
        assert "not valid JSON" in result.output

    def test_unlock(self, runner, applied):
        store = StateStore(applied / ".converge" / "state.db")
        try:
            lock_id = store.acquire_lock("crashed@host:9")
        finally:
            store.close()

        assert run(runner, "state", "unlock", "--dir", "infra", lock_id).exit_code == 0
        assert run(runner, "state", "unlock", "--dir", "infra", lock_id).exit_code == 1

    def test_journal(self, runner, applied):
        result = run(runner, "state", "journal", "--dir", "infra", "--json", "--limit", "1")

        runs = stdout_json(result)
        assert len(runs) == 1
        assert runs[0]["kind"] == "apply"
        assert runs[0]["status"] == "succeeded"
        assert {event["status"] for event in runs[0]["events"]} == {"running", "applied"}


class TestRefresh:
    def delete_remotely(self, project, address):
        workspace = Workspace(project, environ={})
        store = workspace.open_state()
        try:
            entry = store.get(address)
        finally:
            store.close()
        workspace.registry.get("aws").delete(entry.type, entry.id, entry.attributes)

    def test_no_drift(self, runner, applied):
        result = run(runner, "refresh", "--dir", "infra", "--json")
        assert stdout_json(result) == {"dry_run": False, "drift": []}

    def test_deleted_object(self, runner, applied):
        self.delete_remotely(applied, "aws_eip.gw[1]")

        dry = stdout_json(run(runner, "refresh", "--dir", "infra", "--json", "--dry-run"))
        assert dry["drift"] == [{"address": "aws_eip.gw[1]", "kind": "deleted", "attributes": []}]
        assert "aws_eip.gw[1]" in stdout_json(run(runner, "state", "list", "--dir", "infra", "--json"))

        run(runner, "refresh", "--dir", "infra")
        assert "aws_eip.gw[1]" not in stdout_json(run(runner, "state", "list", "--dir", "infra", "--json"))

    def test_plan_recreates_deleted_object(self, runner, applied):
        self.delete_remotely(applied, "aws_ecs_cluster.main")

        plan = stdout_json(run(runner, "plan", "--dir", "infra", "--json"))

        assert plan["drift"][0]["address"] == "aws_ecs_cluster.main"
        cluster = next(c for c in plan["changes"] if c["address"] == "aws_ecs_cluster.main")
        assert cluster["action"] == "create"
        assert cluster["reason"] == "deleted outside converge"


class TestCheck:
    def test_example_passes(self, runner, project):
        result = run(runner, "check", "--dir", "infra", "--json")

        assert result.exit_code == 0, result.output
        assert stdout_json(result) == []

    def test_critical_finding(self, runner, project, tmp_path):
        break_ingress(project)

        result = run(runner, "check", "--dir", "infra", "--json", "--out", "reports/findings.json")

        assert result.exit_code == ExitCodes.CRITICAL_SEVERITY
        findings = stdout_json(result)
        assert findings[0]["severity"] == "critical"
        assert json.loads((tmp_path / "reports" / "findings.json").read_text(encoding="utf-8")) == findings

    def test_rule_selection(self, runner, project):
        break_ingress(project)
        result = run(runner, "check", "--dir", "infra", "--rule", "subnet-count", "--rule", "task-definition")
        assert result.exit_code == 0

    def test_unknown_rule_is_a_usage_error(self, runner, project):
        assert run(runner, "check", "--dir", "infra", "--rule", "nope").exit_code == 2

    def test_expected_containers(self, runner, project):
        result = run(runner, "check", "--dir", "infra", "--json", "--expect-containers", "app")

        assert result.exit_code == ExitCodes.HIGH_SEVERITY
        assert [f["rule_name"] for f in stdout_json(result)] == ["task-definition"]

    def test_severity_filter(self, runner, project):
        path = project / "main.cv.yaml"
        path.write_text(
            path.read_text(encoding="utf-8").replace('port: "${var.app_port}"\n      protocol: HTTP', "port: 9000\n      protocol: HTTP"),
            encoding="utf-8",
        )

        all_findings = stdout_json(run(runner, "check", "--dir", "infra", "--json"))
        high_only = run(runner, "check", "--dir", "infra", "--json", "--severity", "high")

        assert [f["severity"] for f in all_findings] == ["medium"]
        assert high_only.exit_code == 0
        assert stdout_json(high_only) == []


class TestRender:
    @pytest.fixture
    def vars_file(self, tmp_path):
        path = tmp_path / "vals.yaml"
        path.write_text(yaml.safe_dump(TEMPLATE_VARS), encoding="utf-8")
        return path.name

    def test_render_and_check(self, runner, project, vars_file):
        result = run(
            runner, "render", "infra/templates/task_definition.json.tpl", "--vars-file", vars_file, "--check"
        )

        assert result.exit_code == 0, result.output
        assert '"containerPort": 8080' in result.stdout

    def test_set_overrides_vars_file(self, runner, project, vars_file):
        result = run(
            runner,
            "render",
            "infra/templates/task_definition.json.tpl",
            "--vars-file",
            vars_file,
            "--set",
            "fargate_container_cpu=1024",
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout)[1]["cpu"] == 1024

    def test_check_reports_wrong_containers(self, runner, project, vars_file):
        result = run(
            runner,
            "render",
            "infra/templates/task_definition.json.tpl",
            "--vars-file",
            vars_file,
            "--check",
            "--expect-containers",
            "app,datacollector-sidecar",
        )
        assert result.exit_code == ExitCodes.HIGH_SEVERITY

    def test_check_reports_invalid_json(self, runner, project, tmp_path):
        (tmp_path / "broken.tpl").write_text('[{"name": ${name}}]', encoding="utf-8")
        result = run(runner, "render", "broken.tpl", "--set", "name=app", "--check")
        assert result.exit_code == ExitCodes.CRITICAL_SEVERITY

    def test_bad_setting(self, runner, project, tmp_path):
        (tmp_path / "t.tpl").write_text("${x}", encoding="utf-8")
        assert run(runner, "render", "t.tpl", "--set", "novalue").exit_code == 2


class TestGraph:
    def test_json_with_actions(self, runner, project):
        result = run(runner, "graph", "--dir", "infra", "--format", "json", "--plan")

        assert result.exit_code == 0, result.output
        data = stdout_json(result)
        assert data["metadata"]["graph_type"] == "converge_dependency"
        assert data["metadata"]["actions"]["aws_vpc.main"] == "create"
        edges = {(e["source"], e["target"]) for e in data["edges"]}
        assert ("aws_nat_gateway.gw", "aws_route_table.private") in edges

    def test_dot_to_file(self, runner, project, tmp_path):
        result = run(runner, "graph", "--dir", "infra", "--format", "dot", "--resources-only", "--out", "g.dot")

        assert result.exit_code == 0
        dot = (tmp_path / "g.dot").read_text(encoding="utf-8")
        assert dot.startswith("digraph G {")
        assert '"aws_vpc.main"' in dot
        assert '"var.az_count"' not in dot

    def test_summary(self, runner, project):
        assert run(runner, "graph", "--dir", "infra").exit_code == 0
