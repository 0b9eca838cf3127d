"""End-to-end run of the Fargate example against the local provider."""

import json
import shutil

import pytest

from converge.checks.topology import validate_container_definitions
from converge.expressions.evaluator import render_template
from converge.pipeline.executor import Executor
from converge.pipeline.retry import RetryPolicy
from converge.workspace import Workspace

TEMPLATE_VARS = {
    "app_image": "adongy/hostname-docker:latest",
    "app_port": 3000,
    "fargate_container_cpu": 256,
    "fargate_container_memory": 512,
    "aws_region": "us-east-1",
    "log_group": "/ecs/app",
    "userid": "demo",
    "lw_token": "secret-token",
    "lw_serverurl": "https://api.example.net",
}


@pytest.fixture
def workspace(tmp_path, fargate_dir):
    target = tmp_path / "fargate"
    shutil.copytree(fargate_dir, target)
    return Workspace(target, environ={})


def apply(workspace, state, **plan_options):
    plan = workspace.planner(state, **plan_options).plan()
    result = Executor(plan, state, workspace.registry, retry=RetryPolicy(base_delay=0, jitter=0)).run()
    return plan, result


class TestTaskDefinitionTemplate:
    def test_renders_valid_container_definitions(self, fargate_dir):
        rendered = render_template(str(fargate_dir / "templates" / "task_definition.json.tpl"), TEMPLATE_VARS)

        assert validate_container_definitions(rendered) == []
        sidecar, app = json.loads(rendered)
        assert sidecar["name"] == "datacollector-sidecar"
        assert app["portMappings"] == [{"containerPort": 3000, "hostPort": 3000}]
        assert app["dependsOn"] == [{"containerName": "datacollector-sidecar", "condition": "SUCCESS"}]
        assert {"name": "LaceworkAccessToken", "value": "secret-token"} in app["environment"]

    def test_container_sizes_render_as_numbers(self, fargate_dir):
        rendered = render_template(
            str(fargate_dir / "templates" / "task_definition.json.tpl"),
            dict(TEMPLATE_VARS, fargate_container_cpu=1024),
        )
        assert json.loads(rendered)[1]["cpu"] == 1024

    def test_string_values_are_json_escaped(self, fargate_dir):
        token = 'to"ken\\with\nbreaks'
        rendered = render_template(
            str(fargate_dir / "templates" / "task_definition.json.tpl"),
            dict(TEMPLATE_VARS, lw_token=token, userid='team "a"'),
        )

        assert validate_container_definitions(rendered) == []
        sidecar, app = json.loads(rendered)
        assert {"name": "LaceworkAccessToken", "value": token} in app["environment"]
        assert sidecar["logConfiguration"]["options"]["awslogs-stream-prefix"] == 'team "a"-sidecar'


class TestFargateApply:
    def test_first_plan_creates_everything(self, workspace):
        state = workspace.open_state(create=True)
        try:
            plan = workspace.planner(state).plan()
        finally:
            state.close()

        assert plan.summary()["create"] == 24
        assert "data.aws_availability_zones.available" in plan.data
        assert plan.expansions["aws_subnet.private"]["keys"] == [0, 1]

    def test_apply_and_converge(self, workspace):
        state = workspace.open_state(create=True)
        try:
            _, result = apply(workspace, state)

            assert result.complete, result.summary()
            outputs = state.outputs()
            assert outputs["alb_hostname"]["value"].endswith(".us-east-1.elb.amazonaws.com")
            assert len(outputs["private_subnet_ids"]["value"]) == 2
            assert all(i.startswith("subnet-") for i in outputs["private_subnet_ids"]["value"])
            assert len(outputs["nat_gateway_ids"]["value"]) == 2
            assert outputs["task_definition_arn"]["value"] == (
                "arn:aws:ecs:us-east-1:123456789012:task-definition/demo-fargate-app:1"
            )

            again = workspace.planner(state).plan()
            assert not again.has_changes
        finally:
            state.close()

    def test_private_subnets_route_through_their_own_nat(self, workspace):
        state = workspace.open_state(create=True)
        try:
            apply(workspace, state)

            for index in (0, 1):
                subnet = state.get(f"aws_subnet.private[{index}]")
                nat = state.get(f"aws_nat_gateway.gw[{index}]")
                public = state.get(f"aws_subnet.public[{index}]")
                table = state.get(f"aws_route_table.private[{index}]")
                association = state.get(f"aws_route_table_association.private[{index}]")

                assert association.attributes["subnet_id"] == subnet.id
                assert association.attributes["route_table_id"] == table.id
                assert table.attributes["route"]["nat_gateway_id"] == nat.id
                assert nat.attributes["subnet_id"] == public.id
                assert subnet.attributes["availability_zone"] == public.attributes["availability_zone"]
        finally:
            state.close()

    def test_state_records_dependencies(self, workspace):
        state = workspace.open_state(create=True)
        try:
            apply(workspace, state)

            service = state.get("aws_ecs_service.main")
            assert "aws_ecs_task_definition.app" in service.dependencies
            assert "aws_alb_listener.front_end" in service.dependencies
            definitions = json.loads(state.get("aws_ecs_task_definition.app").attributes["container_definitions"])
            assert [c["name"] for c in definitions] == ["datacollector-sidecar", "app"]
        finally:
            state.close()

    def test_destroy_removes_everything(self, workspace):
        state = workspace.open_state(create=True)
        try:
            apply(workspace, state)
            plan, result = apply(workspace, state, destroy=True)

            assert plan.summary()["delete"] == 24
            assert result.complete
            assert state.list() == []
            assert state.outputs() == {}
            assert workspace.registry.get("aws").objects() == {}
        finally:
            state.close()
