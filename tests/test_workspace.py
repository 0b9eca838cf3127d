"""Tests for runtime configuration and the Workspace wrapper."""

import json
import os

import pytest

from converge.config_runtime import DEFAULTS, load_runtime_config
from converge.errors import StateError
from converge.workspace import Workspace


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in list(os.environ):
        if key.startswith("CONVERGE_"):
            monkeypatch.delenv(key)


def write_runtime_config(root, data):
    path = root / ".converge" / "config.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data), encoding="utf-8")


class TestRuntimeConfig:
    def test_defaults(self, tmp_path):
        cfg = load_runtime_config(str(tmp_path))
        assert cfg == DEFAULTS
        assert cfg is not DEFAULTS

    def test_config_file_overrides(self, tmp_path):
        write_runtime_config(tmp_path, {"limits": {"parallelism": 4}, "retry": {"base_delay": 1}})

        cfg = load_runtime_config(str(tmp_path))

        assert cfg["limits"]["parallelism"] == 4
        assert cfg["retry"]["base_delay"] == 1
        assert cfg["limits"]["max_instances_per_resource"] == 1000

    def test_wrong_types_and_unknown_keys_are_ignored(self, tmp_path):
        write_runtime_config(tmp_path, {"limits": {"parallelism": "many", "bogus": 1}, "other": {}})

        cfg = load_runtime_config(str(tmp_path))

        assert cfg["limits"] == DEFAULTS["limits"]
        assert "other" not in cfg

    def test_unreadable_config_file_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / ".converge" / "config.json"
        path.parent.mkdir()
        path.write_text("{not json", encoding="utf-8")
        assert load_runtime_config(str(tmp_path)) == DEFAULTS

    def test_environment_wins(self, tmp_path, monkeypatch):
        write_runtime_config(tmp_path, {"limits": {"parallelism": 4}})
        monkeypatch.setenv("CONVERGE_LIMITS_PARALLELISM", "2")
        monkeypatch.setenv("CONVERGE_RETRY_JITTER", "0")
        monkeypatch.setenv("CONVERGE_TIMEOUTS_PROVIDER_CALL", "oops")

        cfg = load_runtime_config(str(tmp_path))

        assert cfg["limits"]["parallelism"] == 2
        assert cfg["retry"]["jitter"] == 0.0
        assert cfg["timeouts"]["provider_call"] == 300


class TestWorkspace:
    def test_paths_resolve_against_the_root(self, config_dir):
        workspace = Workspace(config_dir, environ={})

        assert workspace.path("state_db") == config_dir.resolve() / ".converge" / "state.db"
        assert not workspace.state_exists()

    def test_absolute_paths_are_kept(self, config_dir, tmp_path):
        db = tmp_path / "elsewhere" / "state.db"
        write_runtime_config(config_dir, {"paths": {"state_db": str(db)}})
        assert Workspace(config_dir, environ={}).path("state_db") == db

    def test_settings(self, config_dir):
        write_runtime_config(config_dir, {"limits": {"parallelism": 3}, "retry": {"max_attempts": 0}})

        workspace = Workspace(config_dir, environ={})

        assert workspace.parallelism == 3
        assert workspace.max_instances == 1000
        assert workspace.call_timeout == 300.0
        assert workspace.retry_policy().max_attempts == 1

    def test_variables_from_assignments_and_environment(self, config_dir):
        workspace = Workspace(
            config_dir,
            var_assignments=["zone_count=3"],
            environ={"CONVERGE_VAR_env": "staging"},
        )
        assert workspace.variables["zone_count"] == 3
        assert workspace.variables["env"] == "staging"

    def test_open_state(self, config_dir):
        workspace = Workspace(config_dir, environ={})

        with pytest.raises(StateError, match="No state"):
            workspace.open_state()

        workspace.open_state(create=True).close()
        assert workspace.state_exists()

    def test_provider_options_are_evaluated(self, tmp_path, write_config):
        write_config(
            tmp_path,
            """
            variable:
              region:
                default: eu-north-1
            provider:
              test:
                region: "${var.region}"
            """,
        )
        workspace = Workspace(tmp_path, environ={})

        assert workspace.provider_configs() == {"test": {"region": "eu-north-1"}}
        assert workspace.registry.get("test").region == "eu-north-1"
        assert workspace.registry.get("test").store_file == tmp_path.resolve() / ".converge" / "providers" / "test.json"
