"""Pytest configuration and fixtures."""

import textwrap
from pathlib import Path

import pytest

from converge.declaration.loader import load_configuration
from converge.declaration.variables import resolve_variables
from converge.pipeline.executor import Executor
from converge.pipeline.retry import RetryPolicy
from converge.planning.planner import Planner
from converge.providers.local import LocalProvider
from converge.providers.registry import ProviderRegistry
from converge.state.store import StateStore

EXAMPLES_DIR = Path(__file__).parent.parent / "examples"

TEST_SCHEMA = """
resources:
  test_network:
    id_prefix: net
    force_new: [cidr]
    computed:
      arn: "arn:test:{region}:network/{id}"
  test_subnet:
    id_prefix: subnet
    force_new: [network_id, cidr]
  test_instance:
    id_prefix: i
    computed:
      hostname: "{name}.{region}.internal"

data_sources:
  test_zones:
    result:
      names: ["{region}a", "{region}b", "{region}c"]
"""

# Network -> per-zone subnets -> one instance, plus a data source and outputs
BASE_CONFIG = """
variable:
  zone_count:
    type: number
    default: 2
  env:
    type: string
    default: dev
  network_cidr:
    type: string
    default: 10.0.0.0/16

data:
  test_zones:
    available: {}

resource:
  test_network:
    main:
      cidr: "${var.network_cidr}"
      tags:
        env: "${var.env}"
  test_subnet:
    private:
      count: "${var.zone_count}"
      network_id: "${test_network.main.id}"
      cidr: "${cidrsubnet(test_network.main.cidr, 8, count.index)}"
      zone: "${data.test_zones.available.names[count.index]}"
  test_instance:
    app:
      name: "app-${var.env}"
      subnet_id: "${test_subnet.private[0].id}"

output:
  network_arn:
    value: "${test_network.main.arn}"
  subnet_ids:
    value: "${test_subnet.private.*.id}"
"""


def write_config(directory: Path, text: str, filename: str = "main.cv.yaml") -> Path:
    """Write a dedented configuration file into ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_text(textwrap.dedent(text).lstrip(), encoding="utf-8")
    return path


class Engine:
    """Plan/apply driver over one config directory, a state store and a local provider."""

    def __init__(self, config_dir: Path, state: StateStore, registry: ProviderRegistry):
        self.config_dir = config_dir
        self.state = state
        self.registry = registry

    @property
    def provider(self) -> LocalProvider:
        return self.registry.get("test")

    def load(self, values: dict | None = None):
        config = load_configuration(self.config_dir)
        variables = resolve_variables(config, cli_values=values or {}, environ={})
        return config, variables

    def plan(self, values: dict | None = None, **options):
        config, variables = self.load(values)
        return Planner(config, variables, state=self.state, registry=self.registry, **options).plan()

    def apply(self, plan, **options):
        options.setdefault("retry", RetryPolicy(base_delay=0, jitter=0))
        return Executor(plan, self.state, self.registry, **options).run()

    def converge(self, values: dict | None = None, **options):
        """Plan and apply in one go."""
        apply_keys = ("parallelism", "retry", "call_timeout", "observer", "handle_signals")
        apply_options = {key: options.pop(key) for key in apply_keys if key in options}
        return self.apply(self.plan(values, **options), **apply_options)


@pytest.fixture
def config_dir(tmp_path):
    """Configuration directory holding BASE_CONFIG."""
    directory = tmp_path / "infra"
    write_config(directory, BASE_CONFIG)
    return directory


@pytest.fixture
def schema_file(tmp_path):
    path = tmp_path / "schema.yaml"
    path.write_text(TEST_SCHEMA, encoding="utf-8")
    return path


@pytest.fixture
def local_provider(tmp_path, schema_file):
    """Local provider storing objects under tmp_path."""
    return LocalProvider(
        "test",
        store_file=tmp_path / "providers" / "test.json",
        schema_file=schema_file,
        region="eu-test-1",
        account_id="123456789012",
        seed=7,
    )


@pytest.fixture
def registry(tmp_path, config_dir, local_provider):
    registry = ProviderRegistry({}, root=config_dir, providers_dir=tmp_path / "providers")
    registry.register("test", local_provider)
    return registry


@pytest.fixture
def state(tmp_path):
    """Fresh state database; closed after the test."""
    store = StateStore.init_database(tmp_path / "state" / "state.db")
    yield store
    store.close()


@pytest.fixture
def engine(config_dir, state, registry):
    return Engine(config_dir, state, registry)


@pytest.fixture
def fargate_dir():
    """The Fargate example shipped with the repository (read only)."""
    return EXAMPLES_DIR / "fargate"


@pytest.fixture(name="write_config")
def write_config_fixture():
    """``write_config(directory, text, filename)`` for tests that need their own declarations."""
    return write_config
