"""Workspace: one configuration directory plus its runtime files.

Commands build a Workspace from ``--dir``, ``--var`` and ``--var-file``.
Runtime paths from ``config_runtime`` (``./.converge/state.db`` and friends)
are resolved against the configuration directory, so running the CLI from
another directory still reads and writes the same state.
"""

import os
from pathlib import Path
from typing import Any

from converge.config_runtime import load_runtime_config
from converge.declaration.loader import load_configuration
from converge.declaration.model import Configuration
from converge.declaration.variables import parse_var_assignments, resolve_variables
from converge.errors import StateError
from converge.expressions.evaluator import EvalContext, evaluate_value
from converge.pipeline.retry import RetryPolicy
from converge.planning.planner import Planner
from converge.providers.registry import ProviderRegistry
from converge.state.store import StateStore
from converge.utils.logging import logger


class Workspace:
    """Loaded configuration, resolved variables and runtime settings."""

    def __init__(
        self,
        root: str | Path = ".",
        var_files: list[str] | tuple[str, ...] = (),
        var_assignments: list[str] | tuple[str, ...] = (),
        environ: dict[str, str] | None = None,
    ):
        self.root = Path(root).resolve()
        self.settings = load_runtime_config(str(self.root))
        self.config: Configuration = load_configuration(self.root)
        self.variables: dict[str, Any] = resolve_variables(
            self.config,
            var_files=var_files,
            cli_values=parse_var_assignments(var_assignments),
            environ=os.environ if environ is None else environ,
        )
        self._registry: ProviderRegistry | None = None
        logger.debug("Workspace {} loaded: {}", self.root, self.config.summary())

    # ------------------------------------------------------------------
    # Paths and settings
    # ------------------------------------------------------------------

    def path(self, key: str) -> Path:
        """A configured runtime path (``state_db``, ``plan_file``...) under the root."""
        configured = Path(self.settings["paths"][key])
        return configured if configured.is_absolute() else self.root / configured

    @property
    def parallelism(self) -> int:
        return int(self.settings["limits"]["parallelism"])

    @property
    def max_instances(self) -> int:
        return int(self.settings["limits"]["max_instances_per_resource"])

    @property
    def call_timeout(self) -> float:
        return float(self.settings["timeouts"]["provider_call"])

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_config(self.settings["retry"])

    # ------------------------------------------------------------------
    # Providers and state
    # ------------------------------------------------------------------

    def provider_configs(self) -> dict[str, dict[str, Any]]:
        """Provider blocks with variable references evaluated."""
        ctx = EvalContext(
            variables=self.variables,
            module_path=str(self.root),
            root_path=str(self.root),
        )
        return {
            name: evaluate_value(options, ctx.derive(referrer=f"provider.{name}"))
            for name, options in self.config.providers.items()
        }

    @property
    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            self._registry = ProviderRegistry(
                self.provider_configs(),
                root=self.root,
                providers_dir=self.path("providers_dir"),
            )
        return self._registry

    def state_exists(self) -> bool:
        return self.path("state_db").exists()

    def open_state(self, create: bool = False) -> StateStore:
        """Open the state database; ``create`` initialises an empty one if needed."""
        db_path = self.path("state_db")
        if create:
            return StateStore.init_database(db_path)
        if not db_path.exists():
            raise StateError(f"No state at {db_path}. Run 'converge apply' first.")
        return StateStore(db_path)

    def planner(
        self,
        state: StateStore | None,
        refresh: bool = True,
        destroy: bool = False,
        targets: list[str] | tuple[str, ...] = (),
    ) -> Planner:
        return Planner(
            self.config,
            self.variables,
            state=state,
            registry=self.registry,
            refresh=refresh,
            destroy=destroy,
            targets=targets,
            max_instances=self.max_instances,
        )
