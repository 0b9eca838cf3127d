"""Evaluation scope shared by the planner and the executor."""

from typing import Any

from converge.errors import ExpressionError
from converge.expressions.evaluator import EvalContext, evaluate_value
from converge.graph.values import InstanceValues


class ValueScope:
    """Builds EvalContexts over variables, locals and instance values.

    Locals are evaluated lazily on first use. With ``cache_locals`` the
    result is kept for the rest of the run; the executor turns caching off
    because a local may reference attributes that only become known while
    the apply progresses.
    """

    def __init__(
        self,
        variables: dict[str, Any],
        locals_raw: dict[str, Any],
        instances: InstanceValues,
        module_path: str,
        cache_locals: bool = True,
    ):
        self.variables = variables
        self.locals_raw = locals_raw
        self.instances = instances
        self.module_path = module_path
        self.cache_locals = cache_locals
        self._locals: dict[str, Any] = {}
        self._evaluating: set[str] = set()

    def context(self, referrer: str = "<expression>") -> EvalContext:
        return EvalContext(
            variables=self.variables,
            local_resolver=self._resolve_local,
            resource_resolver=self._resolve_resource,
            data_resolver=self._resolve_data,
            module_path=self.module_path,
            root_path=self.module_path,
            referrer=referrer,
        )

    def _resolve_local(self, name: str) -> Any:
        if name in self._locals:
            return self._locals[name]
        if name not in self.locals_raw:
            raise ExpressionError(f"undeclared local.{name}")
        if name in self._evaluating:
            raise ExpressionError(f"local.{name} refers to itself")
        self._evaluating.add(name)
        try:
            value = evaluate_value(self.locals_raw[name], self.context(f"local.{name}"))
        finally:
            self._evaluating.discard(name)
        if self.cache_locals:
            self._locals[name] = value
        return value

    def _resolve_resource(self, resource_type: str, name: str) -> Any:
        return self.instances.block_value(f"{resource_type}.{name}")

    def _resolve_data(self, data_type: str, name: str) -> Any:
        return self.instances.block_value(f"data.{data_type}.{name}")
