"""Count / for_each expansion of a block into addressed instances."""

from dataclasses import dataclass, field
from typing import Any

from converge.declaration.model import ResourceBlock
from converge.errors import GraphError
from converge.expressions.evaluator import EvalContext, evaluate_value
from converge.expressions.values import Symbol, contains_unknown
from converge.graph.types import InstanceKey, ResourceAddress


@dataclass
class Instance:
    address: ResourceAddress
    count_index: int | None = None
    each_key: str | None = None
    each_value: Any = None

    def context(self, base: EvalContext) -> EvalContext:
        """Evaluation context with count.index / each.* bound for this instance."""
        return base.derive(
            count_index=self.count_index,
            each_key=self.each_key,
            each_value=self.each_value,
            has_each=self.each_key is not None,
            referrer=str(self.address),
        )


@dataclass
class Expansion:
    block: str
    kind: str  # "single", "count", "for_each"
    instances: list[Instance] = field(default_factory=list)

    @property
    def keys(self) -> list[InstanceKey]:
        return [instance.address.key for instance in self.instances]


def expand_block(block: ResourceBlock, ctx: EvalContext, max_instances: int = 1000) -> Expansion:
    """Evaluate count/for_each and list the instances the block produces."""
    base = ResourceAddress(block.mode, block.type, block.name)
    kind = block.expansion_kind

    if kind == "single":
        return Expansion(block.address, kind, [Instance(base)])

    ctx = ctx.derive(referrer=f"{block.address}.{kind}")
    raw = block.count if kind == "count" else block.for_each
    value = evaluate_value(raw, ctx)
    if contains_unknown(value) or _contains_symbol(value):
        raise GraphError(
            f"{block.address}: {kind} depends on a value that is only known after apply; "
            "it must be computable at plan time"
        )

    if kind == "count":
        count = _as_count(block.address, value)
        if count > max_instances:
            raise GraphError(f"{block.address}: count {count} exceeds the limit of {max_instances}")
        return Expansion(
            block.address,
            kind,
            [Instance(base.with_key(i), count_index=i) for i in range(count)],
        )

    items = _as_for_each(block.address, value)
    if len(items) > max_instances:
        raise GraphError(f"{block.address}: for_each has {len(items)} items, limit is {max_instances}")
    return Expansion(
        block.address,
        kind,
        [Instance(base.with_key(key), each_key=key, each_value=item) for key, item in items],
    )


def _as_count(address: str, value: Any) -> int:
    if isinstance(value, bool):
        raise GraphError(f"{address}: count must be a number, got a bool")
    if isinstance(value, str):
        try:
            value = int(value)
        except ValueError:
            raise GraphError(f"{address}: count must be a number, got {value!r}") from None
    if isinstance(value, float):
        if not value.is_integer():
            raise GraphError(f"{address}: count must be a whole number, got {value}")
        value = int(value)
    if not isinstance(value, int):
        raise GraphError(f"{address}: count must be a number, got {type(value).__name__}")
    if value < 0:
        raise GraphError(f"{address}: count must not be negative, got {value}")
    return value


def _as_for_each(address: str, value: Any) -> list[tuple[str, Any]]:
    if isinstance(value, dict):
        return [(str(key), value[key]) for key in sorted(value)]
    if isinstance(value, (list, tuple)):
        if not all(isinstance(item, str) for item in value):
            raise GraphError(f"{address}: for_each over a list requires strings only")
        return [(item, item) for item in sorted(set(value))]
    raise GraphError(f"{address}: for_each must be a map or a set of strings, got {type(value).__name__}")


def _contains_symbol(value: Any) -> bool:
    if isinstance(value, Symbol):
        return True
    if isinstance(value, dict):
        return any(_contains_symbol(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_symbol(v) for v in value)
    return False
