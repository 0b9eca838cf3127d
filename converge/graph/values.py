"""Per-instance attribute values, exposed to expressions per block.

A reference such as ``aws_subnet.private`` evaluates to the whole block:
one value for a single resource, a list ordered by index for ``count``,
and a map keyed by ``each.key`` for ``for_each``.
"""

from collections import defaultdict
from typing import Any

from converge.errors import GraphError
from converge.graph.types import InstanceKey, ResourceAddress


class InstanceValues:
    """Attribute values of expanded instances, grouped by block."""

    def __init__(self):
        self._kinds: dict[str, str] = {}
        self._keys: dict[str, list[InstanceKey]] = {}
        self._values: dict[str, dict[InstanceKey, Any]] = defaultdict(dict)

    def set_expansion(self, block: str, kind: str, keys: list[InstanceKey]) -> None:
        self._kinds[block] = kind
        self._keys[block] = list(keys)

    def has_block(self, block: str) -> bool:
        return block in self._kinds

    def expansion(self, block: str) -> tuple[str, list[InstanceKey]]:
        return self._kinds[block], list(self._keys[block])

    def set(self, address: ResourceAddress, value: Any) -> None:
        self._values[address.block][address.key] = value

    def get(self, address: ResourceAddress) -> Any:
        return self._values[address.block][address.key]

    def has(self, address: ResourceAddress) -> bool:
        return address.key in self._values.get(address.block, {})

    def addresses(self, block: str) -> list[ResourceAddress]:
        base = ResourceAddress.parse(block)
        return [base.with_key(key) for key in self._keys.get(block, [])]

    def block_value(self, block: str) -> Any:
        if block not in self._kinds:
            raise GraphError(f"{block} has not been evaluated yet (is it part of this run?)")
        kind = self._kinds[block]
        values = self._values[block]
        missing = [key for key in self._keys[block] if key not in values]
        if missing:
            raise GraphError(f"{block} has no value for instance key(s) {missing}")
        if kind == "single":
            return values[None]
        if kind == "count":
            return [values[key] for key in self._keys[block]]
        return {key: values[key] for key in self._keys[block]}
