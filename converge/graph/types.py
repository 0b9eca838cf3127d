"""Addresses, nodes and edges of the dependency graph."""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Union

from converge.errors import GraphError

_ADDRESS = re.compile(
    r'^(?:(data)\.)?([A-Za-z_][\w-]*)\.([A-Za-z_][\w-]*)(?:\[(\d+|"(?:[^"\\]|\\.)*")\])?$'
)

InstanceKey = Union[int, str, None]


@dataclass(frozen=True)
class ResourceAddress:
    """Logical address of one resource instance.

    ``aws_subnet.private[1]`` (count), ``aws_iam_user.u["alice"]``
    (for_each), ``data.aws_availability_zones.available`` (data source).
    """

    mode: str
    type: str
    name: str
    key: InstanceKey = None

    @classmethod
    def parse(cls, text: str) -> "ResourceAddress":
        match = _ADDRESS.match(text.strip())
        if not match:
            raise GraphError(f"invalid resource address: {text!r}")
        data, type_name, name, raw_key = match.groups()
        key: InstanceKey = None
        if raw_key is not None:
            key = int(raw_key) if raw_key.isdigit() else json.loads(raw_key)
        return cls("data" if data else "managed", type_name, name, key)

    @property
    def block(self) -> str:
        """Address of the declaring block, without the instance key."""
        prefix = "data." if self.mode == "data" else ""
        return f"{prefix}{self.type}.{self.name}"

    def with_key(self, key: InstanceKey) -> "ResourceAddress":
        return ResourceAddress(self.mode, self.type, self.name, key)

    def __str__(self) -> str:
        if self.key is None:
            return self.block
        if isinstance(self.key, int):
            return f"{self.block}[{self.key}]"
        return f"{self.block}[{json.dumps(self.key)}]"

    def sort_key(self) -> tuple:
        # ints before strings so count instances keep numeric order
        if self.key is None:
            return (self.block, 0, 0, "")
        if isinstance(self.key, int):
            return (self.block, 1, self.key, "")
        return (self.block, 2, 0, self.key)


@dataclass
class GraphNode:
    """A node of the dependency graph."""

    id: str  # "var.x", "local.x", "aws_vpc.main", "data.t.n", "output.x"
    file: str
    node_type: str  # "variable", "local", "resource", "data", "output"
    resource_type: str  # e.g. "aws_vpc", "number", "local", "output"
    name: str
    is_sensitive: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class GraphEdge:
    """``source`` must be evaluated (or applied) before ``target``."""

    source: str
    target: str
    file: str
    edge_type: str  # variable_reference, local_reference, resource_reference, data_reference, explicit_dependency, output_reference
    expression: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
