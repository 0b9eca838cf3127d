"""Typed view of a loaded configuration directory."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

NO_DEFAULT = object()

# Keys of a resource block that steer the engine instead of describing the resource
META_ARGUMENTS = frozenset({"count", "for_each", "depends_on", "provider", "lifecycle"})


@dataclass
class Variable:
    name: str
    type: str = "any"
    default: Any = NO_DEFAULT
    description: str = ""
    sensitive: bool = False
    source: str = ""

    @property
    def required(self) -> bool:
        return self.default is NO_DEFAULT


@dataclass
class Lifecycle:
    create_before_destroy: bool = False
    prevent_destroy: bool = False
    # Attribute names, or the string "all"
    ignore_changes: list[str] | str = field(default_factory=list)

    def ignores(self, attribute: str) -> bool:
        if self.ignore_changes == "all":
            return True
        return attribute in self.ignore_changes


@dataclass
class ResourceBlock:
    """One ``resource`` or ``data`` block before count/for_each expansion."""

    mode: str  # "managed" or "data"
    type: str
    name: str
    config: dict[str, Any]
    count: Any = None
    for_each: Any = None
    depends_on: list[str] = field(default_factory=list)
    provider: str | None = None
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    source: str = ""

    @property
    def address(self) -> str:
        prefix = "data." if self.mode == "data" else ""
        return f"{prefix}{self.type}.{self.name}"

    @property
    def provider_name(self) -> str:
        """Explicit ``provider`` meta-argument, else the type prefix (``aws_vpc`` -> ``aws``)."""
        if self.provider:
            return self.provider
        return self.type.split("_", 1)[0]

    @property
    def expansion_kind(self) -> str:
        if self.count is not None:
            return "count"
        if self.for_each is not None:
            return "for_each"
        return "single"


@dataclass
class Output:
    name: str
    value: Any
    description: str = ""
    sensitive: bool = False
    depends_on: list[str] = field(default_factory=list)
    source: str = ""


@dataclass
class Configuration:
    """Everything declared in one configuration directory."""

    root: Path
    variables: dict[str, Variable] = field(default_factory=dict)
    locals: dict[str, Any] = field(default_factory=dict)
    local_sources: dict[str, str] = field(default_factory=dict)
    providers: dict[str, dict[str, Any]] = field(default_factory=dict)
    blocks: dict[str, ResourceBlock] = field(default_factory=dict)
    outputs: dict[str, Output] = field(default_factory=dict)
    files: list[str] = field(default_factory=list)

    @property
    def resources(self) -> dict[str, ResourceBlock]:
        return {addr: b for addr, b in self.blocks.items() if b.mode == "managed"}

    @property
    def data_sources(self) -> dict[str, ResourceBlock]:
        return {addr: b for addr, b in self.blocks.items() if b.mode == "data"}

    def summary(self) -> dict[str, int]:
        return {
            "files": len(self.files),
            "variables": len(self.variables),
            "locals": len(self.locals),
            "resources": len(self.resources),
            "data_sources": len(self.data_sources),
            "outputs": len(self.outputs),
        }
