"""Data contracts for plans.

A Plan is JSON-serializable so it can be saved with ``plan --out`` and
applied later; values that are only known after apply are written with
the ``{"__unknown__": true}`` marker.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from converge.errors import PlanError
from converge.expressions.values import decode_value, encode_value

PLAN_FORMAT_VERSION = 1


class Action(Enum):
    """What the executor will do to one instance."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no-op"
    READ = "read"


@dataclass
class ResourceChange:
    """Planned change of a single resource instance."""
    address: str
    type: str
    name: str
    mode: str
    provider: str
    action: Action
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    # Raw (unevaluated) block config, re-evaluated at apply time
    config: dict[str, Any] = field(default_factory=dict)
    count_index: int | None = None
    each_key: str | None = None
    each_value: Any = None
    # Block addresses this instance depends on now, and did when last applied
    dependencies: list[str] = field(default_factory=list)
    prior_dependencies: list[str] = field(default_factory=list)
    changed_attributes: list[str] = field(default_factory=list)
    replace_reasons: list[str] = field(default_factory=list)
    create_before_destroy: bool = False
    # Key of a deposed object left behind by a create_before_destroy replacement
    deposed: str | None = None
    reason: str = ""

    @property
    def block(self) -> str:
        prefix = "data." if self.mode == "data" else ""
        return f"{prefix}{self.type}.{self.name}"

    @property
    def label(self) -> str:
        """Address, plus the deposed key when this change removes a deposed object."""
        if self.deposed:
            return f"{self.address} (deposed {self.deposed})"
        return self.address

    @property
    def is_change(self) -> bool:
        return self.action != Action.NO_OP

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["action"] = self.action.value
        for key in ("before", "after", "config", "each_value"):
            d[key] = encode_value(d[key])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceChange":
        data = dict(data)
        data["action"] = Action(data["action"])
        for key in ("before", "after", "config", "each_value"):
            data[key] = decode_value(data.get(key))
        if data["config"] is None:
            data["config"] = {}
        return cls(**data)


@dataclass
class Plan:
    """Ordered change-set plus everything needed to apply it later."""
    changes: list[ResourceChange] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    # Raw local expressions, re-evaluated at apply time
    locals: dict[str, Any] = field(default_factory=dict)
    # Planned output values (may contain unknowns) and their declarations
    outputs: dict[str, Any] = field(default_factory=dict)
    output_decls: dict[str, dict[str, Any]] = field(default_factory=dict)
    # Data source results read at plan time, keyed by instance address
    data: dict[str, Any] = field(default_factory=dict)
    # block address -> {"kind": ..., "keys": [...]}
    expansions: dict[str, dict[str, Any]] = field(default_factory=dict)
    state_serial: int = 0
    state_lineage: str = ""
    root: str = "."
    destroy: bool = False
    targets: list[str] = field(default_factory=list)
    drift: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def change_for(self, address: str) -> ResourceChange | None:
        for change in self.changes:
            if change.address == address and not change.deposed:
                return change
        return None

    @property
    def has_changes(self) -> bool:
        return any(change.is_change for change in self.changes)

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "format_version": PLAN_FORMAT_VERSION,
            "created_at": self.created_at,
            "root": self.root,
            "destroy": self.destroy,
            "targets": self.targets,
            "state_serial": self.state_serial,
            "state_lineage": self.state_lineage,
            "variables": encode_value(self.variables),
            "locals": encode_value(self.locals),
            "outputs": encode_value(self.outputs),
            "output_decls": encode_value(self.output_decls),
            "data": encode_value(self.data),
            "expansions": self.expansions,
            "drift": self.drift,
            "summary": self.summary(),
            "changes": [change.to_dict() for change in self.changes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Plan":
        if data.get("format_version") != PLAN_FORMAT_VERSION:
            raise PlanError(
                f"unsupported plan format {data.get('format_version')!r} "
                f"(expected {PLAN_FORMAT_VERSION})"
            )
        try:
            return cls(
                changes=[ResourceChange.from_dict(item) for item in data["changes"]],
                variables=decode_value(data.get("variables", {})),
                locals=decode_value(data.get("locals", {})),
                outputs=decode_value(data.get("outputs", {})),
                output_decls=decode_value(data.get("output_decls", {})),
                data=decode_value(data.get("data", {})),
                expansions=data.get("expansions", {}),
                state_serial=int(data["state_serial"]),
                state_lineage=data.get("state_lineage", ""),
                root=data.get("root", "."),
                destroy=bool(data.get("destroy", False)),
                targets=list(data.get("targets", [])),
                drift=list(data.get("drift", [])),
                created_at=data.get("created_at", ""),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PlanError(f"malformed plan file: {e}") from None

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Path) -> "Plan":
        try:
            with open(path, encoding="utf-8") as f:
                return cls.from_dict(json.load(f))
        except (json.JSONDecodeError, OSError) as e:
            raise PlanError(f"cannot read plan {path}: {e}") from None


def values_equal(left: Any, right: Any) -> bool:
    """Compare attribute values ignoring int/float and list/tuple differences."""
    return _canonical(left) == _canonical(right)


def _canonical(value: Any) -> Any:
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _canonical(item) for key, item in value.items()}
    return value
