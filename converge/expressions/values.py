"""Value model shared by the evaluator, the planner and the executor.

Attributes that only exist after a resource is created (ids, ARNs, DNS
names) are ``UNKNOWN`` while planning. ``UNKNOWN`` is a singleton that
propagates through every operation that consumes it, so a plan can still
show which attributes will change without knowing their final value.
"""

from typing import Any


class _Unknown:
    """Sentinel for a value that is known only after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()

UNKNOWN_MARKER = "__unknown__"


class Symbol(str):
    """Placeholder string standing in for an unknown attribute.

    Used when planning symbolically (structural checks): instead of
    collapsing to ``UNKNOWN``, a pending attribute evaluates to the address
    it would come from, e.g. ``aws_nat_gateway.gw[1].id``. Because it is a
    ``str``, ordinary functions such as ``element`` keep working on it.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        return f"Symbol({str.__repr__(self)})"


class PendingAttributes(dict):
    """Attributes of an instance whose final values are not all known yet.

    Attributes that were declared are stored normally; anything else
    (computed by the provider) evaluates to ``UNKNOWN`` or, in symbolic
    mode, to a ``Symbol`` naming the attribute.
    """

    def __init__(self, address: str, known: dict | None = None, symbolic: bool = False):
        super().__init__(known or {})
        self.address = address
        self.symbolic = symbolic

    def lookup(self, name: str) -> Any:
        if name in self:
            return self[name]
        if self.symbolic:
            return Symbol(f"{self.address}.{name}")
        return UNKNOWN


def is_unknown(value: Any) -> bool:
    """True if the value itself is UNKNOWN."""
    return value is UNKNOWN


def contains_unknown(value: Any) -> bool:
    """True if UNKNOWN appears anywhere inside the value."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


def encode_value(value: Any) -> Any:
    """Make a value JSON-serialisable, marking UNKNOWN explicitly."""
    if value is UNKNOWN:
        return {UNKNOWN_MARKER: True}
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    """Inverse of encode_value."""
    if isinstance(value, dict):
        if value == {UNKNOWN_MARKER: True}:
            return UNKNOWN
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


def render_value(value: Any) -> str:
    """Short human rendering used by plan output."""
    if value is UNKNOWN:
        return "(known after apply)"
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(render_value(v) for v in value) + "]"
    if isinstance(value, dict):
        inner = ", ".join(f"{k} = {render_value(v)}" for k, v in value.items())
        return "{" + inner + "}"
    return str(value)
