"""Built-in functions available inside interpolations.

Every function receives already-evaluated arguments. A function whose
arguments contain ``UNKNOWN`` returns ``UNKNOWN`` unless it is registered
with ``passes_unknown=True`` (collection helpers that only move values
around without inspecting them).

``templatefile`` needs the evaluator and lives in ``evaluator.py``.
"""

import ipaddress
import json
import re
from collections.abc import Callable
from typing import Any

from converge.errors import ExpressionError
from converge.expressions.values import UNKNOWN, contains_unknown


def to_string(value: Any) -> str:
    """Stringify a primitive the way interpolation does."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, str)):
        return str(value)
    raise ExpressionError(f"cannot convert {type(value).__name__} to string")


def to_number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise ExpressionError("cannot use a bool as a number")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                raise ExpressionError(f"cannot convert {value!r} to a number") from None
    raise ExpressionError(f"cannot convert {type(value).__name__} to a number")


def _as_list(value: Any, fn: str) -> list:
    if isinstance(value, (list, tuple)):
        return list(value)
    raise ExpressionError(f"{fn}() expects a list, got {type(value).__name__}")


def _element(items, index):
    items = _as_list(items, "element")
    if not items:
        raise ExpressionError("element() cannot be used with an empty list")
    if index is UNKNOWN:
        return UNKNOWN
    return items[int(to_number(index)) % len(items)]


def _length(value):
    if isinstance(value, (list, tuple, dict, str)):
        return len(value)
    raise ExpressionError(f"length() expects a collection or string, got {type(value).__name__}")


def _cidrsubnet(prefix, newbits, netnum):
    try:
        network = ipaddress.ip_network(prefix, strict=False)
    except ValueError as e:
        raise ExpressionError(f"cidrsubnet(): invalid prefix {prefix!r}: {e}") from None
    newbits = int(to_number(newbits))
    netnum = int(to_number(netnum))
    new_prefix = network.prefixlen + newbits
    if new_prefix > network.max_prefixlen:
        raise ExpressionError(
            f"cidrsubnet(): {newbits} additional bits exceeds the address length of {prefix}"
        )
    if netnum < 0 or netnum >= 2**newbits:
        raise ExpressionError(f"cidrsubnet(): netnum {netnum} does not fit in {newbits} bits")
    size = 2 ** (network.max_prefixlen - new_prefix)
    base = int(network.network_address) + netnum * size
    subnet = ipaddress.ip_network((base, new_prefix))
    return str(subnet)


def _join(separator, items):
    items = _as_list(items, "join")
    if any(item is UNKNOWN for item in items):
        return UNKNOWN
    return to_string(separator).join(to_string(item) for item in items)


def _lookup(mapping, key, *default):
    if not isinstance(mapping, dict):
        raise ExpressionError(f"lookup() expects a map, got {type(mapping).__name__}")
    if key is UNKNOWN:
        return UNKNOWN
    if key in mapping:
        return mapping[key]
    if default:
        return default[0]
    raise ExpressionError(f"lookup(): key {key!r} not found and no default given")


def _concat(*lists):
    out = []
    for item in lists:
        if item is UNKNOWN:
            return UNKNOWN
        out.extend(_as_list(item, "concat"))
    return out


def _jsonencode(value):
    return json.dumps(value, separators=(",", ":"))


def _jsondecode(text):
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ExpressionError(f"jsondecode(): {e}") from None


def _tostring(value):
    if isinstance(value, (list, tuple, dict)):
        raise ExpressionError("tostring() only converts primitive values")
    if value is None:
        return None
    return to_string(value)


def _tonumber(value):
    if value is None:
        return None
    return to_number(value)


_FORMAT_VERB = re.compile(r"%(%|[-+ #0]*\d*(?:\.\d+)?[sdvqftb])")


def _format(fmt, *args):
    fmt = to_string(fmt)
    remaining = list(args)

    def substitute(match: re.Match) -> str:
        verb = match.group(1)
        if verb == "%":
            return "%"
        if not remaining:
            raise ExpressionError(f"format(): not enough arguments for {fmt!r}")
        arg = remaining.pop(0)
        kind = verb[-1]
        flags = verb[:-1]
        if kind == "q":
            return json.dumps(to_string(arg))
        if kind == "v":
            return to_string(arg) if not isinstance(arg, (list, dict)) else json.dumps(arg)
        if kind == "d":
            return ("%" + flags + "d") % int(to_number(arg))
        if kind == "f":
            return ("%" + flags + "f") % float(to_number(arg))
        if kind == "b":
            return format(int(to_number(arg)), "b")
        if kind == "t":
            if not isinstance(arg, bool):
                raise ExpressionError("format(): %t expects a bool")
            return to_string(arg)
        return ("%" + flags + "s") % to_string(arg)

    result = _FORMAT_VERB.sub(substitute, fmt)
    if remaining:
        raise ExpressionError(f"format(): too many arguments for {fmt!r}")
    return result


def _upper(text):
    return to_string(text).upper()


def _lower(text):
    return to_string(text).lower()


def _numeric_args(name: str, args: tuple) -> list:
    if len(args) == 1 and isinstance(args[0], (list, tuple)):
        args = tuple(args[0])
    if not args:
        raise ExpressionError(f"{name}() needs at least one argument")
    return [to_number(arg) for arg in args]


def _min(*args):
    return min(_numeric_args("min", args))


def _max(*args):
    return max(_numeric_args("max", args))


def _range(*args):
    numbers = [int(to_number(arg)) for arg in args]
    if len(numbers) == 1:
        return list(range(numbers[0]))
    if len(numbers) == 2:
        return list(range(numbers[0], numbers[1]))
    if len(numbers) == 3:
        if numbers[2] == 0:
            raise ExpressionError("range(): step must not be zero")
        return list(range(*numbers))
    raise ExpressionError("range() takes one to three arguments")


# name -> (callable, min_args, max_args or None, passes_unknown)
FUNCTIONS: dict[str, tuple[Callable, int, int | None, bool]] = {
    "element": (_element, 2, 2, True),
    "length": (_length, 1, 1, True),
    "cidrsubnet": (_cidrsubnet, 3, 3, False),
    "join": (_join, 2, 2, True),
    "lookup": (_lookup, 2, 3, True),
    "concat": (_concat, 0, None, True),
    "jsonencode": (_jsonencode, 1, 1, False),
    "jsondecode": (_jsondecode, 1, 1, False),
    "tostring": (_tostring, 1, 1, False),
    "tonumber": (_tonumber, 1, 1, False),
    "format": (_format, 1, None, False),
    "upper": (_upper, 1, 1, False),
    "lower": (_lower, 1, 1, False),
    "min": (_min, 1, None, False),
    "max": (_max, 1, None, False),
    "range": (_range, 1, 3, False),
}

# Evaluated by the evaluator itself because it reads files and renders templates.
SPECIAL_FUNCTIONS = {"templatefile"}


def is_known_function(name: str) -> bool:
    return name in FUNCTIONS or name in SPECIAL_FUNCTIONS


def call_function(name: str, args: list) -> Any:
    """Invoke a built-in with evaluated arguments."""
    if name not in FUNCTIONS:
        raise ExpressionError(f"unknown function {name}()")
    fn, min_args, max_args, passes_unknown = FUNCTIONS[name]
    if len(args) < min_args or (max_args is not None and len(args) > max_args):
        expected = str(min_args) if min_args == max_args else f"{min_args}..{max_args or 'n'}"
        raise ExpressionError(f"{name}() takes {expected} arguments, got {len(args)}")
    if passes_unknown:
        if any(arg is UNKNOWN for arg in args):
            return UNKNOWN
    elif any(contains_unknown(arg) for arg in args):
        return UNKNOWN
    return fn(*args)
