"""Resolve input variable values.

Sources, lowest to highest priority:

1. ``default`` in the variable declaration
2. ``converge.vars.json`` / ``converge.vars.yaml`` in the config directory
3. ``--var-file`` files, in the order given
4. ``CONVERGE_VAR_<name>`` environment variables
5. ``--var name=value`` on the command line

Values coming from the environment or the command line are strings and
are converted to the declared type; for list and map types they are
parsed as JSON (or YAML flow syntax).
"""

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from converge.declaration.loader import read_document
from converge.declaration.model import Configuration, Variable
from converge.errors import DeclarationError, VariableError
from converge.utils.constants import AUTO_VAR_FILES, ENV_VAR_PREFIX
from converge.utils.logging import logger


def parse_var_assignments(assignments: list[str] | tuple[str, ...]) -> dict[str, str]:
    """Split ``--var name=value`` options."""
    values = {}
    for item in assignments:
        if "=" not in item:
            raise VariableError(f"--var expects name=value, got {item!r}")
        name, value = item.split("=", 1)
        values[name.strip()] = value
    return values


def resolve_variables(
    config: Configuration,
    var_files: list[str] | tuple[str, ...] = (),
    cli_values: Mapping[str, str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Compute the final value of every declared variable."""
    environ = os.environ if environ is None else environ
    raw: dict[str, Any] = {}
    origin: dict[str, str] = {}

    def merge(values: Mapping[str, Any], label: str, typed: bool) -> None:
        for name, value in values.items():
            if name not in config.variables:
                logger.warning("{} sets undeclared variable {!r}; ignoring", label, name)
                continue
            raw[name] = (value, typed)
            origin[name] = label

    for name, variable in config.variables.items():
        if not variable.required:
            raw[name] = (variable.default, True)
            origin[name] = "default"

    for filename in AUTO_VAR_FILES:
        path = config.root / filename
        if path.is_file():
            merge(_read_var_file(path), filename, typed=True)

    for var_file in var_files:
        merge(_read_var_file(Path(var_file)), str(var_file), typed=True)

    env_values = {
        key[len(ENV_VAR_PREFIX):]: value
        for key, value in environ.items()
        if key.startswith(ENV_VAR_PREFIX) and key[len(ENV_VAR_PREFIX):] in config.variables
    }
    merge(env_values, "environment", typed=False)
    merge(dict(cli_values or {}), "--var", typed=False)

    resolved = {}
    for name, variable in config.variables.items():
        if name not in raw:
            raise VariableError(
                f"no value for required variable {name!r} "
                f"(set it with --var {name}=..., {ENV_VAR_PREFIX}{name} or a var file)"
            )
        value, typed = raw[name]
        try:
            resolved[name] = coerce(value, variable.type, from_string=not typed)
        except VariableError as e:
            raise VariableError(f"variable {name!r} (from {origin[name]}): {e}") from None

    logger.debug("Resolved {} variables", len(resolved))
    return resolved


def _read_var_file(path: Path) -> dict[str, Any]:
    try:
        document = read_document(path)
    except DeclarationError as e:
        raise VariableError(str(e)) from None
    return document


def coerce(value: Any, type_expr: str, from_string: bool = False) -> Any:
    """Convert ``value`` to the declared type, or raise VariableError."""
    base, element = _split_type(type_expr)

    if value is None:
        return None

    if base == "any":
        return value

    if base == "string":
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str):
            return value
        raise VariableError(f"expected a string, got {type(value).__name__}")

    if base == "number":
        if isinstance(value, bool):
            raise VariableError("expected a number, got a bool")
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                try:
                    return float(value)
                except ValueError:
                    raise VariableError(f"expected a number, got {value!r}") from None
        raise VariableError(f"expected a number, got {type(value).__name__}")

    if base == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        raise VariableError(f"expected a bool, got {value!r}")

    if from_string and isinstance(value, str):
        value = _parse_structured(value)

    if base in ("list", "set"):
        if not isinstance(value, (list, tuple)):
            raise VariableError(f"expected a list, got {type(value).__name__}")
        items = [coerce(item, element) for item in value]
        if base == "set":
            unique = []
            for item in items:
                if item not in unique:
                    unique.append(item)
            items = unique
        return items

    if base == "map":
        if not isinstance(value, dict):
            raise VariableError(f"expected a map, got {type(value).__name__}")
        return {str(key): coerce(item, element) for key, item in value.items()}

    raise VariableError(f"unknown type {type_expr!r}")


def _split_type(type_expr: str) -> tuple[str, str]:
    type_expr = type_expr.strip()
    if "(" in type_expr and type_expr.endswith(")"):
        base, inner = type_expr.split("(", 1)
        return base.strip(), inner[:-1].strip() or "any"
    return type_expr, "any"


def _parse_structured(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise VariableError(f"cannot parse {text!r}: {e}") from None


def describe_variables(config: Configuration, values: dict[str, Any]) -> list[dict[str, Any]]:
    """Rows for ``converge validate --show-vars``; sensitive values are masked."""
    rows = []
    for name, variable in sorted(config.variables.items()):
        value = values.get(name)
        rows.append(
            {
                "name": name,
                "type": variable.type,
                "value": "(sensitive)" if variable.sensitive else value,
                "description": variable.description,
            }
        )
    return rows


__all__ = ["Variable", "coerce", "describe_variables", "parse_var_assignments", "resolve_variables"]
