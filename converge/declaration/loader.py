"""Configuration loader.

Reads every ``*.tf.json``, ``*.cv.json``, ``*.cv.yaml`` and ``*.cv.yml``
file of a directory and merges them into one ``Configuration``. The
document shape is Terraform's JSON syntax::

    variable: {name: {type, default, description, sensitive}}
    locals:   {name: value}
    provider: {name: {backend: local, ...}}
    data:     {type: {name: {...}}}
    resource: {type: {name: {...}}}
    output:   {name: {value, description, sensitive, depends_on}}

NO FALLBACKS. A file that does not parse, an unknown top-level key or a
name declared twice raises DeclarationError naming the file(s).
"""

import json
import re
from pathlib import Path
from typing import Any

import yaml

from converge.declaration.model import (
    META_ARGUMENTS,
    NO_DEFAULT,
    Configuration,
    Lifecycle,
    Output,
    ResourceBlock,
    Variable,
)
from converge.errors import DeclarationError
from converge.utils.constants import CONFIG_FILE_SUFFIXES
from converge.utils.logging import logger

TOP_LEVEL_KEYS = {"variable", "locals", "provider", "data", "resource", "output", "terraform"}
VARIABLE_TYPES = {"string", "number", "bool", "list", "map", "set", "any"}
_NAME = re.compile(r"^[A-Za-z_][\w-]*$")
_BARE_REFERENCE = re.compile(r"^\$\{\s*(.+?)\s*\}$")


def discover_files(config_dir: Path) -> list[Path]:
    """Configuration files of a directory, in stable name order."""
    if not config_dir.is_dir():
        raise DeclarationError(f"configuration directory not found: {config_dir}")
    files = [
        path
        for path in sorted(config_dir.iterdir())
        if path.is_file() and any(path.name.endswith(suffix) for suffix in CONFIG_FILE_SUFFIXES)
    ]
    if not files:
        raise DeclarationError(
            f"no configuration files ({', '.join(CONFIG_FILE_SUFFIXES)}) in {config_dir}"
        )
    return files


def read_document(path: Path) -> dict[str, Any]:
    """Parse one JSON or YAML document into a dict."""
    try:
        with open(path, encoding="utf-8") as f:
            if path.suffix in (".yaml", ".yml"):
                document = yaml.safe_load(f)
            else:
                document = json.load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise DeclarationError(f"cannot parse: {e}", str(path)) from None
    except OSError as e:
        raise DeclarationError(f"cannot read: {e}", str(path)) from None

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise DeclarationError("top level must be a mapping", str(path))
    return document


def load_configuration(config_dir: str | Path) -> Configuration:
    """Load and merge every configuration file in ``config_dir``."""
    root = Path(config_dir).resolve()
    config = Configuration(root=root)

    for path in discover_files(root):
        source = path.name
        document = read_document(path)
        unknown = set(document) - TOP_LEVEL_KEYS
        if unknown:
            raise DeclarationError(f"unknown top-level key(s): {', '.join(sorted(unknown))}", source)

        config.files.append(source)
        for name, body in _entries(document.get("variable"), source, "variable"):
            _add_unique(config.variables, name, _parse_variable(name, body, source), source, "variable")
        for locals_block in _as_list(document.get("locals")):
            if not isinstance(locals_block, dict):
                raise DeclarationError("locals must be a mapping", source)
            for name, value in locals_block.items():
                _check_name(name, source)
                if name in config.locals:
                    raise DeclarationError(
                        f"local.{name} already declared in {config.local_sources[name]}", source
                    )
                config.locals[name] = value
                config.local_sources[name] = source
        for name, body in _entries(document.get("provider"), source, "provider"):
            if name in config.providers:
                raise DeclarationError(f"provider {name!r} configured twice", source)
            config.providers[name] = dict(body or {})
        for mode, key in (("managed", "resource"), ("data", "data")):
            for type_name, named in _entries(document.get(key), source, key):
                for name, body in _entries(named, source, f"{key} {type_name}"):
                    block = _parse_block(mode, type_name, name, body, source)
                    _add_unique(config.blocks, block.address, block, source, key)
        for name, body in _entries(document.get("output"), source, "output"):
            _add_unique(config.outputs, name, _parse_output(name, body, source), source, "output")

    logger.debug("Loaded configuration from {}: {}", root, config.summary())
    return config


def normalize_reference(entry: Any, source: str) -> str:
    """``depends_on`` entries may be bare addresses or a single interpolation."""
    if not isinstance(entry, str):
        raise DeclarationError(f"depends_on entries must be strings, got {entry!r}", source)
    text = entry.strip()
    match = _BARE_REFERENCE.match(text)
    if match:
        text = match.group(1)
    return text


# ============================================================================
# INTERNALS
# ============================================================================


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _entries(section: Any, source: str, what: str):
    """Yield (name, body) from a mapping or a list of single-key mappings."""
    for chunk in _as_list(section):
        if not isinstance(chunk, dict):
            raise DeclarationError(f"{what} must be a mapping", source)
        for name, body in chunk.items():
            _check_name(name, source)
            if body is not None and not isinstance(body, (dict, list)):
                raise DeclarationError(f"{what} {name!r} must be a mapping", source)
            if isinstance(body, list):
                merged: dict[str, Any] = {}
                for part in body:
                    if not isinstance(part, dict):
                        raise DeclarationError(f"{what} {name!r} must be a mapping", source)
                    merged.update(part)
                body = merged
            yield name, body or {}


def _check_name(name: Any, source: str) -> None:
    if not isinstance(name, str) or not _NAME.match(name):
        raise DeclarationError(f"invalid name {name!r}", source)


def _add_unique(target: dict, key: str, item: Any, source: str, what: str) -> None:
    if key in target:
        previous = getattr(target[key], "source", "?")
        raise DeclarationError(f"{what} {key!r} already declared in {previous}", source)
    target[key] = item


def _parse_variable(name: str, body: dict, source: str) -> Variable:
    unknown = set(body) - {"type", "default", "description", "sensitive", "nullable"}
    if unknown:
        raise DeclarationError(f"variable {name!r}: unsupported key(s) {sorted(unknown)}", source)
    var_type = str(body.get("type", "any"))
    base = var_type.split("(", 1)[0]
    if base not in VARIABLE_TYPES:
        raise DeclarationError(f"variable {name!r}: unknown type {var_type!r}", source)
    return Variable(
        name=name,
        type=var_type,
        default=body["default"] if "default" in body else NO_DEFAULT,
        description=str(body.get("description", "")),
        sensitive=bool(body.get("sensitive", False)),
        source=source,
    )


def _parse_lifecycle(address: str, body: Any, source: str) -> Lifecycle:
    if body is None:
        return Lifecycle()
    if isinstance(body, list):
        merged = {}
        for part in body:
            merged.update(part)
        body = merged
    if not isinstance(body, dict):
        raise DeclarationError(f"{address}: lifecycle must be a mapping", source)
    unknown = set(body) - {"create_before_destroy", "prevent_destroy", "ignore_changes"}
    if unknown:
        raise DeclarationError(f"{address}: unsupported lifecycle key(s) {sorted(unknown)}", source)
    ignore = body.get("ignore_changes", [])
    if ignore == "all":
        ignore_changes: list[str] | str = "all"
    elif isinstance(ignore, list) and all(isinstance(item, str) for item in ignore):
        ignore_changes = [normalize_reference(item, source) for item in ignore]
    else:
        raise DeclarationError(f"{address}: ignore_changes must be a list of names or \"all\"", source)
    return Lifecycle(
        create_before_destroy=bool(body.get("create_before_destroy", False)),
        prevent_destroy=bool(body.get("prevent_destroy", False)),
        ignore_changes=ignore_changes,
    )


def _parse_block(mode: str, type_name: str, name: str, body: dict, source: str) -> ResourceBlock:
    block = ResourceBlock(mode=mode, type=type_name, name=name, config={}, source=source)
    address = block.address

    if "count" in body and "for_each" in body:
        raise DeclarationError(f"{address}: count and for_each are mutually exclusive", source)

    depends_on = body.get("depends_on", [])
    if not isinstance(depends_on, list):
        raise DeclarationError(f"{address}: depends_on must be a list", source)

    provider = body.get("provider")
    if provider is not None and not isinstance(provider, str):
        raise DeclarationError(f"{address}: provider must be a string", source)

    if mode == "data" and "lifecycle" in body:
        raise DeclarationError(f"{address}: data sources do not support lifecycle", source)

    block.count = body.get("count")
    block.for_each = body.get("for_each")
    block.depends_on = [normalize_reference(entry, source) for entry in depends_on]
    block.provider = normalize_reference(provider, source) if provider else None
    block.lifecycle = _parse_lifecycle(address, body.get("lifecycle"), source)
    block.config = {key: value for key, value in body.items() if key not in META_ARGUMENTS}
    return block


def _parse_output(name: str, body: dict, source: str) -> Output:
    if "value" not in body:
        raise DeclarationError(f"output {name!r} has no value", source)
    return Output(
        name=name,
        value=body["value"],
        description=str(body.get("description", "")),
        sensitive=bool(body.get("sensitive", False)),
        depends_on=[normalize_reference(entry, source) for entry in body.get("depends_on", [])],
        source=source,
    )
