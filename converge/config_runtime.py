"""Runtime configuration for converge - centralized configuration management."""

import copy
import json
import os
from pathlib import Path
from typing import Any

from converge.utils.logging import logger

DEFAULTS = {
    "paths": {
        "work_dir": "./.converge",
        "state_db": "./.converge/state.db",
        "plan_file": "./.converge/plan.json",
        "providers_dir": "./.converge/providers",
        "graph_json": "./.converge/graph.json",
    },
    "limits": {
        "parallelism": 10,
        "max_instances_per_resource": 1000,
    },
    "retry": {
        "max_attempts": 5,
        "base_delay": 0.5,
        "max_delay": 20.0,
        "jitter": 0.25,
    },
    "timeouts": {
        "provider_call": 300,
    },
}


def load_runtime_config(root: str = ".") -> dict[str, Any]:
    """
    Load runtime configuration from .converge/config.json and environment variables.

    Config priority (highest to lowest):
    1. Environment variables (CONVERGE_<SECTION>_<KEY>)
    2. .converge/config.json file
    3. Built-in defaults

    Args:
        root: Root directory to look for config file

    Returns:
        Configuration dictionary with merged values
    """
    cfg = copy.deepcopy(DEFAULTS)

    path = Path(root) / ".converge" / "config.json"
    try:
        if path.exists():
            with open(path, encoding="utf-8") as f:
                user = json.load(f)

            if isinstance(user, dict):
                for section in cfg:
                    if section in user and isinstance(user[section], dict):
                        for key, value in user[section].items():
                            if key in cfg[section] and _same_kind(value, cfg[section][key]):
                                cfg[section][key] = value
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Could not load config file from {}: {}", path, e)
        logger.warning("Continuing with default configuration")

    for section in cfg:
        for key in cfg[section]:
            env_var = f"CONVERGE_{section.upper()}_{key.upper()}"
            if env_var in os.environ:
                value = os.environ[env_var]
                try:
                    default_value = cfg[section][key]
                    if isinstance(default_value, bool):
                        cfg[section][key] = value.lower() in ("1", "true", "yes")
                    elif isinstance(default_value, int):
                        cfg[section][key] = int(value)
                    elif isinstance(default_value, float):
                        cfg[section][key] = float(value)
                    else:
                        cfg[section][key] = value
                except ValueError as e:
                    logger.warning(
                        "Invalid value for environment variable {}: '{}' - {}", env_var, value, e
                    )
                    logger.warning("Using default value: {}", cfg[section][key])

    return cfg


def _same_kind(value: Any, default: Any) -> bool:
    """Accept ints where floats are expected; otherwise require the default's type."""
    if isinstance(default, float) and isinstance(value, int) and not isinstance(value, bool):
        return True
    return isinstance(value, type(default))
