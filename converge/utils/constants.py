"""Centralized constants for converge.

This module provides a single source of truth for paths, file patterns,
and environment variable names used across the package.
"""

from pathlib import Path

# ============================================================================
# WORKING DIRECTORY
# ============================================================================

# Primary directory for all converge artifacts (state, logs, plan files)
WORK_DIR = Path("./.converge")

# Log files
ERROR_LOG_FILE = WORK_DIR / "error.log"

# Persistent artifacts
STATE_DB_FILE = WORK_DIR / "state.db"
PLAN_FILE = WORK_DIR / "plan.json"
PROVIDERS_DIR = WORK_DIR / "providers"

# ============================================================================
# DECLARATION FILES
# ============================================================================

# Files merged into one configuration, in directory order
CONFIG_FILE_SUFFIXES = (".tf.json", ".cv.json", ".cv.yaml", ".cv.yml")

# Variable value files picked up automatically from the config directory
AUTO_VAR_FILES = ("converge.vars.json", "converge.vars.yaml", "converge.vars.yml")

# ============================================================================
# ENVIRONMENT VARIABLES
# ============================================================================

ENV_VAR_PREFIX = "CONVERGE_VAR_"
ENV_LOG_LEVEL = "CONVERGE_LOG_LEVEL"
ENV_LOG_JSON = "CONVERGE_LOG_JSON"
ENV_LOG_FILE = "CONVERGE_LOG_FILE"
ENV_REQUEST_ID = "CONVERGE_REQUEST_ID"

# Default provider implementation when a provider block names none
DEFAULT_PROVIDER_BACKEND = "local"
