"""Centralized logging configuration using Loguru with Pino-compatible output.

Every module logs through the single loguru ``logger`` exported here. Human
readable lines go to stderr by default; NDJSON (Pino-compatible) output is
available for log shippers that already parse Node.js services.

Usage:
    from converge.utils.logging import logger
    logger.info("Message")
    logger.debug("Debug message")  # Only shows if CONVERGE_LOG_LEVEL=DEBUG

Environment Variables:
    CONVERGE_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: WARNING)
    CONVERGE_LOG_JSON: 0|1 (default: 0, human-readable)
    CONVERGE_LOG_FILE: path to log file (optional)
    CONVERGE_REQUEST_ID: correlation ID for a whole apply run
"""

import json
import os
import sys
import uuid

from loguru import logger

from .constants import ENV_LOG_FILE, ENV_LOG_JSON, ENV_LOG_LEVEL, ENV_REQUEST_ID

# Remove default handler
logger.remove()

# Pino-compatible numeric levels
PINO_LEVELS = {
    "TRACE": 10,
    "DEBUG": 20,
    "INFO": 30,
    "SUCCESS": 30,
    "WARNING": 40,
    "ERROR": 50,
    "CRITICAL": 60,
}

# Get configuration from environment
_log_level = os.environ.get(ENV_LOG_LEVEL, "WARNING").upper()
_json_mode = os.environ.get(ENV_LOG_JSON, "0") == "1"
_log_file = os.environ.get(ENV_LOG_FILE)
_request_id = os.environ.get(ENV_REQUEST_ID) or str(uuid.uuid4())


def _pino_record(record) -> dict:
    """Build the Pino field layout for one loguru record."""
    pino_log = {
        "level": PINO_LEVELS.get(record["level"].name, 30),
        "time": int(record["time"].timestamp() * 1000),
        "msg": record["message"],
        "pid": record["process"].id,
        "request_id": record["extra"].get("request_id", _request_id),
    }

    for key, value in record["extra"].items():
        if key != "request_id":
            pino_log[key] = value

    if record["exception"]:
        pino_log["err"] = {
            "type": record["exception"].type.__name__ if record["exception"].type else "Error",
            "message": str(record["exception"].value) if record["exception"].value else "",
        }
    return pino_log


def pino_compatible_sink(message):
    """Format log records as Pino-compatible NDJSON on stdout.

    {"level":30,"time":1715629847123,"msg":"...","pid":12345,"request_id":"..."}
    """
    # Never call logger.* inside a sink - causes infinite recursion
    sys.stdout.write(json.dumps(_pino_record(message.record), default=str) + "\n")
    sys.stdout.flush()


# Human-readable format (no emojis - Windows CP1252 compatibility)
_human_format = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}:{function}:{line}</cyan> - "
    "<level>{message}</level>"
)

logger.level("DEBUG", color="<blue>")
logger.level("INFO", color="<white>")
logger.level("WARNING", color="<yellow>")
logger.level("ERROR", color="<red>")
logger.level("CRITICAL", color="<red><bold>")

# Track the human-mode handler ID so it can be swapped for Rich integration
_human_handler_id: int | None = None

if _json_mode:
    logger.add(
        pino_compatible_sink,
        level=_log_level,
        colorize=False,
    )
else:
    _human_handler_id = logger.add(
        sys.stderr,
        level=_log_level,
        format=_human_format,
        colorize=None,  # Auto-detect: colors if TTY, plain if piped
    )

# Optional file handler (always NDJSON for machine parsing)
if _log_file:
    def _file_pino_sink(message):
        """Write Pino-format JSON to the configured log file."""
        with open(_log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(_pino_record(message.record), default=str) + "\n")

    logger.add(
        _file_pino_sink,
        level="DEBUG",  # File always captures everything
    )


def set_console_level(level: str) -> None:
    """Re-install the stderr handler at a new level (used by --verbose)."""
    global _human_handler_id, _log_level

    _log_level = level.upper()
    if _json_mode or _human_handler_id is None:
        return

    logger.remove(_human_handler_id)
    _human_handler_id = logger.add(
        sys.stderr,
        level=_log_level,
        format=_human_format,
        colorize=None,
    )


def get_request_id() -> str:
    """Get the current request ID for correlation."""
    return _request_id


def swap_to_rich_sink(rich_sink_fn) -> int | None:
    """Swap stderr handler to a Rich-compatible sink for Live display integration.

    When Rich Live is active, logs to stderr get overwritten by Live's refresh.
    This removes the stderr handler and routes logs through the Rich console,
    which knows how to print above Live displays.

    Returns:
        The new handler ID, or None if in JSON mode (no swap needed).
    """
    global _human_handler_id

    if _json_mode or _human_handler_id is None:
        return None

    logger.remove(_human_handler_id)
    _human_handler_id = None

    return logger.add(
        rich_sink_fn,
        level=_log_level,
        format=_human_format,
        colorize=True,
    )


def restore_stderr_sink(rich_handler_id: int | None) -> None:
    """Restore the default stderr handler after Rich Live display ends."""
    global _human_handler_id

    if _json_mode:
        return

    if rich_handler_id is not None:
        try:
            logger.remove(rich_handler_id)
        except ValueError:
            pass  # Already removed

    _human_handler_id = logger.add(
        sys.stderr,
        level=_log_level,
        format=_human_format,
        colorize=None,
    )


__all__ = [
    "logger",
    "set_console_level",
    "get_request_id",
    "swap_to_rich_sink",
    "restore_stderr_sink",
]
