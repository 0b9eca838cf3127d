"""Structural rule pack evaluated on a symbolic plan."""
from .topology import (
    RULES,
    CheckContext,
    Severity,
    TopologyFinding,
    build_context,
    run_checks,
    symbol_reference,
    validate_container_definitions,
)

__all__ = [
    "RULES", "CheckContext", "Severity", "TopologyFinding",
    "build_context", "run_checks", "symbol_reference", "validate_container_definitions",
]
