"""Loading declared configuration and resolving input variables."""

from converge.declaration.loader import load_configuration
from converge.declaration.model import Configuration, Lifecycle, Output, ResourceBlock, Variable
from converge.declaration.variables import parse_var_assignments, resolve_variables

__all__ = [
    "Configuration",
    "Lifecycle",
    "Output",
    "ResourceBlock",
    "Variable",
    "load_configuration",
    "parse_var_assignments",
    "resolve_variables",
]
