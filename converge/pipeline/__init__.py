"""Apply execution infrastructure."""
from .structures import ApplyResult, ChangeResult, ChangeStatus
from .renderer import RichRenderer
from .retry import RetryPolicy
from .executor import Executor
from .ui import console, print_warning, print_success, print_status_panel

__all__ = [
    "ApplyResult", "ChangeResult", "ChangeStatus", "RichRenderer", "RetryPolicy", "Executor",
    "console", "print_warning", "print_success", "print_status_panel",
]
