"""Planning: diff the declared configuration against state."""
from .changes import Action, Plan, ResourceChange, values_equal
from .planner import Planner
from .render import render_plan, summary_line
from .scope import ValueScope

__all__ = [
    "Action", "Plan", "ResourceChange", "values_equal",
    "Planner", "render_plan", "summary_line", "ValueScope",
]
