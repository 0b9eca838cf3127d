"""Interpolation language: parser, evaluator, built-in functions."""

from converge.expressions.evaluator import (
    EvalContext,
    Reference,
    evaluate,
    evaluate_value,
    find_references,
    interpolate,
    render_template,
)
from converge.expressions.parser import parse_expression, parse_template
from converge.expressions.values import (
    UNKNOWN,
    PendingAttributes,
    Symbol,
    contains_unknown,
    decode_value,
    encode_value,
    is_unknown,
)

__all__ = [
    "EvalContext",
    "Reference",
    "evaluate",
    "evaluate_value",
    "find_references",
    "interpolate",
    "render_template",
    "parse_expression",
    "parse_template",
    "UNKNOWN",
    "PendingAttributes",
    "Symbol",
    "contains_unknown",
    "decode_value",
    "encode_value",
    "is_unknown",
]
