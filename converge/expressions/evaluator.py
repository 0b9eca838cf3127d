"""Evaluate parsed interpolations against an EvalContext.

The evaluator never looks anything up by itself: variables are a plain
dict, while locals, resources and data sources come through resolver
callables supplied by the planner or the executor. That keeps the same
code path for plan time (values may be ``UNKNOWN``) and apply time (real
attribute values read back from the provider).
"""

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from converge.errors import ExpressionError, UnresolvedReferenceError
from converge.expressions.functions import SPECIAL_FUNCTIONS, call_function, to_number, to_string
from converge.expressions.parser import (
    Binary,
    Conditional,
    FunctionCall,
    GetAttr,
    Index,
    ListExpr,
    Literal,
    ObjectExpr,
    Splat,
    TemplateExpr,
    Traversal,
    Unary,
    has_interpolation,
    iter_nodes,
    parse_template,
)
from converge.expressions.values import UNKNOWN, PendingAttributes, Symbol, contains_unknown


def _no_resolver(kind: str) -> Callable[..., Any]:
    def resolve(*parts):
        raise ExpressionError(f"{kind} references are not available here: {'.'.join(parts)}")

    return resolve


@dataclass
class EvalContext:
    """Everything an expression may refer to."""

    variables: dict[str, Any] = field(default_factory=dict)
    local_resolver: Callable[[str], Any] | None = None
    resource_resolver: Callable[[str, str], Any] | None = None
    data_resolver: Callable[[str, str], Any] | None = None
    count_index: int | None = None
    each_key: Any = None
    each_value: Any = None
    has_each: bool = False
    module_path: str = "."
    root_path: str = "."
    # Set while rendering a templatefile(): bare names resolve here
    template_vars: dict[str, Any] | None = None
    referrer: str = "<expression>"

    def derive(self, **changes) -> "EvalContext":
        values = dict(self.__dict__)
        values.update(changes)
        return EvalContext(**values)


@dataclass(frozen=True)
class Reference:
    """A static reference found in an expression.

    ``kind`` is one of var, local, resource, data, count, each, path.
    ``address`` is the graph node it points at (``var.az_count``,
    ``aws_subnet.private``, ``data.aws_availability_zones.available``).
    """

    kind: str
    address: str
    attribute: str | None = None


# ============================================================================
# STATIC ANALYSIS
# ============================================================================


def find_references(value: Any) -> list[Reference]:
    """Collect every reference in a (possibly nested) declared value."""
    found: dict[Reference, None] = {}
    for text in _iter_strings(value):
        if not has_interpolation(text):
            continue
        template = parse_template(text)
        for node in iter_nodes(template):
            if isinstance(node, Traversal) and node.is_reference:
                ref = reference_of(node, text)
                if ref is not None:
                    found[ref] = None
    return list(found)


def find_function_names(value: Any) -> set[str]:
    names = set()
    for text in _iter_strings(value):
        if has_interpolation(text):
            for node in iter_nodes(parse_template(text)):
                if isinstance(node, FunctionCall):
                    names.add(node.name)
    return names


def _iter_strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


def reference_of(node: Traversal, source: str) -> Reference | None:
    names = node.attr_names()
    root = node.root
    if root in ("var", "local"):
        if not names:
            raise ExpressionError(f"'{root}' must be followed by a name", source)
        return Reference(root, f"{root}.{names[0]}", names[1] if len(names) > 1 else None)
    if root in ("count", "each", "path"):
        return Reference(root, f"{root}.{names[0]}" if names else root)
    if root == "data":
        if len(names) < 2:
            raise ExpressionError("data references need a type and a name", source)
        return Reference("data", f"data.{names[0]}.{names[1]}", names[2] if len(names) > 2 else None)
    if not names:
        # A bare identifier: only valid inside templatefile() templates
        return None
    return Reference("resource", f"{root}.{names[0]}", names[1] if len(names) > 1 else None)


# ============================================================================
# EVALUATION
# ============================================================================


def evaluate_value(value: Any, ctx: EvalContext) -> Any:
    """Evaluate every string inside a declared value."""
    if isinstance(value, str):
        return interpolate(value, ctx)
    if isinstance(value, dict):
        return {key: evaluate_value(item, ctx) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [evaluate_value(item, ctx) for item in value]
    return value


def interpolate(text: str, ctx: EvalContext) -> Any:
    if not has_interpolation(text):
        return text
    return evaluate(parse_template(text), ctx)


def evaluate(node: Any, ctx: EvalContext) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, TemplateExpr):
        return _eval_template(node, ctx)
    if isinstance(node, ListExpr):
        return [evaluate(item, ctx) for item in node.items]
    if isinstance(node, ObjectExpr):
        out = {}
        for key_node, value_node in node.items:
            key = evaluate(key_node, ctx)
            if key is UNKNOWN:
                return UNKNOWN
            out[to_string(key)] = evaluate(value_node, ctx)
        return out
    if isinstance(node, Traversal):
        return _eval_traversal(node, ctx)
    if isinstance(node, FunctionCall):
        return _eval_call(node, ctx)
    if isinstance(node, Unary):
        return _eval_unary(node, ctx)
    if isinstance(node, Binary):
        return _eval_binary(node, ctx)
    if isinstance(node, Conditional):
        condition = evaluate(node.condition, ctx)
        if condition is UNKNOWN:
            return UNKNOWN
        if _as_bool(condition):
            return evaluate(node.true_value, ctx)
        return evaluate(node.false_value, ctx)
    raise ExpressionError(f"cannot evaluate {type(node).__name__}")


def _eval_template(node: TemplateExpr, ctx: EvalContext) -> Any:
    if node.is_single_interpolation:
        return evaluate(node.parts[0], ctx)
    pieces = []
    for part in node.parts:
        if isinstance(part, str):
            pieces.append(part)
            continue
        value = evaluate(part, ctx)
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(value, (list, dict)):
            raise ExpressionError(
                f"cannot interpolate a {type(value).__name__} into a string", ctx.referrer
            )
        pieces.append(to_string(value))
    return "".join(pieces)


def _eval_traversal(node: Traversal, ctx: EvalContext) -> Any:
    if not isinstance(node.root, str):
        return _apply_ops(evaluate(node.root, ctx), node.ops, ctx)

    root = node.root
    ops = list(node.ops)

    if ctx.template_vars is not None:
        if root not in ctx.template_vars:
            raise ExpressionError(f"template variable {root!r} was not passed to templatefile()")
        return _apply_ops(ctx.template_vars[root], ops, ctx)

    def take_name(what: str) -> str:
        if not ops or not isinstance(ops[0], GetAttr):
            raise ExpressionError(f"{what} must be followed by an attribute name", ctx.referrer)
        return ops.pop(0).name

    if root == "var":
        name = take_name("var")
        if name not in ctx.variables:
            raise UnresolvedReferenceError(f"var.{name}", ctx.referrer)
        return _apply_ops(ctx.variables[name], ops, ctx)
    if root == "local":
        name = take_name("local")
        resolver = ctx.local_resolver or _no_resolver("local")
        return _apply_ops(resolver(name), ops, ctx)
    if root == "count":
        name = take_name("count")
        if name != "index":
            raise ExpressionError(f"unsupported attribute count.{name}", ctx.referrer)
        if ctx.count_index is None:
            raise ExpressionError("count.index used outside a resource with count", ctx.referrer)
        return _apply_ops(ctx.count_index, ops, ctx)
    if root == "each":
        name = take_name("each")
        if not ctx.has_each:
            raise ExpressionError("each used outside a resource with for_each", ctx.referrer)
        if name == "key":
            return _apply_ops(ctx.each_key, ops, ctx)
        if name == "value":
            return _apply_ops(ctx.each_value, ops, ctx)
        raise ExpressionError(f"unsupported attribute each.{name}", ctx.referrer)
    if root == "path":
        name = take_name("path")
        if name == "module":
            return ctx.module_path
        if name in ("root", "cwd"):
            return ctx.root_path
        raise ExpressionError(f"unsupported attribute path.{name}", ctx.referrer)
    if root == "data":
        data_type = take_name("data")
        data_name = take_name(f"data.{data_type}")
        resolver = ctx.data_resolver or _no_resolver("data")
        return _apply_ops(resolver(data_type, data_name), ops, ctx)

    name = take_name(root)
    resolver = ctx.resource_resolver or _no_resolver("resource")
    return _apply_ops(resolver(root, name), ops, ctx)


def _apply_ops(value: Any, ops: list | tuple, ctx: EvalContext) -> Any:
    for position, op in enumerate(ops):
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(op, Splat):
            rest = ops[position + 1:]
            if value is None:
                return []
            if isinstance(value, dict) and not isinstance(value, PendingAttributes):
                items = list(value.values())
            elif isinstance(value, (list, tuple)):
                items = list(value)
            else:
                items = [value]
            return [_apply_ops(item, rest, ctx) for item in items]
        if isinstance(op, GetAttr):
            value = _get_attr(value, op.name, ctx)
        elif isinstance(op, Index):
            value = _get_index(value, evaluate(op.key, ctx), ctx)
    return value


def _get_attr(value: Any, name: str, ctx: EvalContext) -> Any:
    if isinstance(value, PendingAttributes):
        return value.lookup(name)
    if isinstance(value, Symbol):
        return Symbol(f"{value}.{name}")
    if isinstance(value, dict):
        if name not in value:
            raise ExpressionError(f"unsupported attribute {name!r}", ctx.referrer)
        return value[name]
    if isinstance(value, list):
        raise ExpressionError(
            f"cannot read attribute {name!r} of a list; use an index or [*]", ctx.referrer
        )
    raise ExpressionError(
        f"cannot read attribute {name!r} of a {type(value).__name__}", ctx.referrer
    )


def _get_index(value: Any, key: Any, ctx: EvalContext) -> Any:
    if key is UNKNOWN:
        return UNKNOWN
    if isinstance(value, Symbol):
        return Symbol(f"{value}[{key}]")
    if isinstance(value, (list, tuple)):
        index = int(to_number(key))
        if index < 0 or index >= len(value):
            raise ExpressionError(
                f"index {index} out of range for list of length {len(value)}", ctx.referrer
            )
        return value[index]
    if isinstance(value, PendingAttributes):
        return value.lookup(to_string(key))
    if isinstance(value, dict):
        key = to_string(key)
        if key not in value:
            raise ExpressionError(f"key {key!r} not found", ctx.referrer)
        return value[key]
    raise ExpressionError(f"cannot index a {type(value).__name__}", ctx.referrer)


def _eval_call(node: FunctionCall, ctx: EvalContext) -> Any:
    args = [evaluate(arg, ctx) for arg in node.args]
    if node.name in SPECIAL_FUNCTIONS:
        if len(args) != 2:
            raise ExpressionError("templatefile() takes 2 arguments", ctx.referrer)
        path, template_vars = args
        if path is UNKNOWN or contains_unknown(template_vars):
            return UNKNOWN
        if not isinstance(template_vars, dict):
            raise ExpressionError("templatefile() vars must be a map", ctx.referrer)
        return render_template(path, template_vars, ctx)
    try:
        return call_function(node.name, args)
    except ExpressionError as e:
        if e.expression is None and ctx.referrer != "<expression>":
            raise ExpressionError(str(e), ctx.referrer) from None
        raise


def _eval_unary(node: Unary, ctx: EvalContext) -> Any:
    operand = evaluate(node.operand, ctx)
    if operand is UNKNOWN:
        return UNKNOWN
    if node.op == "-":
        return -to_number(operand)
    return not _as_bool(operand)


def _eval_binary(node: Binary, ctx: EvalContext) -> Any:
    left = evaluate(node.left, ctx)
    right = evaluate(node.right, ctx)
    if left is UNKNOWN or right is UNKNOWN:
        return UNKNOWN
    op = node.op
    if op == "==":
        return _normalize(left) == _normalize(right)
    if op == "!=":
        return _normalize(left) != _normalize(right)
    if op == "&&":
        return _as_bool(left) and _as_bool(right)
    if op == "||":
        return _as_bool(left) or _as_bool(right)

    a, b = to_number(left), to_number(right)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        if b == 0:
            raise ExpressionError("division by zero", ctx.referrer)
        if isinstance(a, int) and isinstance(b, int) and a % b == 0:
            return a // b
        return a / b
    if op == "%":
        if b == 0:
            raise ExpressionError("modulo by zero", ctx.referrer)
        return a % b
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    raise ExpressionError(f"unsupported operator {op}", ctx.referrer)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value in ("true", "false"):
        return value == "true"
    raise ExpressionError(f"expected a bool, got {value!r}")


def _normalize(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    return value


# ============================================================================
# TEMPLATES
# ============================================================================


def render_template(path: str, template_vars: dict[str, Any], ctx: EvalContext | None = None) -> Any:
    """Render a template file; bare identifiers resolve against ``template_vars``."""
    ctx = ctx or EvalContext()
    template_path = Path(path)
    if not template_path.is_absolute():
        template_path = Path(ctx.module_path) / template_path
    try:
        text = template_path.read_text(encoding="utf-8")
    except OSError as e:
        raise ExpressionError(f"templatefile(): cannot read {template_path}: {e}") from None

    template_ctx = EvalContext(
        module_path=ctx.module_path,
        root_path=ctx.root_path,
        template_vars=template_vars,
        referrer=str(template_path),
    )
    result = evaluate(parse_template(text), template_ctx)
    if result is UNKNOWN:
        return UNKNOWN
    return result if isinstance(result, str) else to_string(result)
