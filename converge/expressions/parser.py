"""Tokenizer and recursive-descent parser for the interpolation language.

Strings in a declaration are templates: literal text with ``${ ... }``
interpolations. This module turns a template into a small AST that the
evaluator walks and that the graph builder scans for references without
evaluating anything.

Grammar (lowest to highest precedence)::

    expr        := or ( "?" expr ":" expr )?
    or          := and ( "||" and )*
    and         := equality ( "&&" equality )*
    equality    := comparison ( ("==" | "!=") comparison )*
    comparison  := additive ( ("<" | "<=" | ">" | ">=") additive )*
    additive    := term ( ("+" | "-") term )*
    term        := unary ( ("*" | "/" | "%") unary )*
    unary       := ("-" | "!") unary | postfix
    postfix     := primary ( "." IDENT | "." NUMBER | ".*" | "[*]" | "[" expr "]" )*
    primary     := NUMBER | STRING | IDENT | IDENT "(" args ")" | "(" expr ")"
                 | "[" items "]" | "{" key ("=" | ":") expr ... "}"
"""

from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Union

from converge.errors import ExpressionError

# ============================================================================
# AST
# ============================================================================


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class TemplateExpr:
    """Literal text interleaved with interpolated expressions."""

    parts: tuple

    @property
    def is_single_interpolation(self) -> bool:
        return len(self.parts) == 1 and not isinstance(self.parts[0], str)


@dataclass(frozen=True)
class ListExpr:
    items: tuple


@dataclass(frozen=True)
class ObjectExpr:
    items: tuple  # ((key_node, value_node), ...)


@dataclass(frozen=True)
class GetAttr:
    name: str


@dataclass(frozen=True)
class Index:
    key: "Node"


@dataclass(frozen=True)
class Splat:
    pass


@dataclass(frozen=True)
class Traversal:
    """A root followed by attribute/index/splat steps.

    ``root`` is an identifier (``var``, ``aws_subnet``, ``count``...) for
    references, or an arbitrary node for things like ``func(x)[0]``.
    """

    root: Union[str, "Node"]
    ops: tuple = ()

    @property
    def is_reference(self) -> bool:
        return isinstance(self.root, str)

    def attr_names(self) -> list[str]:
        """Leading attribute names after the root, up to the first non-attribute step."""
        names = []
        for op in self.ops:
            if not isinstance(op, GetAttr):
                break
            names.append(op.name)
        return names


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: tuple


@dataclass(frozen=True)
class Unary:
    op: str
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Conditional:
    condition: "Node"
    true_value: "Node"
    false_value: "Node"


Node = Union[
    Literal, TemplateExpr, ListExpr, ObjectExpr, Traversal, FunctionCall, Unary, Binary, Conditional
]


# ============================================================================
# TOKENIZER
# ============================================================================


@dataclass
class Token:
    kind: str  # NUMBER, STRING, IDENT, OP, EOF
    value: Any
    pos: int


_TWO_CHAR_OPS = {"==", "!=", "<=", ">=", "&&", "||"}
_ONE_CHAR_OPS = set("+-*/%!<>?:.,[](){}=")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", '"': '"', "\\": "\\"}


class _Tokenizer:
    """Tokenizes one interpolation body, stopping at its closing brace."""

    def __init__(self, text: str, pos: int):
        self.text = text
        self.pos = pos
        self.tokens: list[Token] = []

    def run(self, until_close: bool) -> int:
        depth = 0
        text = self.text
        while True:
            self._skip_space()
            if self.pos >= len(text):
                if until_close:
                    raise ExpressionError("unterminated interpolation", text)
                self.tokens.append(Token("EOF", None, self.pos))
                return self.pos

            ch = text[self.pos]
            if ch == "}" and depth == 0 and until_close:
                self.tokens.append(Token("EOF", None, self.pos))
                return self.pos + 1

            if ch.isdigit():
                self._read_number()
            elif ch.isalpha() or ch == "_":
                self._read_ident()
            elif ch == '"':
                self._read_string()
            else:
                two = text[self.pos:self.pos + 2]
                if two in _TWO_CHAR_OPS:
                    self.tokens.append(Token("OP", two, self.pos))
                    self.pos += 2
                    continue
                if ch not in _ONE_CHAR_OPS:
                    raise ExpressionError(f"unexpected character {ch!r} at {self.pos}", text)
                if ch == "{":
                    depth += 1
                elif ch == "}":
                    depth -= 1
                self.tokens.append(Token("OP", ch, self.pos))
                self.pos += 1

    def _skip_space(self):
        text = self.text
        while self.pos < len(text):
            if text[self.pos].isspace():
                self.pos += 1
            elif text.startswith("#", self.pos) or text.startswith("//", self.pos):
                while self.pos < len(text) and text[self.pos] != "\n":
                    self.pos += 1
            else:
                break

    def _read_number(self):
        text = self.text
        start = self.pos
        while self.pos < len(text) and text[self.pos].isdigit():
            self.pos += 1
        is_float = False
        # "1.5" is a float, but "list.0.id" style legacy index must stay an int
        if (
            self.pos + 1 < len(text)
            and text[self.pos] == "."
            and text[self.pos + 1].isdigit()
            and not (self.tokens and self.tokens[-1].value == ".")
        ):
            is_float = True
            self.pos += 1
            while self.pos < len(text) and text[self.pos].isdigit():
                self.pos += 1
        if self.pos < len(text) and text[self.pos] in "eE":
            is_float = True
            self.pos += 1
            if self.pos < len(text) and text[self.pos] in "+-":
                self.pos += 1
            while self.pos < len(text) and text[self.pos].isdigit():
                self.pos += 1
        raw = text[start:self.pos]
        value = float(raw) if is_float else int(raw)
        self.tokens.append(Token("NUMBER", value, start))

    def _read_ident(self):
        text = self.text
        start = self.pos
        self.pos += 1
        while self.pos < len(text) and (text[self.pos].isalnum() or text[self.pos] in "_-"):
            self.pos += 1
        self.tokens.append(Token("IDENT", text[start:self.pos], start))

    def _read_string(self):
        text = self.text
        start = self.pos
        self.pos += 1
        while self.pos < len(text):
            ch = text[self.pos]
            if ch == "\\":
                self.pos += 2
            elif text.startswith("$${", self.pos):
                self.pos += 3
            elif text.startswith("${", self.pos):
                inner = _Tokenizer(text, self.pos + 2)
                self.pos = inner.run(until_close=True)
            elif ch == '"':
                raw = text[start + 1:self.pos]
                self.pos += 1
                self.tokens.append(Token("STRING", raw, start))
                return
            else:
                self.pos += 1
        raise ExpressionError("unterminated string literal", text)


def _unescape(raw: str) -> str:
    out = []
    i = 0
    while i < len(raw):
        ch = raw[i]
        if ch == "\\" and i + 1 < len(raw):
            nxt = raw[i + 1]
            if nxt == "u" and i + 5 < len(raw):
                out.append(chr(int(raw[i + 2:i + 6], 16)))
                i += 6
                continue
            out.append(_ESCAPES.get(nxt, "\\" + nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


# ============================================================================
# PARSER
# ============================================================================


class _Parser:
    def __init__(self, tokens: list[Token], source: str):
        self.tokens = tokens
        self.index = 0
        self.source = source

    # -- token helpers -----------------------------------------------------

    def peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def at_op(self, *ops: str) -> bool:
        token = self.peek()
        return token.kind == "OP" and token.value in ops

    def expect_op(self, op: str) -> Token:
        token = self.peek()
        if token.kind != "OP" or token.value != op:
            found = token.value if token.kind != "EOF" else "end of expression"
            raise ExpressionError(f"expected {op!r} but found {found!r}", self.source)
        return self.advance()

    # -- grammar -------------------------------------------------------------

    def parse(self) -> Node:
        node = self.expression()
        if self.peek().kind != "EOF":
            raise ExpressionError(f"unexpected token {self.peek().value!r}", self.source)
        return node

    def expression(self) -> Node:
        condition = self.binary(0)
        if self.at_op("?"):
            self.advance()
            true_value = self.expression()
            self.expect_op(":")
            false_value = self.expression()
            return Conditional(condition, true_value, false_value)
        return condition

    _LEVELS = (
        ("||",),
        ("&&",),
        ("==", "!="),
        ("<", "<=", ">", ">="),
        ("+", "-"),
        ("*", "/", "%"),
    )

    def binary(self, level: int) -> Node:
        if level == len(self._LEVELS):
            return self.unary()
        left = self.binary(level + 1)
        while self.at_op(*self._LEVELS[level]):
            op = self.advance().value
            right = self.binary(level + 1)
            left = Binary(op, left, right)
        return left

    def unary(self) -> Node:
        if self.at_op("-", "!"):
            op = self.advance().value
            return Unary(op, self.unary())
        return self.postfix()

    def postfix(self) -> Node:
        root, ops = self.primary()
        ops = list(ops)
        while True:
            if self.at_op("."):
                self.advance()
                token = self.peek()
                if token.kind == "IDENT":
                    ops.append(GetAttr(self.advance().value))
                elif token.kind == "NUMBER" and isinstance(token.value, int):
                    ops.append(Index(Literal(self.advance().value)))
                elif token.kind == "OP" and token.value == "*":
                    self.advance()
                    ops.append(Splat())
                else:
                    raise ExpressionError("expected attribute name after '.'", self.source)
            elif self.at_op("["):
                self.advance()
                if self.at_op("*") and self.peek(1).kind == "OP" and self.peek(1).value == "]":
                    self.advance()
                    ops.append(Splat())
                else:
                    ops.append(Index(self.expression()))
                self.expect_op("]")
            else:
                break
        if isinstance(root, str) or ops:
            return Traversal(root, tuple(ops))
        return root

    def primary(self) -> tuple[Any, tuple]:
        token = self.peek()
        if token.kind == "NUMBER":
            self.advance()
            return Literal(token.value), ()
        if token.kind == "STRING":
            self.advance()
            return _parse_template_cached(token.value, True), ()
        if token.kind == "IDENT":
            self.advance()
            if token.value == "true":
                return Literal(True), ()
            if token.value == "false":
                return Literal(False), ()
            if token.value == "null":
                return Literal(None), ()
            if self.at_op("("):
                return self.call(token.value), ()
            return token.value, ()
        if self.at_op("("):
            self.advance()
            node = self.expression()
            self.expect_op(")")
            return node, ()
        if self.at_op("["):
            return self.list_literal(), ()
        if self.at_op("{"):
            return self.object_literal(), ()
        found = token.value if token.kind != "EOF" else "end of expression"
        raise ExpressionError(f"unexpected {found!r}", self.source)

    def call(self, name: str) -> FunctionCall:
        self.expect_op("(")
        args = []
        while not self.at_op(")"):
            args.append(self.expression())
            if not self.at_op(","):
                break
            self.advance()
        self.expect_op(")")
        return FunctionCall(name, tuple(args))

    def list_literal(self) -> ListExpr:
        self.expect_op("[")
        items = []
        while not self.at_op("]"):
            items.append(self.expression())
            if not self.at_op(","):
                break
            self.advance()
        self.expect_op("]")
        return ListExpr(tuple(items))

    def object_literal(self) -> ObjectExpr:
        self.expect_op("{")
        items = []
        while not self.at_op("}"):
            token = self.peek()
            if token.kind == "IDENT" and self.peek(1).kind == "OP" and self.peek(1).value in ("=", ":"):
                self.advance()
                key: Node = Literal(token.value)
            else:
                key = self.expression()
            if not self.at_op("=", ":"):
                raise ExpressionError("expected '=' or ':' in object literal", self.source)
            self.advance()
            items.append((key, self.expression()))
            if self.at_op(","):
                self.advance()
        self.expect_op("}")
        return ObjectExpr(tuple(items))


# ============================================================================
# PUBLIC API
# ============================================================================


def parse_expression(text: str) -> Node:
    """Parse a bare expression such as ``var.az_count + 1``."""
    tokenizer = _Tokenizer(text, 0)
    tokenizer.run(until_close=False)
    return _Parser(tokenizer.tokens, text).parse()


def parse_template(text: str) -> TemplateExpr:
    """Parse literal text containing ``${ ... }`` interpolations."""
    return _parse_template_cached(text, False)


@lru_cache(maxsize=4096)
def _parse_template_cached(text: str, escaped: bool) -> TemplateExpr:
    parts: list = []
    literal: list[str] = []
    pos = 0
    while pos < len(text):
        if text.startswith("$${", pos):
            literal.append("${")
            pos += 3
        elif text.startswith("%%{", pos):
            literal.append("%{")
            pos += 3
        elif text.startswith("%{", pos):
            raise ExpressionError("template directives (%{ ... }) are not supported", text)
        elif text.startswith("${", pos):
            if literal:
                parts.append(_finish_literal(literal, escaped))
                literal = []
            tokenizer = _Tokenizer(text, pos + 2)
            pos = tokenizer.run(until_close=True)
            parts.append(_Parser(tokenizer.tokens, text).parse())
        else:
            literal.append(text[pos])
            pos += 1
    if literal:
        parts.append(_finish_literal(literal, escaped))
    return TemplateExpr(tuple(parts))


def _finish_literal(chars: list[str], escaped: bool) -> str:
    joined = "".join(chars)
    return _unescape(joined) if escaped else joined


def has_interpolation(text: str) -> bool:
    """Cheap check used to skip parsing plain strings."""
    return "${" in text


def iter_nodes(node: Any) -> Iterator[Any]:
    """Yield every node of a parse tree, depth first."""
    yield node
    if isinstance(node, TemplateExpr):
        for part in node.parts:
            if not isinstance(part, str):
                yield from iter_nodes(part)
    elif isinstance(node, ListExpr):
        for item in node.items:
            yield from iter_nodes(item)
    elif isinstance(node, ObjectExpr):
        for key, value in node.items:
            yield from iter_nodes(key)
            yield from iter_nodes(value)
    elif isinstance(node, Traversal):
        if not isinstance(node.root, str):
            yield from iter_nodes(node.root)
        for op in node.ops:
            if isinstance(op, Index):
                yield from iter_nodes(op.key)
    elif isinstance(node, FunctionCall):
        for arg in node.args:
            yield from iter_nodes(arg)
    elif isinstance(node, Unary):
        yield from iter_nodes(node.operand)
    elif isinstance(node, Binary):
        yield from iter_nodes(node.left)
        yield from iter_nodes(node.right)
    elif isinstance(node, Conditional):
        yield from iter_nodes(node.condition)
        yield from iter_nodes(node.true_value)
        yield from iter_nodes(node.false_value)
