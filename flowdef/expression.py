"""A small expression language used by links, loops and mappings."""

from __future__ import annotations

import operator
import re
from collections.abc import Callable
from typing import Any

from flowdef.resolve import ResolveError, get_data_resolver


class ExpressionError(Exception):
    """Raised when an expression cannot be compiled or evaluated."""


class LinkExprError(Exception):
    """Raised when evaluating a link expression fails."""

    def __init__(self, msg: str) -> None:
        super().__init__(msg)
        self.msg = msg

    def __str__(self) -> str:
        return self.msg


_LEXEME_PATTERN = re.compile(
    r"""\s*(?:
        (?P<num>\d+\.\d*|\d+)
      | (?P<str>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<ref>\$(?:\.|[A-Za-z_])[A-Za-z0-9_.\[\]'"]*)
      | (?P<op>==|!=|<=|>=|&&|\|\||[<>!+\-*/%()])
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    )""",
    re.VERBOSE,
)

Node = Callable[[Any], Any]

_BINARY = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": operator.mod,
}

_LEVELS = [("==", "!="), ("<", "<=", ">", ">="), ("+", "-"), ("*", "/", "%")]


def _tokenize(text: str) -> list[tuple[str, str]]:
    lexemes = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _LEXEME_PATTERN.match(text, pos)
        if match is None or match.end() == pos:
            raise ExpressionError(f"unexpected character at {pos} in '{text}'")
        lexemes.append((match.lastgroup, match.group(match.lastgroup)))
        pos = match.end()
    return lexemes


class _Parser:
    def __init__(self, text: str, resolver: Any) -> None:
        self.tokens = _tokenize(text)
        self.pos = 0
        self.resolver = resolver

    def peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def accept(self, *ops: str) -> str | None:
        tok = self.peek()
        if tok and tok[0] == "op" and tok[1] in ops:
            self.pos += 1
            return tok[1]
        return None

    def parse(self) -> Node:
        if not self.tokens:
            raise ExpressionError("empty expression")
        node = self.parse_or()
        if self.peek() is not None:
            raise ExpressionError(f"unexpected token '{self.peek()[1]}'")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||"):
            left, right = node, self.parse_and()
            node = lambda s, a=left, b=right: bool(a(s)) or bool(b(s))
        return node

    def parse_and(self) -> Node:
        node = self.parse_binary(0)
        while self.accept("&&"):
            left, right = node, self.parse_binary(0)
            node = lambda s, a=left, b=right: bool(a(s)) and bool(b(s))
        return node

    def parse_binary(self, level: int) -> Node:
        if level == len(_LEVELS):
            return self.parse_unary()
        node = self.parse_binary(level + 1)
        while (op := self.accept(*_LEVELS[level])) is not None:
            left, right, fn = node, self.parse_binary(level + 1), _BINARY[op]
            node = lambda s, a=left, b=right, f=fn: f(a(s), b(s))
        return node

    def parse_unary(self) -> Node:
        if self.accept("!"):
            inner = self.parse_unary()
            return lambda s: not inner(s)
        if self.accept("-"):
            inner = self.parse_unary()
            return lambda s: -inner(s)
        return self.parse_primary()

    def parse_primary(self) -> Node:
        tok = self.peek()
        if tok is None:
            raise ExpressionError("unexpected end of expression")
        kind, text = tok
        self.pos += 1
        if kind == "num":
            value: Any = float(text) if "." in text else int(text)
            return lambda s: value
        if kind == "str":
            literal = bytes(text[1:-1], "utf-8").decode("unicode_escape")
            return lambda s: literal
        if kind == "ref":
            resolver = self.resolver
            return lambda s: resolver.resolve(text, s)
        if kind == "ident":
            constants = {"true": True, "false": False, "nil": None, "null": None}
            if text not in constants:
                raise ExpressionError(f"unknown identifier '{text}'")
            constant = constants[text]
            return lambda s: constant
        if text == "(":
            node = self.parse_or()
            if not self.accept(")"):
                raise ExpressionError("missing ')'")
            return node
        raise ExpressionError(f"unexpected token '{text}'")


class Expr:
    """A compiled expression."""

    def __init__(self, text: str, node: Node) -> None:
        self.text = text
        self._node = node

    def eval(self, scope):
        try:
            return self._node(scope)
        except ResolveError:
            raise
        except (TypeError, ZeroDivisionError) as exc:
            raise ExpressionError(f"failed to evaluate '{self.text}': {exc}") from exc

    def __repr__(self) -> str:
        return f"Expr({self.text!r})"


class ExpressionFactory:
    """Compiles expression text into :class:`Expr` objects."""

    def __init__(self, resolver=None) -> None:
        self.resolver = resolver if resolver is not None else get_data_resolver()

    def new_expr(self, text):
        text = text.strip()
        if text.startswith("="):
            text = text[1:]
        return Expr(text, _Parser(text, self.resolver).parse())


_factories: dict[str, ExpressionFactory] = {}


def set_expr_factory(factory):
    """Install the shared expression factory; ``None`` restores the default."""
    if factory is None:
        _factories.pop("expr", None)
    else:
        _factories["expr"] = factory


def get_expr_factory():
    """Return the shared expression factory, creating a default one if needed."""
    return _factories.setdefault("expr", ExpressionFactory())