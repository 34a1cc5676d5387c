"""Restricted path, template and predicate evaluation over a run context.

Only dotted-path lookups, literals, comparisons and boolean combinators are
understood; there is no general evaluation of user code.
"""

from __future__ import annotations

import json
import re
from typing import Any, Mapping

from .errors import ExpressionError

_TEMPLATE_RE = re.compile(r"\{\{([^}]+)\}\}")

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>'[^']*'|"[^"]*")
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[<>!()])
      | (?P<name>[A-Za-z_][\w\-]*(?:\.[\w\-]+)*)
    )""",
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None, "none": None}
_COMPARATORS = {"==", "===", "!=", "!==", ">", "<", ">=", "<="}


def resolve_path(path: str, context: Mapping[str, Any]) -> Any:
    """Walk a dotted path through nested mappings and sequences."""
    value: Any = context
    for part in path.strip().split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        elif isinstance(value, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            value = value[index] if -len(value) <= index < len(value) else None
        else:
            return None
    return value


def render_template(template: str, context: Mapping[str, Any]) -> str:
    def _substitute(match: re.Match[str]) -> str:
        value = resolve_path(match.group(1), context)
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, ensure_ascii=False)
        return str(value)

    return _TEMPLATE_RE.sub(_substitute, template)


def _tokenize(expression: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None or match.end() == pos:
            raise ExpressionError(f"Unexpected input at position {pos} in expression: {expression!r}")
        kind = match.lastgroup
        assert kind is not None
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, expression: str, context: Mapping[str, Any]) -> None:
        self.expression = expression
        self.context = context
        self.tokens = _tokenize(expression)
        self.pos = 0

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> tuple[str, str]:
        token = self._peek()
        if token is None:
            raise ExpressionError(f"Unexpected end of expression: {self.expression!r}")
        self.pos += 1
        return token

    def _accept(self, *values: str) -> bool:
        token = self._peek()
        if token is not None and token[0] in ("op", "name") and token[1] in values:
            self.pos += 1
            return True
        return False

    def parse(self) -> bool:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        value = self._or()
        if self._peek() is not None:
            raise ExpressionError(f"Unexpected token {self._peek()[1]!r} in expression: {self.expression!r}")
        return bool(value)

    def _or(self) -> Any:
        value = self._and()
        while self._accept("or", "||"):
            right = self._and()
            value = bool(value) or bool(right)
        return value

    def _and(self) -> Any:
        value = self._not()
        while self._accept("and", "&&"):
            right = self._not()
            value = bool(value) and bool(right)
        return value

    def _not(self) -> Any:
        if self._accept("not", "!"):
            return not bool(self._not())
        return self._comparison()

    def _comparison(self) -> Any:
        left = self._operand()
        token = self._peek()
        if token is not None and token[0] == "op" and token[1] in _COMPARATORS:
            self.pos += 1
            return _compare(left, token[1], self._operand())
        if self._accept("in"):
            container = self._operand()
            try:
                return left in container
            except TypeError:
                return False
        return left

    def _operand(self) -> Any:
        kind, text = self._take()
        if kind == "string":
            return text[1:-1]
        if kind == "number":
            return float(text) if "." in text else int(text)
        if kind == "op" and text == "(":
            value = self._or()
            if not self._accept(")"):
                raise ExpressionError(f"Missing ')' in expression: {self.expression!r}")
            return value
        if kind == "name":
            lowered = text.lower()
            if lowered in _KEYWORDS:
                return _KEYWORDS[lowered]
            if text.endswith(".includes") and self._accept("("):
                kind, needle = self._take()
                if kind != "string" or not self._accept(")"):
                    raise ExpressionError(f"includes() takes one quoted string: {self.expression!r}")
                haystack = resolve_path(text[: -len(".includes")], self.context)
                return isinstance(haystack, (str, list)) and needle[1:-1] in haystack
            return resolve_path(text, self.context)
        raise ExpressionError(f"Unexpected token {text!r} in expression: {self.expression!r}")


def _compare(left: Any, op: str, right: Any) -> bool:
    if op in ("==", "==="):
        return left == right
    if op in ("!=", "!=="):
        return left != right
    try:
        lhs, rhs = float(left), float(right)
    except (TypeError, ValueError):
        return False
    if op == ">":
        return lhs > rhs
    if op == "<":
        return lhs < rhs
    if op == ">=":
        return lhs >= rhs
    return lhs <= rhs


def evaluate(expression: str, context: Mapping[str, Any]) -> bool:
    """Evaluate a restricted boolean expression against ``context``.

    Raises :class:`ExpressionError` when the expression cannot be parsed.
    """
    if not isinstance(expression, str):
        raise ExpressionError("condition.expression must be a string")
    return _Parser(expression, context).parse()
