"""
Analysis condition expressions.

Success, failure and inconclusive conditions are boolean expressions over
metric names, e.g. ``error-rate <= 0.01 && latency-p99 <= 1.0``. Supported
syntax: comparisons (``< <= > >= == !=``) between metric names and numbers,
``&&``/``and``, ``||``/``or``, ``!``/``not``, parentheses and the literals
``true``/``false``. A comparison that references a metric without data is
false.
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from .exceptions import ConditionSyntaxError

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)
  | (?P<op><=|>=|==|!=|<|>)
  | (?P<and>&&)
  | (?P<or>\|\|)
  | (?P<not>!)
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<ident>[A-Za-z_][A-Za-z0-9_.\-]*)
    """,
    re.VERBOSE,
)

_COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_KEYWORDS = {"and": "and", "or": "or", "not": "not"}

Values = Mapping[str, float | None]
Evaluator = Callable[[Values], bool]


@dataclass(frozen=True)
class Condition:
    """A parsed condition expression."""

    source: str
    metric_names: frozenset[str]
    _evaluate: Evaluator

    def evaluate(self, values: Values) -> bool:
        return self._evaluate(values)


def _tokenize(source: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    position = 0
    while position < len(source):
        match = _TOKEN_RE.match(source, position)
        if match is None:
            raise ConditionSyntaxError(
                f"Unexpected character {source[position]!r} at {position} in condition {source!r}"
            )
        kind = match.lastgroup or ""
        text = match.group()
        position = match.end()
        if kind == "ws":
            continue
        if kind == "ident":
            lowered = text.lower()
            if lowered in _KEYWORDS:
                kind = _KEYWORDS[lowered]
            elif lowered in ("true", "false"):
                kind = "bool"
        tokens.append((kind, text))
    return tokens


class _Parser:
    """Recursive-descent parser producing closures."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.position = 0
        self.names: set[str] = set()

    def parse(self) -> Evaluator:
        evaluator = self._or()
        if self.position != len(self.tokens):
            kind, text = self.tokens[self.position]
            raise ConditionSyntaxError(f"Unexpected token {text!r} in condition {self.source!r}")
        return evaluator

    def _peek(self) -> str | None:
        if self.position < len(self.tokens):
            return self.tokens[self.position][0]
        return None

    def _take(self, *kinds: str) -> tuple[str, str]:
        if self.position >= len(self.tokens):
            raise ConditionSyntaxError(f"Unexpected end of condition {self.source!r}")
        token = self.tokens[self.position]
        if kinds and token[0] not in kinds:
            raise ConditionSyntaxError(
                f"Expected {' or '.join(kinds)} but found {token[1]!r} in condition {self.source!r}"
            )
        self.position += 1
        return token

    def _or(self) -> Evaluator:
        parts = [self._and()]
        while self._peek() == "or":
            self._take()
            parts.append(self._and())
        if len(parts) == 1:
            return parts[0]
        return lambda values: any(part(values) for part in parts)

    def _and(self) -> Evaluator:
        parts = [self._not()]
        while self._peek() == "and":
            self._take()
            parts.append(self._not())
        if len(parts) == 1:
            return parts[0]
        return lambda values: all(part(values) for part in parts)

    def _not(self) -> Evaluator:
        if self._peek() == "not":
            self._take()
            inner = self._not()
            return lambda values: not inner(values)
        return self._primary()

    def _primary(self) -> Evaluator:
        kind = self._peek()
        if kind == "lparen":
            self._take()
            inner = self._or()
            self._take("rparen")
            return inner
        if kind == "bool":
            _, text = self._take()
            literal = text.lower() == "true"
            return lambda values: literal
        left = self._operand()
        _, op = self._take("op")
        right = self._operand()
        compare = _COMPARATORS[op]

        def evaluate(values: Values) -> bool:
            lhs, rhs = left(values), right(values)
            if lhs is None or rhs is None:
                return False
            return compare(lhs, rhs)

        return evaluate

    def _operand(self) -> Callable[[Values], float | None]:
        kind, text = self._take("number", "ident")
        if kind == "number":
            number = float(text)
            return lambda values: number
        self.names.add(text)
        return lambda values: values.get(text)


def parse_condition(source: str | None) -> Condition | None:
    """Parse ``source``; blank expressions yield ``None``."""
    if source is None or not source.strip():
        return None
    parser = _Parser(source)
    evaluator = parser.parse()
    return Condition(source=source, metric_names=frozenset(parser.names), _evaluate=evaluator)
