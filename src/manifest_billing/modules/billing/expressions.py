"""
Arithmetic formulas typed into rate and weight cells, e.g. ``"12+15+30"``.

Only numbers, ``+ - * /`` and parentheses are understood; everything else is
dropped before tokenizing. There is no unary minus: a ``-`` where a number is
expected counts as ``0``. Malformed input evaluates to ``0`` instead of raising.
"""

from __future__ import annotations

import math
import re

_DISALLOWED_RE = re.compile(r"[^0-9.+\-*/()]")
_TOKEN_RE = re.compile(r"\d+(?:\.\d+)?|[-+*/()]")


def tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(_DISALLOWED_RE.sub("", text or ""))


class _Parser:
    def __init__(self, tokens: list[str]):
        self.tokens = tokens
        self.pos = 0

    def _peek(self) -> str | None:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def expression(self) -> float:
        lhs = self.term()
        while self._peek() in {"+", "-"}:
            op = self.tokens[self.pos]
            self.pos += 1
            rhs = self.term()
            lhs = lhs + rhs if op == "+" else lhs - rhs
        return lhs

    def term(self) -> float:
        lhs = self.factor()
        while self._peek() in {"*", "/"}:
            op = self.tokens[self.pos]
            self.pos += 1
            rhs = self.factor()
            if op == "*":
                lhs *= rhs
            elif rhs == 0:
                lhs = 0.0
            else:
                lhs /= rhs
        return lhs

    def factor(self) -> float:
        token = self._peek()
        if token is None:
            return 0.0
        self.pos += 1
        if token == "(":
            value = self.expression()
            if self._peek() == ")":
                self.pos += 1
            return value
        try:
            return float(token)
        except ValueError:
            # An operator where a number belongs.
            return 0.0


def evaluate(text: str | None) -> float:
    tokens = tokenize(text or "")
    if not tokens:
        return 0.0
    try:
        result = _Parser(tokens).expression()
    except (RecursionError, OverflowError):
        return 0.0
    return result if math.isfinite(result) else 0.0
