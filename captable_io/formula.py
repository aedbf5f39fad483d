"""
formula.py — arithmetic for computed export columns.

A recursive-descent parser over the characters ``0-9 + - * / ( ) .`` only:

    expression := term (('+' | '-') term)*
    term       := factor (('*' | '/') factor)*
    factor     := number | '(' expression ')' | ('-' | '+') factor
    number     := digit+ ('.' digit+)?

Field references are substituted with numeric literals before evaluation
(see substitute_fields). Anything else is rejected up front; nothing here
hands text to eval(). Parentheses and unary signs may nest at most
MAX_NESTING levels deep.
"""

from __future__ import annotations

import math
import re
from typing import Any, Iterable, Mapping

from captable_io.errors import DivisionByZeroError, FormulaError
from captable_io.values import to_number

ALLOWED_RE = re.compile(r"^[0-9+\-*/().]+$")
WHITESPACE_RE = re.compile(r"\s+")
PLACEHOLDER_RE = re.compile(r"\{([^{}]+)\}")
OPERATORS = "+-*/"
MAX_NESTING = 100


class _Parser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0
        self.depth = 0

    def _descend(self) -> None:
        self.depth += 1
        if self.depth > MAX_NESTING:
            raise FormulaError("Formula nested too deeply")

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def parse(self) -> float:
        value = self.expression()
        if self.pos != len(self.text):
            raise FormulaError(f"Unexpected character {self.peek()!r} at position {self.pos}")
        return value

    def expression(self) -> float:
        value = self.term()
        while self.peek() in ("+", "-"):
            op = self.peek()
            self.pos += 1
            right = self.term()
            value = value + right if op == "+" else value - right
        return value

    def term(self) -> float:
        value = self.factor()
        while self.peek() in ("*", "/"):
            op = self.peek()
            self.pos += 1
            right = self.factor()
            if op == "*":
                value *= right
            else:
                if right == 0:
                    raise DivisionByZeroError()
                value /= right
        return value

    def factor(self) -> float:
        char = self.peek()
        if not char:
            raise FormulaError("Unexpected end of formula")
        if char == "(":
            self.pos += 1
            self._descend()
            value = self.expression()
            if self.peek() != ")":
                raise FormulaError("Missing closing parenthesis")
            self.pos += 1
            self.depth -= 1
            return value
        if char in ("-", "+"):
            self.pos += 1
            self._descend()
            value = self.factor()
            self.depth -= 1
            return -value if char == "-" else value
        return self.number()

    def number(self) -> float:
        start = self.pos
        while self.peek().isdigit():
            self.pos += 1
        if self.pos == start:
            raise FormulaError(f"Expected number at position {start}")
        if self.peek() == ".":
            self.pos += 1
            fraction_start = self.pos
            while self.peek().isdigit():
                self.pos += 1
            if self.pos == fraction_start:
                raise FormulaError(f"Malformed number at position {start}")
        return float(self.text[start:self.pos])


def evaluate(expression: str) -> float:
    cleaned = WHITESPACE_RE.sub("", expression or "")

    if not cleaned:
        raise FormulaError("Empty or malformed formula")
    if not ALLOWED_RE.fullmatch(cleaned):
        raise FormulaError("Invalid characters in formula")
    if not any(c.isdigit() for c in cleaned) or cleaned[-1] in OPERATORS:
        raise FormulaError("Empty or malformed formula")

    result = _Parser(cleaned).parse()
    if not math.isfinite(result):
        raise FormulaError("Formula evaluation resulted in invalid number")
    return result


def number_literal(value: Any) -> str:
    numeric = to_number(value)
    if numeric is None or not math.isfinite(numeric):
        numeric = 0.0
    if numeric.is_integer():
        text = str(int(numeric))
    else:
        text = repr(numeric)
        if "e" in text or "E" in text:
            text = f"{numeric:.15f}".rstrip("0").rstrip(".")
    return f"({text})" if numeric < 0 else text


def referenced_fields(formula: str) -> list[str]:
    return PLACEHOLDER_RE.findall(formula)


def substitute_fields(
    formula: str,
    values: Mapping[str, Any],
    fields: Iterable[str] | None = None,
) -> str:
    """Replace ``{field}`` placeholders with numeric literals (non-numeric -> 0)."""
    names = list(fields) if fields else referenced_fields(formula)
    for name in names:
        formula = formula.replace("{" + name + "}", number_literal(values.get(name)))
    return formula
