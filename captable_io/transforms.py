"""
transforms.py — the fixed transformation vocabulary.

Every transformation is total: bad input yields a defined fallback (0 for
numbers, None for dates, the untouched value for formatting helpers) and
never raises. Missing values (None) pass through unchanged.

Import side:  uppercase lowercase trim number date boolean phone currency
Export side:  capitalize round_2 round_0 percentage currency_cents
"""

from __future__ import annotations

import math
import re
import warnings
from datetime import datetime
from typing import Any, Callable

import pandas as pd

from captable_io.errors import UnknownRuleError
from captable_io.values import Scalar, normalize_scalar, to_number, to_text

BOOLEAN_TRUE = {"true", "1", "yes", "on", "checked", "y"}

_NUMBER_PREFIX_RE = re.compile(r"-?(?:\d+(?:\.\d*)?|\.\d+)")
_DATE_FORMATS = [
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), ("month", "day", "year")),
    (re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$"), ("month", "day", "year")),
    (re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$"), ("year", "month", "day")),
    (re.compile(r"^(\d{4})/(\d{1,2})/(\d{1,2})$"), ("year", "month", "day")),
]


def as_number(value: float) -> int | float:
    if isinstance(value, float) and value.is_integer() and abs(value) < 2**53:
        return int(value)
    return value


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def _text_or_none(value: Any) -> str | None:
    value = normalize_scalar(value)
    if value is None:
        return None
    return to_text(value)


def uppercase(value: Any) -> Scalar:
    text = _text_or_none(value)
    return None if text is None else text.upper()


def lowercase(value: Any) -> Scalar:
    text = _text_or_none(value)
    return None if text is None else text.lower()


def trim(value: Any) -> Scalar:
    text = _text_or_none(value)
    return None if text is None else text.strip()


def number(value: Any) -> Scalar:
    value = normalize_scalar(value)
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return as_number(float(value)) if isinstance(value, float) else value
    cleaned = re.sub(r"[^0-9.\-]", "", value)
    match = _NUMBER_PREFIX_RE.match(cleaned)
    if not match:
        return 0
    try:
        return as_number(float(match.group(0)))
    except ValueError:
        return 0


def currency(value: Any) -> Scalar:
    value = normalize_scalar(value)
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    cleaned = re.sub(r"[$,\s]", "", to_text(value))
    try:
        parsed = float(cleaned)
    except ValueError:
        return 0
    if not math.isfinite(parsed):
        return 0
    return as_number(parsed)


def _build_date(parts: dict[str, str]) -> str | None:
    try:
        return datetime(int(parts["year"]), int(parts["month"]), int(parts["day"])).strftime("%Y-%m-%d")
    except ValueError:
        return None


def date(value: Any) -> Scalar:
    value = normalize_scalar(value)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None
    text = value.strip()
    if not text:
        return None

    for pattern, order in _DATE_FORMATS:
        match = pattern.match(text)
        if match:
            built = _build_date(dict(zip(order, match.groups())))
            if built:
                return built

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        try:
            parsed = pd.to_datetime(text, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            return None
    if pd.isna(parsed):
        return None
    return normalize_scalar(parsed)


def boolean(value: Any) -> Scalar:
    value = normalize_scalar(value)
    if isinstance(value, bool):
        return value
    return to_text(value).strip().lower() in BOOLEAN_TRUE


def phone(value: Any) -> Scalar:
    text = _text_or_none(value)
    if text is None:
        return None
    text = text.strip()
    digits = re.sub(r"\D", "", text)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    if len(digits) == 11 and digits[0] == "1":
        return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
    return text


def capitalize(value: Any) -> Scalar:
    text = _text_or_none(value)
    if text is None:
        return None
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), text)


def _numeric_or_same(value: Any, op: Callable[[float], float]) -> Scalar:
    value = normalize_scalar(value)
    numeric = to_number(value)
    if numeric is None:
        return value
    return as_number(op(numeric))


def round_2(value: Any) -> Scalar:
    return _numeric_or_same(value, lambda n: round_half_up(n, 2))


def round_0(value: Any) -> Scalar:
    return _numeric_or_same(value, lambda n: round_half_up(n, 0))


def percentage(value: Any) -> Scalar:
    return _numeric_or_same(value, lambda n: n * 100)


def currency_cents(value: Any) -> Scalar:
    return _numeric_or_same(value, lambda n: n / 100)


TRANSFORMATIONS: dict[str, Callable[[Any], Scalar]] = {
    "uppercase": uppercase,
    "lowercase": lowercase,
    "trim": trim,
    "number": number,
    "date": date,
    "boolean": boolean,
    "phone": phone,
    "currency": currency,
    "capitalize": capitalize,
    "round_2": round_2,
    "round_0": round_0,
    "percentage": percentage,
    "currency_cents": currency_cents,
}


def apply_transformation(value: Any, name: str | None) -> Scalar:
    if not name:
        return normalize_scalar(value)
    try:
        transform = TRANSFORMATIONS[name]
    except KeyError:
        raise UnknownRuleError(f"Unknown transformation: {name!r}") from None
    return transform(value)
