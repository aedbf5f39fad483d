"""
values.py — the closed set of cell values the engine passes around.

A cell is always one of:

    None        missing / blank
    bool
    int, float
    str         free text, or an ISO date ("YYYY-MM-DD")

Decoders fold every foreign representation (pandas NaN/NaT, Timestamps,
datetime objects, numpy scalars) into this set once, so transformation,
validation, filtering and formatting can dispatch on isinstance() without
re-checking for library types.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timezone
from typing import Any, Union

import pandas as pd

Scalar = Union[None, bool, int, float, str]

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
NUMERIC_TEXT_RE = re.compile(r"^[+-]?\d+(?:\.\d+)?$")


def normalize_scalar(value: Any) -> Scalar:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (list, dict, tuple, set)):
        return str(value)
    if pd.isna(value):
        return None
    if isinstance(value, pd.Timestamp):
        if value.tzinfo is not None:
            value = value.tz_convert(None)
        return value.date().isoformat()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.strftime("%H:%M:%S")
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if math.isinf(value):
            return None
        return float(value)
    # numpy scalars and friends
    if hasattr(value, "item"):
        return normalize_scalar(value.item())
    return str(value).replace("\x00", "")


def is_empty(value: Any) -> bool:
    value = normalize_scalar(value)
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    return False


def to_text(value: Any) -> str:
    value = normalize_scalar(value)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def to_number(value: Any) -> float | None:
    """Numeric view of a cell, or None when it is not a number."""
    value = normalize_scalar(value)
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = value.strip()
    if NUMERIC_TEXT_RE.fullmatch(text):
        return float(text)
    return None


def is_iso_date(value: Any) -> bool:
    return isinstance(value, str) and bool(ISO_DATE_RE.fullmatch(value))
