"""Edit-distance similarity between field names."""

from __future__ import annotations

import re

_SEPARATORS_RE = re.compile(r"[_\s-]+")


def normalize_field_name(name: str) -> str:
    return _SEPARATORS_RE.sub("", str(name).lower())


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(
                current[j - 1] + 1,       # insertion
                previous[j] + 1,          # deletion
                previous[j - 1] + cost,   # substitution
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """
    Match confidence in [0, 1] between two field names.

    Both names are normalized first (case, underscores, spaces and hyphens
    ignored), so "Share_Count" and "share count" score 1.0.
    """
    left = normalize_field_name(a)
    right = normalize_field_name(b)
    longest = max(len(left), len(right))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein(left, right) / longest
