"""
validation.py — per-field transform/validate pipeline.

apply_row() never raises for bad data. A cell that fails its validation is
reported as a row/column-scoped ParseError and left out of the transformed
row; the remaining cells of that row are still processed.
"""

from __future__ import annotations

import re
from collections import defaultdict
from typing import Any, Iterable, Sequence

from captable_io.errors import UnknownRuleError
from captable_io.models import SEVERITY_WARNING, FieldMapping, ParseError
from captable_io.schemas import FieldRule, TargetSchema
from captable_io.transforms import apply_transformation
from captable_io.values import Scalar, is_empty, is_iso_date, normalize_scalar, to_number, to_text

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEFAULT_NUMBER_RULE = FieldRule(validation="number", minimum=0)

VALIDATIONS = ("required", "email", "number", "date", "choice")
EXISTING_SHAREHOLDER_MESSAGE = "Shareholder with this name already exists"


def _format_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


def _check_number(value: Scalar, rule: FieldRule, field_name: str) -> str | None:
    numeric = to_number(value)
    if numeric is None:
        return f"Invalid {field_name}: expected a number, got {to_text(value)!r}"
    if rule.minimum is not None:
        if rule.exclusive_minimum and numeric <= rule.minimum:
            return f"Invalid {field_name}: must be greater than {_format_bound(rule.minimum)}"
        if not rule.exclusive_minimum and numeric < rule.minimum:
            return f"Invalid {field_name}: must be at least {_format_bound(rule.minimum)}"
    if rule.maximum is not None and numeric > rule.maximum:
        return f"Invalid {field_name}: must be at most {_format_bound(rule.maximum)}"
    return None


def validate_value(
    value: Any,
    validation: str | None,
    rule: FieldRule | None = None,
    field_name: str = "value",
) -> str | None:
    """
    Return an error message when *value* fails *validation*, else None.

    Only ``required`` rejects empty values; every other check treats an
    empty cell as "not provided" and passes it.
    """
    if not validation:
        return None
    if validation not in VALIDATIONS:
        raise UnknownRuleError(f"Unknown validation: {validation!r}")

    value = normalize_scalar(value)
    if validation == "required":
        return f"{field_name} is required" if is_empty(value) else None
    if is_empty(value):
        return None

    if validation == "email":
        if not EMAIL_RE.fullmatch(to_text(value).strip()):
            return f"Invalid {field_name}: not a valid email address"
        return None

    if validation == "number":
        if rule is None or rule.validation != "number":
            rule = DEFAULT_NUMBER_RULE
        return _check_number(value, rule, field_name)

    if validation == "date":
        if not is_iso_date(value):
            return f"Invalid {field_name}: expected a date in YYYY-MM-DD format"
        return None

    # choice
    choices = rule.choices if rule else ()
    if choices and to_text(value) not in choices:
        return f"Invalid {field_name}: must be one of {', '.join(choices)}"
    return None


def apply_row(
    row: dict[str, Any],
    mappings: Sequence[FieldMapping],
    schema: TargetSchema | None = None,
    row_number: int = 1,
) -> tuple[dict[str, Scalar], list[ParseError]]:
    transformed: dict[str, Scalar] = {}
    errors: list[ParseError] = []
    failed_targets: set[str] = set()

    for mapping in mappings:
        source_value = normalize_scalar(row.get(mapping.source_field))
        rule = schema.rule_for(mapping.target_field) if schema else None
        try:
            value = apply_transformation(source_value, mapping.transformation)
            message = validate_value(value, mapping.validation, rule, mapping.target_field)
        except UnknownRuleError as exc:
            message = f"Transformation error: {exc}"

        if message:
            errors.append(ParseError(row_number, mapping.source_field, source_value, message))
            failed_targets.add(mapping.target_field)
            continue
        # Duplicate targets: last mapping wins.
        transformed[mapping.target_field] = value

    if schema is not None:
        for required in schema.required:
            if required in failed_targets:
                continue
            if is_empty(transformed.get(required)):
                errors.append(ParseError(
                    row_number,
                    required,
                    None,
                    f'Required field "{required}" is missing or empty',
                ))

    return transformed, errors


def duplicate_value_warnings(
    rows: Iterable[dict[str, Scalar]],
    field_name: str,
    *,
    first_row_number: int = 1,
) -> list[ParseError]:
    seen: dict[str, list[int]] = defaultdict(list)
    for row_number, row in enumerate(rows, start=first_row_number):
        value = row.get(field_name)
        if is_empty(value):
            continue
        seen[to_text(value).strip().lower()].append(row_number)

    warnings: list[ParseError] = []
    for value, row_numbers in seen.items():
        if len(row_numbers) < 2:
            continue
        listed = ", ".join(str(n) for n in row_numbers)
        for row_number in row_numbers:
            warnings.append(ParseError(
                row_number,
                field_name,
                value,
                f"Duplicate {field_name} found in rows: {listed}",
                SEVERITY_WARNING,
            ))
    return warnings


def existing_name_warnings(
    rows: Iterable[dict[str, Scalar]],
    existing_names: Iterable[str],
    *,
    first_row_number: int = 1,
) -> list[ParseError]:
    """Warn for every row whose shareholder name is already stored (case-insensitive)."""
    known = {to_text(name).strip().lower() for name in existing_names if not is_empty(name)}
    warnings: list[ParseError] = []
    if not known:
        return warnings
    for row_number, row in enumerate(rows, start=first_row_number):
        value = row.get("name")
        if is_empty(value) or to_text(value).strip().lower() not in known:
            continue
        warnings.append(ParseError(row_number, "name", value, EXISTING_SHAREHOLDER_MESSAGE, SEVERITY_WARNING))
    return warnings


def transform_rows(
    rows: Sequence[dict[str, Any]],
    mappings: Sequence[FieldMapping],
    schema: TargetSchema | None = None,
    *,
    first_row_number: int = 1,
    existing_names: Iterable[str] | None = None,
) -> tuple[list[dict[str, Scalar]], list[ParseError]]:
    transformed_rows: list[dict[str, Scalar]] = []
    errors: list[ParseError] = []
    for row_number, row in enumerate(rows, start=first_row_number):
        transformed, row_errors = apply_row(row, mappings, schema, row_number)
        transformed_rows.append(transformed)
        errors.extend(row_errors)

    if schema is not None and schema.name == "shareholders":
        errors.extend(duplicate_value_warnings(transformed_rows, "name", first_row_number=first_row_number))
        if existing_names:
            errors.extend(existing_name_warnings(transformed_rows, existing_names, first_row_number=first_row_number))
    return transformed_rows, errors
