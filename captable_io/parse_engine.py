"""
parse_engine.py — file -> ParseResult.

    decode -> map_fields -> transform_rows -> confidence

Decode failures and unexpected exceptions never escape: they come back as a
ParseResult with one row-0 error, no rows and confidence 0.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence

from captable_io.decoder import DecodedTable, ParseOptions, decode
from captable_io.errors import DecodeError
from captable_io.mapper import find_duplicate_targets, map_fields, mapping_confidence
from captable_io.models import FieldMapping, ParseError, ParseResult
from captable_io.schemas import get_schema
from captable_io.validation import transform_rows

logger = logging.getLogger(__name__)


def failed_result(message: str) -> ParseResult:
    return ParseResult(
        success=False,
        rows=[],
        headers=[],
        row_count=0,
        errors=[ParseError(0, "", None, message)],
        field_mappings=[],
        confidence=0.0,
    )


def build_result(
    table: DecodedTable,
    target_schema: Optional[str] = None,
    mappings: Optional[Sequence[FieldMapping]] = None,
    existing_names: Optional[Iterable[str]] = None,
) -> ParseResult:
    """Map, transform and score an already-decoded table."""
    schema = get_schema(target_schema)
    field_mappings = list(mappings) if mappings is not None else map_fields(table.headers, schema)

    rows, errors = transform_rows(table.rows, field_mappings, schema, existing_names=existing_names)
    errors = find_duplicate_targets(field_mappings) + errors
    has_errors = any(error.is_error for error in errors)

    return ParseResult(
        success=not has_errors,
        rows=rows,
        headers=list(table.headers),
        row_count=table.row_count,
        errors=errors,
        field_mappings=field_mappings,
        confidence=mapping_confidence(field_mappings, errors),
        source_rows=list(table.rows),
        warnings=list(table.warnings),
    )


def _describe(source) -> str:
    return "<bytes>" if isinstance(source, (bytes, bytearray)) else str(source)


def parse_file(
    source: "str | Path | bytes",
    options: Optional[ParseOptions] = None,
    *,
    filename: Optional[str] = None,
    mappings: Optional[Sequence[FieldMapping]] = None,
    existing_names: Optional[Iterable[str]] = None,
) -> ParseResult:
    """
    Parse one uploaded file.

    Pass ``mappings`` to reuse a reviewed or saved mapping instead of
    inferring one from the headers, and ``existing_names`` (shareholders
    already stored for the company) to flag imports of known holders.
    """
    options = options or ParseOptions()
    try:
        table = decode(source, options, filename=filename)
        result = build_result(table, options.target_schema, mappings, existing_names)
    except DecodeError as exc:
        logger.warning("Could not decode %s: %s", filename or _describe(source), exc)
        return failed_result(f"Parse error: {exc}")
    except Exception as exc:
        logger.exception("Unexpected failure while parsing")
        return failed_result(f"Parse error: {exc}")

    logger.info(
        "Parsed %d rows (%d errors, %d warnings, confidence %.2f)",
        result.row_count,
        result.error_count,
        result.warning_count,
        result.confidence,
    )
    return result
