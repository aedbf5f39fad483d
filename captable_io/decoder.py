"""
decoder.py — turn a CSV or spreadsheet into headers + typed rows.

Supports: .csv .tsv .txt (delimited text), .xlsx .xlsm (openpyxl), .xls (xlrd)

Public API:
    table = decode("path/to/file.csv", ParseOptions(skip_rows=1))
    table.headers, table.rows

Delimited-text cells are trimmed and coerced here, not later:
    "1500"        -> 1500
    "0.25"        -> 0.25
    "3/14/2024"   -> "2024-03-14"
so every consumer downstream sees typed scalars. Spreadsheet cells keep their
native type; formula cells yield their cached result.
"""

from __future__ import annotations

import csv
import io
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import chardet

from captable_io.errors import DecodeError
from captable_io.values import Scalar, normalize_scalar

# ── Format groups ──────────────────────────────────────────────────────────────
TEXT_FORMATS  = {".csv", ".tsv", ".txt"}
EXCEL_FORMATS = {".xlsx", ".xlsm", ".xls"}
ALL_FORMATS   = TEXT_FORMATS | EXCEL_FORMATS

NUMBER_CELL_RE = re.compile(r"^\d+\.?\d*$")
DATE_CELL_RE   = re.compile(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{2,4})$")
DELIMITER_CANDIDATES = [",", ";", "\t", "|"]


@dataclass(frozen=True)
class ParseOptions:
    file_type: Optional[str] = None        # "csv" | "excel"; inferred from suffix
    worksheet: Optional[str] = None
    has_headers: bool = True
    delimiter: Optional[str] = None        # auto-detected when None
    encoding: Optional[str] = None         # auto-detected when None
    skip_rows: int = 0
    target_schema: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_type": self.file_type,
            "worksheet": self.worksheet,
            "has_headers": self.has_headers,
            "delimiter": self.delimiter,
            "encoding": self.encoding,
            "skip_rows": self.skip_rows,
            "target_schema": self.target_schema,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ParseOptions":
        known = cls().to_dict()
        return cls(**{key: payload[key] for key in known if key in payload})


@dataclass
class DecodedTable:
    headers: list[str]
    rows: list[dict[str, Scalar]]
    file_type: str
    encoding: Optional[str] = None
    delimiter: Optional[str] = None
    sheet_name: Optional[str] = None
    sheet_names: Optional[list[str]] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


# ══════════════════════════════════════════════════════════════════════════════
# ENCODING
# ══════════════════════════════════════════════════════════════════════════════

def detect_encoding(raw: bytes) -> str:
    if raw.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"
    result = chardet.detect(raw[:200_000])
    return result.get("encoding") or "utf-8"


def _read_text_safely(raw: bytes, preferred_encoding: str) -> str:
    """
    Decode raw bytes line-by-line.

    Per line: UTF-8, then the preferred encoding, then latin-1, then CP1252
    with replacement. Embedded null bytes and the BOM are stripped.
    """
    decoded_lines: list[str] = []
    for raw_line in raw.split(b"\n"):
        decoded: str | None = None
        for enc in ("utf-8", preferred_encoding, "latin-1"):
            if not enc:
                continue
            try:
                decoded = raw_line.decode(enc)
                break
            except (LookupError, UnicodeDecodeError):
                continue
        if decoded is None:
            decoded = raw_line.decode("cp1252", errors="replace")
        decoded_lines.append(decoded.replace("\x00", ""))
    return "\n".join(decoded_lines).lstrip("\ufeff")


def _decode_text(raw: bytes, encoding: Optional[str]) -> tuple[str, str]:
    if encoding:
        try:
            return raw.decode(encoding).lstrip("\ufeff"), encoding
        except LookupError as exc:
            raise DecodeError(f"Unknown encoding: {encoding}") from exc
        except UnicodeDecodeError as exc:
            raise DecodeError(f"File is not valid {encoding}: {exc}") from exc
    detected = detect_encoding(raw)
    return _read_text_safely(raw, detected), detected


# ══════════════════════════════════════════════════════════════════════════════
# DELIMITER DETECTION
# ══════════════════════════════════════════════════════════════════════════════

def detect_delimiter(text: str) -> str:
    """
    Infer the delimiter from sample lines.

    csv.Sniffer first; falls back to scoring each candidate by column-count
    consistency and column width.
    """
    sample_lines = [line for line in text.splitlines() if line.strip()][:50]
    sample = "\n".join(sample_lines[:25])

    if sample:
        try:
            return csv.Sniffer().sniff(sample, delimiters="".join(DELIMITER_CANDIDATES)).delimiter
        except csv.Error:
            pass

    best_delim = ","
    best_score = float("-inf")
    best_width = 0

    for delim in DELIMITER_CANDIDATES:
        rows = [
            row
            for row in csv.reader(io.StringIO("\n".join(sample_lines)), delimiter=delim)
            if any(cell.strip() for cell in row)
        ]
        if len(rows) < 2:
            continue

        widths = [len(row) for row in rows]
        mode_width, mode_count = Counter(widths).most_common(1)[0]
        consistency = mode_count / len(widths)

        score = (mode_width * 2.0) + (consistency * mode_width)
        if len(rows[0]) == mode_width:
            score += 1.0
        if mode_width == 1:
            score -= 10.0

        if score > best_score or (score == best_score and mode_width > best_width):
            best_score = score
            best_width = mode_width
            best_delim = delim

    return best_delim


# ══════════════════════════════════════════════════════════════════════════════
# CELL COERCION
# ══════════════════════════════════════════════════════════════════════════════

def _parse_short_date(month: int, day: int, year: int) -> Optional[str]:
    if year < 100:
        year += 2000 if year < 50 else 1900
    try:
        return datetime(year, month, day).strftime("%Y-%m-%d")
    except ValueError:
        return None


def coerce_text_cell(value: str) -> Scalar:
    """Trim a delimited-text cell and turn numbers/dates into typed scalars."""
    cleaned = value.strip()
    if not cleaned:
        return cleaned
    if NUMBER_CELL_RE.fullmatch(cleaned):
        if "." in cleaned:
            return float(cleaned)
        return int(cleaned)
    match = DATE_CELL_RE.fullmatch(cleaned)
    if match:
        first, second, year = (int(part) for part in match.groups())
        # month-first, then day-first when the month would be impossible
        return _parse_short_date(first, second, year) or _parse_short_date(second, first, year) or cleaned
    return cleaned


# ══════════════════════════════════════════════════════════════════════════════
# FORMAT READERS
# ══════════════════════════════════════════════════════════════════════════════

def _read_delimited(raw: bytes, suffix: str, options: ParseOptions) -> tuple[list[list[Scalar]], dict[str, Any]]:
    text, encoding = _decode_text(raw, options.encoding)
    if options.delimiter:
        delimiter = options.delimiter
    elif suffix == ".tsv":
        delimiter = "\t"
    else:
        delimiter = detect_delimiter(text)

    # The header row keeps its text; only data cells are coerced.
    header_index = options.skip_rows if options.has_headers else None
    try:
        reader = csv.reader(io.StringIO(text), delimiter=delimiter)
        rows = [row for row in reader if any(cell.strip() for cell in row)]
    except csv.Error as exc:
        raise DecodeError(f"Could not parse delimited text: {exc}") from exc

    matrix: list[list[Scalar]] = [
        [cell.strip() for cell in row] if index == header_index else [coerce_text_cell(cell) for cell in row]
        for index, row in enumerate(rows)
    ]

    return matrix, {"encoding": encoding, "delimiter": delimiter}


def _choose_sheet(all_sheets: list[str], requested: Optional[str]) -> str:
    if not all_sheets:
        raise DecodeError("Workbook contains no worksheets")
    if requested is None:
        return all_sheets[0]
    if requested not in all_sheets:
        raise DecodeError(f"Worksheet '{requested}' not found. Available: {all_sheets}")
    return requested


def _read_xlsx(raw: bytes, options: ParseOptions) -> tuple[list[list[Scalar]], dict[str, Any]]:
    from openpyxl import load_workbook

    try:
        # data_only: formula cells carry their cached computed value
        workbook = load_workbook(io.BytesIO(raw), data_only=True, read_only=True)
    except Exception as exc:
        raise DecodeError(f"Could not open workbook: {exc}") from exc

    try:
        all_sheets = list(workbook.sheetnames)
        chosen = _choose_sheet(all_sheets, options.worksheet)
        sheet = workbook[chosen]
        matrix = [
            [normalize_scalar(cell) for cell in row]
            for row in sheet.iter_rows(values_only=True)
        ]
    finally:
        workbook.close()

    matrix = [row for row in matrix if any(cell not in (None, "") for cell in row)]
    return matrix, {"sheet_name": chosen, "sheet_names": all_sheets}


def _read_xls(raw: bytes, options: ParseOptions) -> tuple[list[list[Scalar]], dict[str, Any]]:
    import pandas as pd

    # .xls requires xlrd; give a clear error if missing.
    try:
        import xlrd  # noqa: F401
    except ImportError:
        raise ImportError(".xls files require xlrd — run: pip install xlrd")

    try:
        with pd.ExcelFile(io.BytesIO(raw), engine="xlrd") as xf:
            all_sheets = [str(name) for name in xf.sheet_names]
            chosen = _choose_sheet(all_sheets, options.worksheet)
            frame = xf.parse(chosen, header=None)
    except DecodeError:
        raise
    except Exception as exc:
        raise DecodeError(f"Could not open workbook: {exc}") from exc

    matrix = [
        [normalize_scalar(cell) for cell in row]
        for row in frame.itertuples(index=False, name=None)
    ]
    matrix = [row for row in matrix if any(cell not in (None, "") for cell in row)]
    return matrix, {"sheet_name": chosen, "sheet_names": all_sheets}


# ══════════════════════════════════════════════════════════════════════════════
# HEADERS + ROWS
# ══════════════════════════════════════════════════════════════════════════════

def _build_headers(header_row: list[Scalar], width: int, warnings: list[str]) -> list[str]:
    headers: list[str] = []
    seen: Counter[str] = Counter()
    for index in range(width):
        cell = header_row[index] if index < len(header_row) else None
        name = "" if cell is None else str(normalize_scalar(cell)).strip()
        if isinstance(cell, float) and cell.is_integer():
            name = str(int(cell))
        if not name:
            name = f"Column {index + 1}"
        seen[name] += 1
        if seen[name] > 1:
            renamed = f"{name}_{seen[name]}"
            warnings.append(f"Duplicate header '{name}' renamed to '{renamed}'")
            name = renamed
        headers.append(name)
    return headers


def build_table(
    matrix: list[list[Scalar]],
    *,
    has_headers: bool = True,
    skip_rows: int = 0,
) -> tuple[list[str], list[dict[str, Scalar]], list[str]]:
    warnings: list[str] = []
    if skip_rows:
        matrix = matrix[skip_rows:]
    if not matrix:
        return [], [], warnings

    if has_headers:
        header_row, body = matrix[0], matrix[1:]
        headers = _build_headers(header_row, len(header_row), warnings)
    else:
        width = max(len(row) for row in matrix)
        headers = [f"Column {index + 1}" for index in range(width)]
        body = matrix

    overflow_rows = 0
    rows: list[dict[str, Scalar]] = []
    for raw_row in body:
        if len(raw_row) > len(headers) and any(c not in (None, "") for c in raw_row[len(headers):]):
            overflow_rows += 1
        rows.append({
            header: raw_row[index] if index < len(raw_row) else None
            for index, header in enumerate(headers)
        })

    if overflow_rows:
        warnings.append(f"{overflow_rows} rows had more cells than headers; extra cells were dropped")
    return headers, rows, warnings


# ══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ══════════════════════════════════════════════════════════════════════════════

def _resolve_file_type(suffix: str, file_type: Optional[str]) -> str:
    if file_type:
        if file_type not in ("csv", "excel"):
            raise DecodeError(f"Unsupported file type '{file_type}'. Supported: csv, excel")
        return file_type
    if suffix in TEXT_FORMATS:
        return "csv"
    if suffix in EXCEL_FORMATS:
        return "excel"
    supported = ", ".join(sorted(ALL_FORMATS))
    raise DecodeError(f"Unsupported format '{suffix or '[missing extension]'}'. Supported: {supported}")


def decode(
    source: "str | Path | bytes",
    options: Optional[ParseOptions] = None,
    *,
    filename: Optional[str] = None,
) -> DecodedTable:
    """
    Decode a file into headers and typed rows.

    Args:
        source:   Path to the file, or its raw bytes.
        options:  ParseOptions; raw bytes need options.file_type or filename.
        filename: Original file name when source is bytes (used for the suffix).

    Raises:
        DecodeError  if the file is missing, unsupported, or unreadable.
        ImportError  if a required optional dependency is missing.
    """
    options = options or ParseOptions()

    if isinstance(source, (bytes, bytearray)):
        raw = bytes(source)
        suffix = Path(filename).suffix.lower() if filename else ""
    else:
        path = Path(source)
        if not path.exists():
            raise DecodeError(f"File not found: {path}")
        raw = path.read_bytes()
        suffix = path.suffix.lower()

    file_type = _resolve_file_type(suffix, options.file_type)

    if file_type == "csv":
        matrix, meta = _read_delimited(raw, suffix, options)
    elif suffix == ".xls" or raw[:8] == b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1":
        matrix, meta = _read_xls(raw, options)
    else:
        matrix, meta = _read_xlsx(raw, options)

    headers, rows, warnings = build_table(
        matrix,
        has_headers=options.has_headers,
        skip_rows=options.skip_rows,
    )
    return DecodedTable(
        headers=headers,
        rows=rows,
        file_type=file_type,
        encoding=meta.get("encoding"),
        delimiter=meta.get("delimiter"),
        sheet_name=meta.get("sheet_name"),
        sheet_names=meta.get("sheet_names"),
        warnings=warnings,
    )
