"""
export.py — turn stored records into a formatted CSV or XLSX file.

Pipeline, in order:

    1. filters        AND-ed predicates over the raw record values
    2. fields         default value -> transformation -> display formatting
    3. grouping       stable sort on the raw group value, optional subtotals
    4. calculations   per row (subtotals included), from raw values
    5. render         CSV (optional '#' metadata block) or XLSX

Display strings never feed arithmetic: every ExportRow carries the raw
values beside the formatted ones, and subtotals and calculations read the
raw side. Inputs are never mutated.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Sequence

import openpyxl
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter

from captable_io import transforms
from captable_io.errors import FormulaError, UnknownRuleError
from captable_io.formula import evaluate, substitute_fields
from captable_io.schemas import TargetSchema, get_schema
from captable_io.values import Scalar, is_empty, normalize_scalar, to_number, to_text

logger = logging.getLogger(__name__)

CSV_CONTENT_TYPE = "text/csv"
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

DATA_TYPES = ("string", "number", "date", "currency", "percentage", "boolean")
FILTER_OPERATORS = ("equals", "contains", "greater_than", "less_than", "between", "in", "not_null")
DATE_FORMATS = {
    "MM/DD/YYYY": "%m/%d/%Y",
    "DD/MM/YYYY": "%d/%m/%Y",
    "YYYY-MM-DD": "%Y-%m-%d",
}
CALCULATION_ERROR = "ERROR"
SUBTOTAL_SUFFIX = " (Subtotal)"
DEFAULT_COLUMN_WIDTH = 15

HEADER_COLOR = "1565C0"
FILL_SUBTOTAL = PatternFill("solid", fgColor="E7EEF7")


# ══════════════════════════════════════════════════════════════════════════════
# TEMPLATE TYPES
# ══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TemplateField:
    source_field: str
    display_name: str
    data_type: str = "string"
    format: Optional[str] = None
    width: Optional[int] = None
    required: bool = False
    default_value: Any = None
    transformation: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_field": self.source_field,
            "display_name": self.display_name,
            "data_type": self.data_type,
            "format": self.format,
            "width": self.width,
            "required": self.required,
            "default_value": self.default_value,
            "transformation": self.transformation,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateField":
        return cls(
            source_field=data["source_field"],
            display_name=data.get("display_name") or data["source_field"],
            data_type=data.get("data_type") or "string",
            format=data.get("format"),
            width=data.get("width"),
            required=bool(data.get("required", False)),
            default_value=data.get("default_value"),
            transformation=data.get("transformation"),
        )


@dataclass(frozen=True)
class TemplateFormatting:
    file_format: str = "xlsx"
    include_headers: bool = True
    date_format: str = "MM/DD/YYYY"
    currency_symbol: str = "$"
    include_metadata: bool = True

    def __post_init__(self) -> None:
        if self.file_format not in ("csv", "xlsx"):
            raise ValueError(f"Unsupported export format: {self.file_format!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_format": self.file_format,
            "include_headers": self.include_headers,
            "date_format": self.date_format,
            "currency_symbol": self.currency_symbol,
            "include_metadata": self.include_metadata,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateFormatting":
        return cls(
            file_format=data.get("file_format", "xlsx"),
            include_headers=bool(data.get("include_headers", True)),
            date_format=data.get("date_format", "MM/DD/YYYY"),
            currency_symbol=data.get("currency_symbol", "$"),
            include_metadata=bool(data.get("include_metadata", True)),
        )


@dataclass(frozen=True)
class TemplateFilter:
    field: str
    operator: str
    value: Any = None
    values: tuple[Any, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "operator": self.operator,
            "value": self.value,
            "values": list(self.values),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateFilter":
        return cls(
            field=data["field"],
            operator=data["operator"],
            value=data.get("value"),
            values=tuple(data.get("values") or ()),
        )


@dataclass(frozen=True)
class TemplateGrouping:
    field: str
    sort_order: str = "asc"
    show_subtotals: bool = False
    subtotal_fields: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "sort_order": self.sort_order,
            "show_subtotals": self.show_subtotals,
            "subtotal_fields": list(self.subtotal_fields),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateGrouping":
        return cls(
            field=data["field"],
            sort_order=data.get("sort_order", "asc"),
            show_subtotals=bool(data.get("show_subtotals", False)),
            subtotal_fields=tuple(data.get("subtotal_fields") or ()),
        )


@dataclass(frozen=True)
class TemplateCalculation:
    name: str
    formula: str
    fields: tuple[str, ...] = ()
    display_name: Optional[str] = None

    @property
    def column(self) -> str:
        return self.display_name or self.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "formula": self.formula,
            "fields": list(self.fields),
            "display_name": self.display_name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateCalculation":
        return cls(
            name=data["name"],
            formula=data["formula"],
            fields=tuple(data.get("fields") or ()),
            display_name=data.get("display_name"),
        )


@dataclass(frozen=True)
class ExportTemplate:
    name: str
    target_schema: str
    fields: tuple[TemplateField, ...]
    formatting: TemplateFormatting = field(default_factory=TemplateFormatting)
    filters: tuple[TemplateFilter, ...] = ()
    grouping: Optional[TemplateGrouping] = None
    calculations: tuple[TemplateCalculation, ...] = ()
    description: str = ""

    @property
    def columns(self) -> list[str]:
        return [f.display_name for f in self.fields] + [c.column for c in self.calculations]

    def field_named(self, name: str) -> Optional[TemplateField]:
        """Look a template field up by source field, then by display name."""
        for template_field in self.fields:
            if template_field.source_field == name:
                return template_field
        for template_field in self.fields:
            if template_field.display_name == name:
                return template_field
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "target_schema": self.target_schema,
            "fields": [f.to_dict() for f in self.fields],
            "formatting": self.formatting.to_dict(),
            "filters": [f.to_dict() for f in self.filters],
            "grouping": self.grouping.to_dict() if self.grouping else None,
            "calculations": [c.to_dict() for c in self.calculations],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExportTemplate":
        grouping = data.get("grouping")
        return cls(
            name=data["name"],
            description=data.get("description") or "",
            target_schema=data["target_schema"],
            fields=tuple(TemplateField.from_dict(f) for f in data.get("fields") or ()),
            formatting=TemplateFormatting.from_dict(data.get("formatting") or {}),
            filters=tuple(TemplateFilter.from_dict(f) for f in data.get("filters") or ()),
            grouping=TemplateGrouping.from_dict(grouping) if grouping else None,
            calculations=tuple(TemplateCalculation.from_dict(c) for c in data.get("calculations") or ()),
        )


@dataclass
class ExportRow:
    values: dict[str, Scalar]
    raw: dict[str, Scalar]
    is_subtotal: bool = False


@dataclass(frozen=True)
class ExportFile:
    content: bytes
    filename: str
    content_type: str
    row_count: int


def default_export_template(schema: str | TargetSchema, file_format: str = "xlsx") -> ExportTemplate:
    target = get_schema(schema)
    if target is None:
        raise ValueError("default_export_template needs a target schema")
    return ExportTemplate(
        name=f"{target.name.replace('_', ' ').upper()} Export",
        description=f"Standard export template for {target.name}",
        target_schema=target.name,
        fields=tuple(
            TemplateField(
                source_field=column.source_field,
                display_name=column.display_name,
                data_type=column.data_type,
                width=column.width,
                required=column.required,
            )
            for column in target.export_columns
        ),
        formatting=TemplateFormatting(file_format=file_format),
    )


# ══════════════════════════════════════════════════════════════════════════════
# FILTERS
# ══════════════════════════════════════════════════════════════════════════════

def _loosely_equal(left: Any, right: Any) -> bool:
    left_num, right_num = to_number(left), to_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    return to_text(left) == to_text(right)


def matches_filter(record: Mapping[str, Any], rule: TemplateFilter) -> bool:
    value = normalize_scalar(record.get(rule.field))
    operator = rule.operator

    if operator == "equals":
        return _loosely_equal(value, rule.value)
    if operator == "contains":
        return to_text(rule.value).lower() in to_text(value).lower()
    if operator in ("greater_than", "less_than"):
        left, right = to_number(value), to_number(rule.value)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "between":
        if len(rule.values) < 2:
            return False
        numeric = to_number(value)
        low, high = to_number(rule.values[0]), to_number(rule.values[1])
        if numeric is None or low is None or high is None:
            return False
        return low <= numeric <= high
    if operator == "in":
        return any(_loosely_equal(value, candidate) for candidate in rule.values)
    if operator == "not_null":
        return not is_empty(value)

    logger.debug("Ignoring unknown filter operator %r on %s", operator, rule.field)
    return True


def apply_filters(records: Sequence[Mapping[str, Any]], filters: Sequence[TemplateFilter]) -> list[Mapping[str, Any]]:
    return [r for r in records if all(matches_filter(r, f) for f in filters)]


# ══════════════════════════════════════════════════════════════════════════════
# DISPLAY FORMATTING
# ══════════════════════════════════════════════════════════════════════════════

def _format_decimal(number: float) -> str:
    text = f"{transforms.round_half_up(number, 2):,.2f}"
    return text.rstrip("0").rstrip(".")


def _format_date(value: Scalar, date_format: str) -> Scalar:
    iso = transforms.date(value)
    if iso is None:
        return value
    parsed = datetime.strptime(iso, "%Y-%m-%d")
    pattern = DATE_FORMATS.get(date_format)
    if pattern is None:
        pattern = date_format if "%" in date_format else "%Y-%m-%d"
    return parsed.strftime(pattern)


def format_value(value: Any, template_field: TemplateField, formatting: TemplateFormatting) -> Scalar:
    value = normalize_scalar(value)
    if value is None or value == "":
        return value

    data_type = template_field.data_type
    if data_type == "date":
        return _format_date(value, formatting.date_format)
    if data_type == "boolean":
        truthy = transforms.boolean(value) if isinstance(value, str) else bool(value)
        return "Yes" if truthy else "No"

    numeric = to_number(value)
    if data_type in ("currency", "percentage", "number") and numeric is None:
        return value
    if data_type == "currency":
        sign = "-" if numeric < 0 else ""
        return f"{sign}{formatting.currency_symbol}{abs(numeric):,.2f}"
    if data_type == "percentage":
        return f"{numeric:.2f}%"
    if data_type == "number":
        if template_field.format == "integer":
            return f"{transforms.round_half_up(numeric):,.0f}"
        return _format_decimal(numeric)
    return value


# ══════════════════════════════════════════════════════════════════════════════
# FORMATTER
# ══════════════════════════════════════════════════════════════════════════════

def _sort_key(value: Scalar) -> tuple:
    numeric = to_number(value)
    if numeric is not None:
        return (0, numeric, "")
    if value is None:
        return (2, 0.0, "")
    return (1, 0.0, to_text(value))


class ExportFormatter:
    def format_rows(self, records: Sequence[Mapping[str, Any]], template: ExportTemplate) -> list[ExportRow]:
        selected = apply_filters(records, template.filters)
        rows = [self._format_record(record, template) for record in selected]
        if template.grouping is not None:
            rows = self._group(rows, template)
        if template.calculations:
            for row in rows:
                self._calculate(row, template.calculations)
        return rows

    def _format_record(self, record: Mapping[str, Any], template: ExportTemplate) -> ExportRow:
        values: dict[str, Scalar] = {}
        raw: dict[str, Scalar] = {}
        for template_field in template.fields:
            value = normalize_scalar(record.get(template_field.source_field))
            if is_empty(value) and template_field.default_value is not None:
                value = normalize_scalar(template_field.default_value)
            if template_field.transformation:
                try:
                    value = transforms.apply_transformation(value, template_field.transformation)
                except UnknownRuleError:
                    logger.warning(
                        "Skipping unknown transformation %r on %s",
                        template_field.transformation,
                        template_field.source_field,
                    )
            raw[template_field.source_field] = value
            values[template_field.display_name] = format_value(value, template_field, template.formatting)
        return ExportRow(values=values, raw=raw)

    def _group(self, rows: list[ExportRow], template: ExportTemplate) -> list[ExportRow]:
        grouping = template.grouping
        group_field = template.field_named(grouping.field)
        source = group_field.source_field if group_field else grouping.field

        ordered = sorted(
            rows,
            key=lambda row: _sort_key(row.raw.get(source)),
            reverse=grouping.sort_order == "desc",
        )
        if not grouping.show_subtotals or not ordered:
            return ordered

        result: list[ExportRow] = []
        members: list[ExportRow] = []
        for row in ordered:
            if members and _sort_key(row.raw.get(source)) != _sort_key(members[0].raw.get(source)):
                result.append(self._subtotal(members, template, group_field, source))
                members = []
            members.append(row)
            result.append(row)
        result.append(self._subtotal(members, template, group_field, source))
        return result

    def _subtotal(
        self,
        members: list[ExportRow],
        template: ExportTemplate,
        group_field: Optional[TemplateField],
        source: str,
    ) -> ExportRow:
        first = members[0]
        group_value = first.raw.get(source)
        label_value = first.values.get(group_field.display_name) if group_field else group_value
        label = f"{to_text(label_value)}{SUBTOTAL_SUFFIX}"

        values: dict[str, Scalar] = {name: None for name in (f.display_name for f in template.fields)}
        raw: dict[str, Scalar] = {source: label}
        if group_field is not None:
            values[group_field.display_name] = label

        for name in template.grouping.subtotal_fields:
            target = template.field_named(name)
            key = target.source_field if target else name
            total = sum(to_number(m.raw.get(key)) or 0.0 for m in members)
            total = transforms.as_number(total)
            raw[key] = total
            if target is not None:
                values[target.display_name] = format_value(total, target, template.formatting)
        return ExportRow(values=values, raw=raw, is_subtotal=True)

    def _calculate(self, row: ExportRow, calculations: Sequence[TemplateCalculation]) -> None:
        for calc in calculations:
            try:
                expression = substitute_fields(calc.formula, row.raw, calc.fields or None)
                result: Scalar = transforms.as_number(evaluate(expression))
            except FormulaError as exc:
                logger.debug("Calculation %s failed: %s", calc.name, exc)
                result = CALCULATION_ERROR
            row.values[calc.column] = result

    # ── rendering ────────────────────────────────────────────────────────────

    def generate(
        self,
        records: Sequence[Mapping[str, Any]],
        template: ExportTemplate,
        *,
        company_id: Optional[str] = None,
        generated_at: Optional[datetime] = None,
    ) -> ExportFile:
        generated_at = generated_at or datetime.now(timezone.utc).replace(microsecond=0)
        rows = self.format_rows(records, template)
        record_count = sum(1 for row in rows if not row.is_subtotal)
        metadata = {
            "Export Template": template.name,
            "Generated At": generated_at.isoformat(),
            "Record Count": record_count,
            "Company ID": company_id or "",
            "Target Schema": template.target_schema,
        }

        stem = export_filename_stem(template.name, generated_at)
        if template.formatting.file_format == "csv":
            content = render_csv(rows, template, metadata)
            filename, content_type = f"{stem}.csv", CSV_CONTENT_TYPE
        else:
            content = render_xlsx(rows, template, metadata, generated_at)
            filename, content_type = f"{stem}.xlsx", XLSX_CONTENT_TYPE

        logger.info("Exported %d %s records to %s", record_count, template.target_schema, filename)
        return ExportFile(content=content, filename=filename, content_type=content_type, row_count=record_count)


def export_filename_stem(template_name: str, generated_at: datetime) -> str:
    name = re.sub(r"\s+", "_", template_name.strip())
    return f"{name}_{generated_at.strftime('%Y%m%dT%H%M%S')}"


def render_csv(rows: Sequence[ExportRow], template: ExportTemplate, metadata: Mapping[str, Any]) -> bytes:
    buffer = io.StringIO()
    if template.formatting.include_metadata:
        buffer.write(f"# Export: {metadata['Export Template']}\n")
        buffer.write(f"# Generated: {metadata['Generated At']}\n")
        buffer.write(f"# Records: {metadata['Record Count']}\n")
        buffer.write(f"# Company ID: {metadata['Company ID']}\n")
        buffer.write(f"# Target Schema: {metadata['Target Schema']}\n")

    columns = template.columns
    writer = csv.writer(buffer, lineterminator="\n")
    if template.formatting.include_headers:
        writer.writerow(columns)
    for row in rows:
        writer.writerow([to_text(row.values.get(column)) for column in columns])
    return buffer.getvalue().encode("utf-8")


def render_xlsx(
    rows: Sequence[ExportRow],
    template: ExportTemplate,
    metadata: Mapping[str, Any],
    generated_at: datetime,
) -> bytes:
    wb = openpyxl.Workbook()
    wb.properties.creator = "captable-io"
    wb.properties.created = generated_at.replace(tzinfo=None)

    ws = wb.active
    ws.title = "Data"
    columns = template.columns
    widths = [f.width or DEFAULT_COLUMN_WIDTH for f in template.fields]
    widths += [DEFAULT_COLUMN_WIDTH] * len(template.calculations)

    if template.formatting.include_headers:
        ws.append(columns)
        _style_header(ws, HEADER_COLOR)

    bold = Font(bold=True)
    for row in rows:
        ws.append([row.values.get(column) for column in columns])
        if row.is_subtotal:
            for cell in ws[ws.max_row]:
                cell.font = bold
                cell.fill = FILL_SUBTOTAL

    for i, width in enumerate(widths, start=1):
        ws.column_dimensions[get_column_letter(i)].width = width

    if template.formatting.include_metadata:
        info = wb.create_sheet("Export Info")
        info.append(["Property", "Value"])
        for key, value in metadata.items():
            info.append([key, value])
        _style_header(info, "4CAF50")
        info.column_dimensions["A"].width = 20
        info.column_dimensions["B"].width = 40

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def _style_header(ws, hex_color: str) -> None:
    fill = PatternFill("solid", fgColor=hex_color)
    font = Font(bold=True, color="FFFFFF")
    for cell in ws[1]:
        cell.font = font
        cell.fill = fill
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=False)
    ws.freeze_panes = "A2"
