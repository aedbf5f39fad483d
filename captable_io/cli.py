from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from captable_io import __version__ as TOOL_VERSION
from captable_io.config import EngineConfig
from captable_io.contracts import build_contract, build_run_summary
from captable_io.decoder import ParseOptions, decode
from captable_io.errors import (
    ConfigError,
    DecodeError,
    FormulaError,
    TemplateNotFoundError,
    UnknownSchemaError,
)
from captable_io.export import ExportFormatter, ExportTemplate, default_export_template
from captable_io.formula import evaluate, substitute_fields
from captable_io.mapper import UNMATCHED_CONFIDENCE, map_fields
from captable_io.models import FieldMapping, ParseResult
from captable_io.orchestrator import ImportOrchestrator, JobStatus
from captable_io.parse_engine import parse_file
from captable_io.schemas import SCHEMA_NAMES, get_schema
from captable_io.store import (
    InMemoryRowStore,
    JsonlRowStore,
    TemplateStore,
    build_row_store,
    existing_shareholder_names,
)

EXIT_SUCCESS = 0
EXIT_COMMAND_ERROR = 1
EXIT_PARSE_FAILED = 2
EXIT_VALIDATION_ERRORS = 3
EXIT_IMPORT_INCOMPLETE = 4

STAMP_ENV = "CAPTABLE_IO_OUTPUT_STAMP"
STAMP_FORMAT = "%Y%m%dT%H%M%SZ"
DEFAULT_TEMPLATE_FILE = "captable-io-templates.json"
MAX_LISTED_ERRORS = 20

logger = logging.getLogger("captable_io.cli")


class CliError(Exception):
    def __init__(self, message: str, code: int = EXIT_COMMAND_ERROR) -> None:
        super().__init__(message)
        self.code = code


class CaptableArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise CliError(message, EXIT_COMMAND_ERROR)


def eprint(message: str) -> None:
    print(message, file=sys.stderr)


def emit_human(message: str, *, quiet: bool = False) -> None:
    if not quiet:
        eprint(message)


def json_dumps(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True, default=str)


def configure_logging(args: argparse.Namespace) -> None:
    if getattr(args, "verbose", False):
        level = logging.DEBUG
    elif getattr(args, "quiet", False) or getattr(args, "json", False):
        level = logging.WARNING
    else:
        level = logging.INFO
    logging.basicConfig(
        stream=sys.stderr,
        level=level,
        format="%(levelname)s %(name)s: %(message)s",
        force=True,
    )


def output_datetime() -> datetime:
    override = os.environ.get(STAMP_ENV)
    if override:
        try:
            return datetime.strptime(override, STAMP_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            raise CliError(f"{STAMP_ENV} must look like 20240101T000000Z, got {override!r}") from None
    return datetime.now(timezone.utc).replace(microsecond=0)


def stamp_generated_at(value: Any, stamp: str) -> Any:
    if isinstance(value, dict):
        return {
            key: stamp if key == "generated_at" else stamp_generated_at(item, stamp)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [stamp_generated_at(item, stamp) for item in value]
    return value


def finalize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    if os.environ.get(STAMP_ENV):
        stamp = output_datetime().isoformat().replace("+00:00", "Z")
        return stamp_generated_at(payload, stamp)
    return payload


def write_text(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload, encoding="utf-8")


def maybe_emit_json_stdout(payload: Any, enabled: bool) -> None:
    if enabled:
        print(json_dumps(payload))


def safe_output_path(path: Path, *, overwrite: bool = False) -> Path:
    if not overwrite and path.exists():
        raise CliError(f"Refusing to overwrite existing output: {path}", EXIT_COMMAND_ERROR)
    return path


def classify_exception(exc: Exception) -> int:
    if isinstance(exc, CliError):
        return exc.code
    if isinstance(exc, (DecodeError, ImportError, UnicodeDecodeError)):
        return EXIT_PARSE_FAILED
    return EXIT_COMMAND_ERROR


def load_config(args: argparse.Namespace) -> EngineConfig:
    try:
        config = EngineConfig.from_env()
        return config.with_overrides(
            batch_size=getattr(args, "batch_size", None),
            data_dir=Path(args.data_dir) if getattr(args, "data_dir", None) else None,
            template_path=Path(args.templates) if getattr(args, "templates", None) else None,
        )
    except ConfigError as exc:
        raise CliError(str(exc), EXIT_COMMAND_ERROR) from None


def template_store(config: EngineConfig) -> TemplateStore:
    return TemplateStore(config.template_path or Path.cwd() / DEFAULT_TEMPLATE_FILE)


def parse_options_from_args(args: argparse.Namespace, schema: Optional[str]) -> ParseOptions:
    return ParseOptions(
        worksheet=args.sheet_name,
        has_headers=not args.no_headers,
        delimiter=args.delimiter,
        encoding=args.encoding,
        skip_rows=args.skip_rows,
        target_schema=schema,
    )


def require_input(args: argparse.Namespace, config: Optional[EngineConfig] = None) -> Path:
    input_path = Path(args.input)
    if not input_path.exists():
        raise CliError(f"File not found: {input_path}", EXIT_COMMAND_ERROR)
    if config is not None and input_path.stat().st_size > config.max_file_bytes:
        raise CliError(
            f"File is larger than the {config.max_file_bytes} byte limit: {input_path}",
            EXIT_COMMAND_ERROR,
        )
    return input_path


def is_decode_failure(result: ParseResult) -> bool:
    return not result.success and not result.headers and any(e.row == 0 and e.is_error for e in result.errors)


def stored_names(args: argparse.Namespace, config: EngineConfig) -> Optional[set[str]]:
    if args.schema != "shareholders" or not args.company:
        return None
    if not (config.rest_url or config.data_dir):
        return None
    return existing_shareholder_names(build_row_store(config), args.company)


def saved_mappings(args: argparse.Namespace, config: EngineConfig) -> tuple[Optional[list[FieldMapping]], dict[str, Any]]:
    if not getattr(args, "template", None):
        return None, {}
    if not args.company:
        raise CliError("--template needs --company", EXIT_COMMAND_ERROR)
    return template_store(config).load_mapping_template(args.company, args.schema, args.template)


# ══════════════════════════════════════════════════════════════════════════════
# TEXT RENDERING
# ══════════════════════════════════════════════════════════════════════════════

def render_mapping_text(mappings: list[FieldMapping]) -> str:
    lines = []
    for mapping in mappings:
        flag = "  [needs review]" if mapping.confidence <= UNMATCHED_CONFIDENCE else ""
        lines.append(f"  {mapping.source_field} -> {mapping.target_field} ({mapping.confidence:.2f}){flag}")
    return "\n".join(lines)


def render_parse_text(result: ParseResult, input_path: Path) -> str:
    summary = result.summary()
    lines = [
        "captable-io parse",
        f"File: {input_path}",
        f"Rows: {summary['rows']}",
        f"Valid rows: {summary['valid_rows']}",
        f"Errors: {summary['errors']}",
        f"Warnings: {summary['warnings']}",
        f"Confidence: {result.confidence:.2f}",
    ]
    if result.field_mappings:
        lines.append("Mappings:")
        lines.append(render_mapping_text(result.field_mappings))
    for warning in result.warnings:
        lines.append(f"Note: {warning}")
    listed = result.errors[:MAX_LISTED_ERRORS]
    for error in listed:
        lines.append(f"  [{error.severity}] {error.describe()}")
    if len(result.errors) > len(listed):
        lines.append(f"  ... {len(result.errors) - len(listed)} more")
    return "\n".join(lines) + "\n"


def render_import_text(summary: dict[str, Any], details: list[str]) -> str:
    lines = [
        "captable-io import",
        f"Job: {summary['job_id']}",
        f"Status: {summary['status']}",
        f"Table: {summary['target_table']}",
        f"Processed: {summary['processed_records']}/{summary['total_records']} ({summary['progress_percentage']}%)",
        f"Inserted: {summary['inserted_records']}",
        f"Skipped rows: {summary['skipped_rows']}",
        f"Batch errors: {summary['batch_errors']}",
        f"Warnings: {summary['warnings']}",
    ]
    for detail in details[:MAX_LISTED_ERRORS]:
        lines.append(f"  {detail}")
    return "\n".join(lines) + "\n"


# ══════════════════════════════════════════════════════════════════════════════
# PARSER
# ══════════════════════════════════════════════════════════════════════════════

def _add_logging_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-q", "--quiet", action="store_true", help="Warnings only")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")


def _add_decode_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input", help="Input file path (.csv, .tsv, .txt, .xlsx, .xlsm, .xls)")
    parser.add_argument("--sheet", dest="sheet_name", help="Worksheet name for spreadsheet input")
    parser.add_argument("--delimiter", help="Field delimiter (auto-detected by default)")
    parser.add_argument("--encoding", help="Text encoding (auto-detected by default)")
    parser.add_argument("--no-headers", action="store_true", help="First row is data, not headers")
    parser.add_argument("--skip-rows", type=int, default=0, help="Leading rows to drop before the header")


def build_parser() -> argparse.ArgumentParser:
    parser = CaptableArgumentParser(prog="captable-io", description="Cap-table import/export mapping engine.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    map_cmd = subparsers.add_parser("map", help="Suggest a field mapping for a file's headers.")
    _add_decode_flags(map_cmd)
    map_cmd.add_argument("--schema", choices=SCHEMA_NAMES, help="Target schema (identity mapping when omitted)")
    map_cmd.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    _add_logging_flags(map_cmd)

    parse = subparsers.add_parser("parse", help="Decode, map, transform and validate a file.")
    _add_decode_flags(parse)
    parse.add_argument("--schema", choices=SCHEMA_NAMES, help="Target schema")
    parse.add_argument("--company", help="Company id (for --template and the stored-shareholder check)")
    parse.add_argument("--template", help="Saved mapping template name")
    parse.add_argument("--templates", help="Template store path")
    parse.add_argument("--data-dir", help="Local JSONL row store; with --company, flags shareholders already stored")
    parse.add_argument("--output", help="Write the JSON result to this path")
    parse.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    _add_logging_flags(parse)

    import_cmd = subparsers.add_parser("import", help="Parse a file and import its valid rows.")
    _add_decode_flags(import_cmd)
    import_cmd.add_argument("--schema", choices=SCHEMA_NAMES, required=True, help="Target schema")
    import_cmd.add_argument("--company", required=True, help="Company id")
    import_cmd.add_argument("--template", help="Saved mapping template name")
    import_cmd.add_argument("--templates", help="Template store path")
    import_cmd.add_argument("--job-id", help="Reuse a job id (re-runs skip batches already written)")
    import_cmd.add_argument("--batch-size", type=int, help="Rows per insert batch")
    import_cmd.add_argument("--data-dir", help="Directory for the local JSONL row store")
    import_cmd.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    _add_logging_flags(import_cmd)

    export = subparsers.add_parser("export", help="Render stored records through an export template.")
    export.add_argument("--schema", choices=SCHEMA_NAMES, required=True, help="Target schema")
    export.add_argument("--company", required=True, help="Company id")
    export.add_argument("--records", help="Records file (.json, .jsonl, .csv); defaults to the data dir store")
    export.add_argument("--data-dir", help="Directory for the local JSONL row store")
    export.add_argument("--template", help="Saved export template name (default template when omitted)")
    export.add_argument("--templates", help="Template store path")
    export.add_argument("--format", choices=["csv", "xlsx"], help="Override the template's file format")
    export.add_argument("-o", "--out", dest="out_dir", help="Output directory")
    export.add_argument("--output", help="Explicit output file path")
    export.add_argument("--overwrite", action="store_true", help="Replace an existing output file")
    export.add_argument("--json", action="store_true", help="Write machine JSON to stdout")
    _add_logging_flags(export)

    evaluate_cmd = subparsers.add_parser("evaluate", help="Evaluate an arithmetic formula.")
    evaluate_cmd.add_argument("formula", help="Formula, e.g. '{shares} * {price}'")
    evaluate_cmd.add_argument("--set", dest="assignments", action="append", default=[], metavar="FIELD=VALUE", help="Field value for a {FIELD} placeholder")
    evaluate_cmd.add_argument("--json", action="store_true", help="Write machine JSON to stdout")

    templates = subparsers.add_parser("templates", help="Save or inspect mapping and export templates.")
    template_subparsers = templates.add_subparsers(dest="templates_command", required=True)
    save_mapping = template_subparsers.add_parser("save-mapping", help="Infer a mapping from a file and save it.")
    _add_decode_flags(save_mapping)
    save_mapping.add_argument("--schema", choices=SCHEMA_NAMES, required=True, help="Target schema")
    save_mapping.add_argument("--company", required=True, help="Company id")
    save_mapping.add_argument("--name", required=True, help="Template name")
    save_mapping.add_argument("--templates", help="Template store path")
    _add_logging_flags(save_mapping)
    show_mapping = template_subparsers.add_parser("show-mapping", help="Print a saved mapping template.")
    show_mapping.add_argument("--schema", choices=SCHEMA_NAMES, required=True, help="Target schema")
    show_mapping.add_argument("--company", required=True, help="Company id")
    show_mapping.add_argument("--name", required=True, help="Template name")
    show_mapping.add_argument("--templates", help="Template store path")
    save_export = template_subparsers.add_parser("save-export", help="Save an export template.")
    save_export.add_argument("definition", nargs="?", help="Template JSON file (default template for --schema when omitted)")
    save_export.add_argument("--schema", choices=SCHEMA_NAMES, help="Target schema (required without a definition file)")
    save_export.add_argument("--company", required=True, help="Company id")
    save_export.add_argument("--name", help="Template name (overrides the definition's name)")
    save_export.add_argument("--format", choices=["csv", "xlsx"], help="Override the template's file format")
    save_export.add_argument("--templates", help="Template store path")
    _add_logging_flags(save_export)
    list_exports = template_subparsers.add_parser("list-exports", help="List saved export templates.")
    list_exports.add_argument("--company", required=True, help="Company id")
    list_exports.add_argument("--schema", choices=SCHEMA_NAMES, help="Only templates for this schema")
    list_exports.add_argument("--templates", help="Template store path")

    subparsers.add_parser("version", help="Print version")
    return parser


# ══════════════════════════════════════════════════════════════════════════════
# COMMANDS
# ══════════════════════════════════════════════════════════════════════════════

def run_map(args: argparse.Namespace) -> int:
    input_path = require_input(args)
    try:
        table = decode(input_path, parse_options_from_args(args, args.schema))
        mappings = map_fields(table.headers, args.schema)
        payload = finalize_payload({
            "contract": build_contract("captable_io.mapping"),
            "run": build_run_summary(command="map", input_path=input_path, warnings=table.warnings),
            "target_schema": args.schema,
            "headers": table.headers,
            "field_mappings": [m.to_dict() for m in mappings],
        })
        if args.json:
            maybe_emit_json_stdout(payload, True)
        else:
            emit_human(f"captable-io map\nFile: {input_path}\nSchema: {args.schema or '[none]'}", quiet=args.quiet)
            emit_human(render_mapping_text(mappings), quiet=args.quiet)
        return EXIT_SUCCESS
    except Exception as exc:
        eprint(str(exc))
        return classify_exception(exc)


def run_parse(args: argparse.Namespace) -> int:
    input_path = require_input(args)
    try:
        config = load_config(args)
        mappings, saved_options = saved_mappings(args, config)
        options = parse_options_from_args(args, args.schema)
        if saved_options and not any((args.delimiter, args.encoding, args.sheet_name)):
            options = ParseOptions.from_dict({**saved_options, "target_schema": args.schema})
        result = parse_file(input_path, options, mappings=mappings, existing_names=stored_names(args, config))
        payload = finalize_payload({
            "contract": build_contract("captable_io.parse"),
            "run": build_run_summary(
                command="parse",
                input_path=input_path,
                status="ok" if result.success else "errors",
                output_path=Path(args.output) if args.output else None,
                metrics=result.summary(),
                warnings=result.warnings,
            ),
            "result": result.to_dict(),
        })
        if args.output:
            write_text(Path(args.output), json_dumps(payload))
            emit_human(f"Parse result written: {args.output}", quiet=args.quiet)
        if args.json:
            maybe_emit_json_stdout(payload, True)
        else:
            emit_human(render_parse_text(result, input_path).rstrip(), quiet=args.quiet)
        if is_decode_failure(result):
            return EXIT_PARSE_FAILED
        return EXIT_SUCCESS if result.success else EXIT_VALIDATION_ERRORS
    except Exception as exc:
        eprint(str(exc))
        return classify_exception(exc)


def run_import(args: argparse.Namespace) -> int:
    try:
        config = load_config(args)
        input_path = require_input(args, config)
        mappings, _ = saved_mappings(args, config)
        result = parse_file(input_path, parse_options_from_args(args, args.schema), mappings=mappings)
        if is_decode_failure(result):
            eprint(result.errors[0].message)
            return EXIT_PARSE_FAILED

        store = build_row_store(config)
        if isinstance(store, InMemoryRowStore):
            emit_human("No data dir or REST backend configured; rows are kept in memory only.", quiet=args.quiet)

        def report_progress(job) -> None:
            logger.info("Job %s: %d%% (%d/%d)", job.id, job.progress_percentage, job.processed_records, job.total_records)

        outcome = ImportOrchestrator(store, config).run(
            args.company,
            args.schema,
            result.source_rows,
            result.field_mappings,
            job_id=args.job_id,
            on_progress=report_progress,
        )
        summary = outcome.summary()
        payload = finalize_payload({
            "contract": build_contract("captable_io.import"),
            "run": build_run_summary(
                command="import",
                input_path=input_path,
                status=outcome.status,
                metrics=summary,
                warnings=result.warnings,
            ),
            "job": outcome.job.to_dict(),
            "warnings": [w.to_dict() for w in outcome.warnings],
            "parse": result.summary(),
            "field_mappings": [m.to_dict() for m in result.field_mappings],
        })
        if args.json:
            maybe_emit_json_stdout(payload, True)
        else:
            details = outcome.job.error_details + [w.describe() for w in outcome.warnings]
            emit_human(render_import_text(summary, details).rstrip(), quiet=args.quiet)
        return EXIT_SUCCESS if outcome.status == JobStatus.COMPLETED else EXIT_IMPORT_INCOMPLETE
    except Exception as exc:
        eprint(str(exc))
        return classify_exception(exc)


def load_records(path: Path) -> list[dict[str, Any]]:
    suffix = path.suffix.lower()
    if suffix == ".jsonl":
        with path.open(encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]
    if suffix == ".json":
        payload = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(payload, dict):
            payload = payload.get("records", [])
        if not isinstance(payload, list):
            raise CliError(f"Expected a list of records in {path}", EXIT_COMMAND_ERROR)
        return payload
    return decode(path).rows


def run_export(args: argparse.Namespace) -> int:
    try:
        config = load_config(args)
        schema = get_schema(args.schema)
        if args.records:
            records_path = Path(args.records)
            if not records_path.exists():
                raise CliError(f"File not found: {records_path}", EXIT_COMMAND_ERROR)
            records = load_records(records_path)
        elif config.data_dir:
            records_path = None
            records = [
                record for record in JsonlRowStore(config.data_dir).read(schema.table)
                if record.get("company_id") in (None, args.company)
            ]
        else:
            raise CliError("export needs --records or a data dir", EXIT_COMMAND_ERROR)

        if args.template:
            template = template_store(config).load_export_template(args.company, args.schema, args.template)
        else:
            template = default_export_template(schema)
        if args.format and args.format != template.formatting.file_format:
            template = replace(template, formatting=replace(template.formatting, file_format=args.format))

        exported = ExportFormatter().generate(
            records,
            template,
            company_id=args.company,
            generated_at=output_datetime(),
        )
        if args.output:
            output_path = Path(args.output)
        else:
            output_path = Path(args.out_dir or Path.cwd() / "captable-io-output") / exported.filename
        safe_output_path(output_path, overwrite=args.overwrite)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(exported.content)

        payload = finalize_payload({
            "contract": build_contract("captable_io.export"),
            "run": build_run_summary(
                command="export",
                input_path=records_path,
                output_path=output_path,
                metrics={"row_count": exported.row_count, "content_type": exported.content_type},
            ),
            "template": template.to_dict(),
        })
        if args.json:
            maybe_emit_json_stdout(payload, True)
        else:
            emit_human(f"Exported {exported.row_count} records: {output_path}", quiet=args.quiet)
        return EXIT_SUCCESS
    except Exception as exc:
        eprint(str(exc))
        return classify_exception(exc)


def run_evaluate(args: argparse.Namespace) -> int:
    values: dict[str, str] = {}
    for assignment in args.assignments:
        name, sep, value = assignment.partition("=")
        if not sep or not name:
            raise CliError(f"--set expects FIELD=VALUE, got {assignment!r}", EXIT_COMMAND_ERROR)
        values[name.strip()] = value.strip()
    try:
        result = evaluate(substitute_fields(args.formula, values))
    except FormulaError as exc:
        raise CliError(f"Formula error: {exc}", EXIT_COMMAND_ERROR) from None
    if args.json:
        maybe_emit_json_stdout({"formula": args.formula, "values": values, "result": result}, True)
    else:
        print(int(result) if result.is_integer() else result)
    return EXIT_SUCCESS


def export_template_from_args(args: argparse.Namespace) -> ExportTemplate:
    if args.definition:
        definition_path = Path(args.definition)
        if not definition_path.exists():
            raise CliError(f"File not found: {definition_path}", EXIT_COMMAND_ERROR)
        try:
            template = ExportTemplate.from_dict(json.loads(definition_path.read_text(encoding="utf-8")))
        except (KeyError, TypeError, ValueError) as exc:
            raise CliError(f"Invalid export template {definition_path}: {exc}", EXIT_COMMAND_ERROR) from None
        if args.schema and args.schema != template.target_schema:
            raise CliError(
                f"Template targets {template.target_schema}, not {args.schema}",
                EXIT_COMMAND_ERROR,
            )
        get_schema(template.target_schema)  # unknown schema -> UnknownSchemaError
    elif args.schema:
        template = default_export_template(args.schema)
    else:
        raise CliError("save-export needs a definition file or --schema", EXIT_COMMAND_ERROR)

    if args.name:
        template = replace(template, name=args.name)
    if args.format and args.format != template.formatting.file_format:
        template = replace(template, formatting=replace(template.formatting, file_format=args.format))
    return template


def run_templates(args: argparse.Namespace) -> int:
    try:
        config = load_config(args)
        store = template_store(config)
        if args.templates_command == "save-mapping":
            input_path = require_input(args)
            options = parse_options_from_args(args, args.schema)
            table = decode(input_path, options)
            mappings = map_fields(table.headers, args.schema)
            saved_options = options.to_dict()
            saved_options.pop("target_schema", None)
            store.save_mapping_template(args.company, args.schema, args.name, mappings, saved_options)
            emit_human(f"Saved mapping template '{args.name}' ({len(mappings)} fields): {store.path}", quiet=args.quiet)
            return EXIT_SUCCESS
        if args.templates_command == "show-mapping":
            mappings, options = store.load_mapping_template(args.company, args.schema, args.name)
            maybe_emit_json_stdout({
                "name": args.name,
                "target_schema": args.schema,
                "field_mappings": [m.to_dict() for m in mappings],
                "parse_options": options,
            }, True)
            return EXIT_SUCCESS
        if args.templates_command == "save-export":
            template = export_template_from_args(args)
            store.save_export_template(args.company, template)
            emit_human(
                f"Saved export template '{template.name}' ({template.target_schema}, "
                f"{template.formatting.file_format}): {store.path}",
                quiet=args.quiet,
            )
            return EXIT_SUCCESS
        if args.templates_command == "list-exports":
            templates = store.list_export_templates(args.company, args.schema)
            maybe_emit_json_stdout([
                {
                    "name": template.name,
                    "target_schema": template.target_schema,
                    "file_format": template.formatting.file_format,
                    "columns": template.columns,
                    "description": template.description,
                }
                for template in templates
            ], True)
            return EXIT_SUCCESS
        raise CliError(f"Unknown templates command: {args.templates_command}", EXIT_COMMAND_ERROR)
    except (TemplateNotFoundError, UnknownSchemaError) as exc:
        eprint(str(exc))
        return EXIT_COMMAND_ERROR
    except Exception as exc:
        eprint(str(exc))
        return classify_exception(exc)


def run_version() -> int:
    print(TOOL_VERSION)
    return EXIT_SUCCESS


def main(argv: list[str] | None = None) -> int:
    try:
        parser = build_parser()
        args = parser.parse_args(argv)
        configure_logging(args)
        if args.command == "map":
            return run_map(args)
        if args.command == "parse":
            return run_parse(args)
        if args.command == "import":
            return run_import(args)
        if args.command == "export":
            return run_export(args)
        if args.command == "evaluate":
            return run_evaluate(args)
        if args.command == "templates":
            return run_templates(args)
        if args.command == "version":
            return run_version()
        raise CliError(f"Unknown command: {args.command}", EXIT_COMMAND_ERROR)
    except CliError as exc:
        eprint(str(exc))
        return exc.code


if __name__ == "__main__":
    raise SystemExit(main())
