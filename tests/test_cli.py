from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
CLI = [sys.executable, "-m", "captable_io.cli"]
FIXED_STAMP = "20260301T010203Z"
SHAREHOLDERS = "sample-data/shareholders.csv"
TRANSACTIONS = "sample-data/transactions.csv"


def run_cli(*args: str, env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    merged_env = dict(os.environ)
    merged_env["CAPTABLE_IO_OUTPUT_STAMP"] = FIXED_STAMP
    for name in ("CAPTABLE_IO_REST_URL", "CAPTABLE_IO_DATA_DIR", "CAPTABLE_IO_TEMPLATE_PATH"):
        merged_env.pop(name, None)
    if env:
        merged_env.update(env)
    return subprocess.run(
        [*CLI, *args],
        cwd=ROOT,
        capture_output=True,
        text=True,
        env=merged_env,
    )


class ParseCommandTests(unittest.TestCase):
    def test_parse_with_validation_errors_returns_exit_3(self):
        proc = run_cli("parse", SHAREHOLDERS, "--schema", "shareholders", "--json")
        self.assertEqual(proc.returncode, 3, proc.stderr)
        payload = json.loads(proc.stdout)
        self.assertEqual(payload["contract"]["name"], "captable_io.parse")
        self.assertEqual(payload["run"]["generated_at"], "2026-03-01T01:02:03Z")
        self.assertEqual(payload["run"]["status"], "errors")
        self.assertEqual(payload["result"]["summary"]["errors"], 2)
        self.assertEqual(payload["result"]["summary"]["valid_rows"], 3)
        self.assertEqual({e["row"] for e in payload["result"]["errors"]}, {3})

    def test_parse_clean_file_returns_exit_0(self):
        proc = run_cli("parse", TRANSACTIONS, "--schema", "transactions")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertIn("Valid rows: 3", proc.stderr)
        self.assertIn("Holder -> shareholder_name", proc.stderr)

    def test_parse_writes_output_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            output = Path(tmpdir) / "result.json"
            proc = run_cli("parse", TRANSACTIONS, "--schema", "transactions", "--output", str(output), "-q")
            self.assertEqual(proc.returncode, 0, proc.stderr)
            payload = json.loads(output.read_text(encoding="utf-8"))
            self.assertEqual(payload["result"]["row_count"], 3)
            self.assertEqual(payload["run"]["output_file"], str(output))

    def test_unreadable_workbook_returns_exit_2(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            corrupt = Path(tmpdir) / "corrupt.xlsx"
            corrupt.write_bytes(b"this is not a zip archive")
            proc = run_cli("parse", str(corrupt), "--schema", "shareholders")
            self.assertEqual(proc.returncode, 2)
            self.assertIn("Parse error", proc.stderr)

    def test_missing_file_returns_exit_1(self):
        proc = run_cli("parse", "sample-data/nope.csv")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("File not found", proc.stderr)

    def test_unknown_schema_is_an_argument_error(self):
        proc = run_cli("parse", SHAREHOLDERS, "--schema", "options")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("invalid choice", proc.stderr)


class MapCommandTests(unittest.TestCase):
    def test_map_json(self):
        proc = run_cli("map", SHAREHOLDERS, "--schema", "shareholders", "--json")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        targets = [m["target_field"] for m in payload["field_mappings"]]
        self.assertEqual(
            targets,
            ["name", "email", "share_count", "share_class", "certificate_number", "issue_date"],
        )

    def test_map_without_schema_is_identity(self):
        proc = run_cli("map", TRANSACTIONS, "--json")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        payload = json.loads(proc.stdout)
        for mapping in payload["field_mappings"]:
            self.assertEqual(mapping["source_field"], mapping["target_field"])
            self.assertEqual(mapping["confidence"], 0.5)


class ImportExportCommandTests(unittest.TestCase):
    def test_import_with_bad_rows_returns_exit_4_and_export_reads_the_store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            data_dir = Path(tmpdir) / "data"
            proc = run_cli(
                "import", SHAREHOLDERS,
                "--schema", "shareholders",
                "--company", "co-1",
                "--data-dir", str(data_dir),
                "--job-id", "job-1",
                "--json",
            )
            self.assertEqual(proc.returncode, 4, proc.stderr)
            payload = json.loads(proc.stdout)
            self.assertEqual(payload["job"]["status"], "completed_with_errors")
            self.assertEqual(payload["job"]["processed_records"], 4)
            self.assertEqual(payload["run"]["metrics"]["inserted_records"], 3)
            lines = (data_dir / "shareholders.jsonl").read_text(encoding="utf-8").splitlines()
            self.assertEqual(len(lines), 3)

            output = Path(tmpdir) / "holders.csv"
            proc = run_cli(
                "export",
                "--schema", "shareholders",
                "--company", "co-1",
                "--data-dir", str(data_dir),
                "--format", "csv",
                "--output", str(output),
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            text = output.read_text(encoding="utf-8")
            self.assertTrue(text.startswith("# Export: SHAREHOLDERS Export\n# Generated: 2026-03-01T01:02:03+00:00\n"))
            self.assertIn("# Records: 3\n", text)
            self.assertIn('Ada Lovelace,ada@example.com,"1,000,000",COMMON,CS-001,01/15/2021', text)

            proc = run_cli(
                "export",
                "--schema", "shareholders",
                "--company", "co-1",
                "--data-dir", str(data_dir),
                "--format", "csv",
                "--output", str(output),
            )
            self.assertEqual(proc.returncode, 1)
            self.assertIn("Refusing to overwrite", proc.stderr)

    def test_clean_import_returns_exit_0(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            proc = run_cli(
                "import", TRANSACTIONS,
                "--schema", "transactions",
                "--company", "co-1",
                "--data-dir", tmpdir,
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertIn("Status: completed", proc.stderr)

    def test_export_records_file_to_xlsx_uses_stamped_filename(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            records = Path(tmpdir) / "records.json"
            records.write_text(json.dumps([{"name": "Ada", "share_count": 10, "share_class": "COMMON"}]), encoding="utf-8")
            proc = run_cli(
                "export",
                "--schema", "shareholders",
                "--company", "co-1",
                "--records", str(records),
                "--out", tmpdir,
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertTrue((Path(tmpdir) / "SHAREHOLDERS_Export_20260301T010203.xlsx").exists())

    def test_second_import_warns_about_shareholders_already_stored(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            common = ("--schema", "shareholders", "--company", "co-1", "--data-dir", tmpdir, "--json")
            first = run_cli("import", SHAREHOLDERS, *common, "--job-id", "job-1")
            self.assertEqual(first.returncode, 4, first.stderr)
            self.assertEqual(json.loads(first.stdout)["warnings"], [])

            second = run_cli("import", SHAREHOLDERS, *common, "--job-id", "job-2")
            self.assertEqual(second.returncode, 4, second.stderr)
            payload = json.loads(second.stdout)
            self.assertEqual(
                [(w["row"], w["value"]) for w in payload["warnings"]],
                [(1, "Ada Lovelace"), (2, "Grace Hopper"), (4, "Katherine Johnson")],
            )
            self.assertEqual({w["message"] for w in payload["warnings"]}, {"Shareholder with this name already exists"})
            self.assertEqual(payload["run"]["metrics"]["warnings"], 3)

            proc = run_cli("parse", SHAREHOLDERS, "--schema", "shareholders", "--company", "co-1", "--data-dir", tmpdir, "--json")
            self.assertEqual(proc.returncode, 3, proc.stderr)
            result = json.loads(proc.stdout)["result"]
            self.assertEqual(result["summary"]["warnings"], 3)
            self.assertEqual(
                sorted(e["row"] for e in result["errors"] if e["severity"] == "warning"),
                [1, 2, 4],
            )

    def test_export_without_records_source_returns_exit_1(self):
        proc = run_cli("export", "--schema", "shareholders", "--company", "co-1")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("needs --records", proc.stderr)


class EvaluateCommandTests(unittest.TestCase):
    def test_evaluate_respects_precedence(self):
        proc = run_cli("evaluate", "2+3*4")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertEqual(proc.stdout.strip(), "14")

    def test_evaluate_with_fields(self):
        proc = run_cli("evaluate", "{shares} * {price}", "--set", "shares=10", "--set", "price=2.5")
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertEqual(proc.stdout.strip(), "25")

    def test_evaluate_division_by_zero_returns_exit_1(self):
        proc = run_cli("evaluate", "1/0")
        self.assertEqual(proc.returncode, 1)
        self.assertIn("Formula error: Division by zero", proc.stderr)


class TemplateCommandTests(unittest.TestCase):
    def test_save_show_and_reuse_mapping_template(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = str(Path(tmpdir) / "templates.json")
            proc = run_cli(
                "templates", "save-mapping", TRANSACTIONS,
                "--schema", "transactions",
                "--company", "co-1",
                "--name", "ledger",
                "--templates", store,
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)

            proc = run_cli(
                "templates", "show-mapping",
                "--schema", "transactions",
                "--company", "co-1",
                "--name", "ledger",
                "--templates", store,
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            payload = json.loads(proc.stdout)
            self.assertEqual(payload["parse_options"]["delimiter"], None)
            self.assertIn(
                {"source_field": "Quantity", "target_field": "quantity"},
                [{k: m[k] for k in ("source_field", "target_field")} for m in payload["field_mappings"]],
            )

            proc = run_cli(
                "parse", TRANSACTIONS,
                "--schema", "transactions",
                "--company", "co-1",
                "--template", "ledger",
                "--templates", store,
                "--json",
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertEqual(json.loads(proc.stdout)["result"]["confidence"], 1.0)

    def test_show_missing_template_returns_exit_1(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            proc = run_cli(
                "templates", "show-mapping",
                "--schema", "transactions",
                "--company", "co-1",
                "--name", "ghost",
                "--templates", str(Path(tmpdir) / "templates.json"),
            )
            self.assertEqual(proc.returncode, 1)
            self.assertIn("ghost", proc.stderr)

    def test_save_list_and_use_export_template(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = str(Path(tmpdir) / "templates.json")
            proc = run_cli(
                "templates", "save-export",
                "--schema", "shareholders",
                "--company", "co-1",
                "--name", "Board Pack",
                "--format", "csv",
                "--templates", store,
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertIn("Saved export template 'Board Pack' (shareholders, csv)", proc.stderr)

            proc = run_cli("templates", "list-exports", "--company", "co-1", "--templates", store)
            self.assertEqual(proc.returncode, 0, proc.stderr)
            (entry,) = json.loads(proc.stdout)
            self.assertEqual((entry["name"], entry["target_schema"], entry["file_format"]), ("Board Pack", "shareholders", "csv"))
            self.assertEqual(entry["columns"][0], "Shareholder Name")

            records = Path(tmpdir) / "records.json"
            records.write_text(json.dumps([{"name": "Ada", "share_count": 10, "share_class": "COMMON"}]), encoding="utf-8")
            output = Path(tmpdir) / "board.csv"
            proc = run_cli(
                "export",
                "--schema", "shareholders",
                "--company", "co-1",
                "--records", str(records),
                "--template", "Board Pack",
                "--templates", store,
                "--output", str(output),
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertTrue(output.read_text(encoding="utf-8").startswith("# Export: Board Pack\n"))

    def test_save_export_from_definition_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = str(Path(tmpdir) / "templates.json")
            definition = Path(tmpdir) / "ledger.json"
            definition.write_text(json.dumps({
                "name": "Ledger",
                "target_schema": "transactions",
                "fields": [{"source_field": "shareholder_name", "display_name": "Holder"}],
                "formatting": {"file_format": "xlsx"},
            }), encoding="utf-8")
            proc = run_cli("templates", "save-export", str(definition), "--company", "co-1", "--templates", store)
            self.assertEqual(proc.returncode, 0, proc.stderr)

            proc = run_cli(
                "templates", "list-exports",
                "--company", "co-1",
                "--schema", "transactions",
                "--templates", store,
            )
            self.assertEqual(proc.returncode, 0, proc.stderr)
            self.assertEqual(json.loads(proc.stdout), [{
                "name": "Ledger",
                "target_schema": "transactions",
                "file_format": "xlsx",
                "columns": ["Holder"],
                "description": "",
            }])

            proc = run_cli("templates", "save-export", str(definition), "--schema", "shareholders", "--company", "co-1", "--templates", store)
            self.assertEqual(proc.returncode, 1)
            self.assertIn("Template targets transactions", proc.stderr)

    def test_save_export_needs_definition_or_schema(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            proc = run_cli("templates", "save-export", "--company", "co-1", "--templates", str(Path(tmpdir) / "t.json"))
            self.assertEqual(proc.returncode, 1)
            self.assertIn("needs a definition file or --schema", proc.stderr)
            self.assertFalse((Path(tmpdir) / "t.json").exists())


class VersionCommandTests(unittest.TestCase):
    def test_version(self):
        proc = run_cli("version")
        self.assertEqual(proc.returncode, 0)
        self.assertEqual(proc.stdout.strip(), "0.1.0")


if __name__ == "__main__":
    unittest.main()
