from __future__ import annotations

import copy
import io
import unittest
from datetime import datetime, timezone

import openpyxl

from captable_io.export import (
    CALCULATION_ERROR,
    CSV_CONTENT_TYPE,
    XLSX_CONTENT_TYPE,
    ExportFormatter,
    ExportTemplate,
    TemplateCalculation,
    TemplateField,
    TemplateFilter,
    TemplateFormatting,
    TemplateGrouping,
    apply_filters,
    default_export_template,
    export_filename_stem,
    format_value,
    matches_filter,
)

GENERATED_AT = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

RECORDS = [
    {"name": "Ada", "share_count": 1000000, "share_class": "COMMON", "issue_date": "2021-01-15", "price": 0.5},
    {"name": "Grace", "share_count": 250000, "share_class": "SERIES A", "issue_date": "2021-06-30", "price": 1.25},
    {"name": "Alan", "share_count": 500, "share_class": "COMMON", "issue_date": None, "price": None},
]

FIELDS = (
    TemplateField("name", "Holder", width=25),
    TemplateField("share_count", "Shares", "number", format="integer"),
    TemplateField("share_class", "Class"),
    TemplateField("issue_date", "Issued", "date", width=12),
    TemplateField("price", "Price", "currency"),
)


def cap_table_template(file_format="csv", **changes) -> ExportTemplate:
    base = dict(
        name="Cap Table",
        target_schema="shareholders",
        fields=FIELDS,
        formatting=TemplateFormatting(file_format=file_format),
        grouping=TemplateGrouping("share_class", show_subtotals=True, subtotal_fields=("share_count",)),
        calculations=(TemplateCalculation("value", "{share_count} * {price}", display_name="Value"),),
    )
    base.update(changes)
    return ExportTemplate(**base)


class FilterTests(unittest.TestCase):
    def test_equals_is_loose_about_numbers(self):
        self.assertTrue(matches_filter({"share_count": 500}, TemplateFilter("share_count", "equals", "500")))
        self.assertTrue(matches_filter({"share_count": "500.0"}, TemplateFilter("share_count", "equals", 500)))
        self.assertFalse(matches_filter({"share_class": "COMMON"}, TemplateFilter("share_class", "equals", "common")))

    def test_contains_ignores_case(self):
        self.assertTrue(matches_filter({"name": "Grace Hopper"}, TemplateFilter("name", "contains", "hop")))
        self.assertFalse(matches_filter({"name": None}, TemplateFilter("name", "contains", "hop")))

    def test_numeric_comparisons(self):
        rule = TemplateFilter("share_count", "greater_than", 1000)
        self.assertEqual([r["name"] for r in apply_filters(RECORDS, [rule])], ["Ada", "Grace"])
        rule = TemplateFilter("share_count", "less_than", "1000")
        self.assertEqual([r["name"] for r in apply_filters(RECORDS, [rule])], ["Alan"])
        self.assertFalse(matches_filter({"share_count": "many"}, TemplateFilter("share_count", "greater_than", 1)))

    def test_between_is_inclusive_and_needs_two_bounds(self):
        rule = TemplateFilter("share_count", "between", values=(500, 250000))
        self.assertEqual([r["name"] for r in apply_filters(RECORDS, [rule])], ["Grace", "Alan"])
        self.assertFalse(matches_filter({"share_count": 10}, TemplateFilter("share_count", "between", values=(1,))))

    def test_in_and_not_null(self):
        rule = TemplateFilter("share_class", "in", values=("SERIES A", "SERIES B"))
        self.assertEqual([r["name"] for r in apply_filters(RECORDS, [rule])], ["Grace"])
        rule = TemplateFilter("issue_date", "not_null")
        self.assertEqual([r["name"] for r in apply_filters(RECORDS, [rule])], ["Ada", "Grace"])

    def test_filters_are_anded(self):
        rules = [TemplateFilter("share_class", "equals", "COMMON"), TemplateFilter("share_count", "greater_than", 1000)]
        self.assertEqual([r["name"] for r in apply_filters(RECORDS, rules)], ["Ada"])

    def test_unknown_operator_keeps_the_record(self):
        self.assertTrue(matches_filter({"name": "Ada"}, TemplateFilter("name", "sounds_like", "Ida")))


class FormatValueTests(unittest.TestCase):
    def setUp(self):
        self.formatting = TemplateFormatting()

    def fmt(self, value, data_type, **kwargs):
        return format_value(value, TemplateField("f", "F", data_type, **kwargs), self.formatting)

    def test_currency(self):
        self.assertEqual(self.fmt(1234.5, "currency"), "$1,234.50")
        self.assertEqual(self.fmt(-1234.5, "currency"), "-$1,234.50")
        euro = TemplateFormatting(currency_symbol="€")
        self.assertEqual(format_value(3, TemplateField("f", "F", "currency"), euro), "€3.00")

    def test_percentage_and_number(self):
        self.assertEqual(self.fmt(12.5, "percentage"), "12.50%")
        self.assertEqual(self.fmt(1234.5, "number"), "1,234.5")
        self.assertEqual(self.fmt(3.14159, "number"), "3.14")
        self.assertEqual(self.fmt(2.0, "number"), "2")
        self.assertEqual(self.fmt(1234.5, "number", format="integer"), "1,235")

    def test_non_numeric_values_pass_through(self):
        self.assertEqual(self.fmt("TBD", "number"), "TBD")
        self.assertEqual(self.fmt("TBD", "currency"), "TBD")

    def test_dates(self):
        self.assertEqual(self.fmt("2021-01-15", "date"), "01/15/2021")
        day_first = TemplateFormatting(date_format="DD/MM/YYYY")
        self.assertEqual(format_value("2021-01-15", TemplateField("f", "F", "date"), day_first), "15/01/2021")
        custom = TemplateFormatting(date_format="%d %b %Y")
        self.assertEqual(format_value("2021-01-15", TemplateField("f", "F", "date"), custom), "15 Jan 2021")

    def test_booleans(self):
        self.assertEqual(self.fmt(True, "boolean"), "Yes")
        self.assertEqual(self.fmt("no", "boolean"), "No")
        self.assertEqual(self.fmt("yes", "boolean"), "Yes")

    def test_empty_values_stay_empty(self):
        self.assertIsNone(self.fmt(None, "currency"))
        self.assertEqual(self.fmt("", "date"), "")


class FormatterTests(unittest.TestCase):
    def setUp(self):
        self.formatter = ExportFormatter()

    def test_grouping_is_stable_and_adds_subtotals(self):
        rows = self.formatter.format_rows(RECORDS, cap_table_template())
        self.assertEqual([r.values["Holder"] for r in rows], ["Ada", "Alan", None, "Grace", None])
        self.assertEqual([r.is_subtotal for r in rows], [False, False, True, False, True])

        subtotal = rows[2]
        self.assertEqual(subtotal.values["Class"], "COMMON (Subtotal)")
        self.assertEqual(subtotal.values["Shares"], "1,000,500")
        self.assertEqual(subtotal.raw["share_count"], 1000500)
        self.assertEqual(rows[4].values["Shares"], "250,000")

    def test_descending_sort_without_subtotals(self):
        template = cap_table_template(grouping=TemplateGrouping("share_count", sort_order="desc"))
        rows = self.formatter.format_rows(RECORDS, template)
        self.assertEqual([r.values["Holder"] for r in rows], ["Ada", "Grace", "Alan"])

    def test_group_field_can_be_named_by_display_name(self):
        template = cap_table_template(grouping=TemplateGrouping("Holder"))
        rows = self.formatter.format_rows(RECORDS, template)
        self.assertEqual([r.values["Holder"] for r in rows], ["Ada", "Alan", "Grace"])

    def test_calculations_use_raw_values(self):
        rows = self.formatter.format_rows(RECORDS, cap_table_template(grouping=None))
        self.assertEqual([r.values["Value"] for r in rows], [500000, 312500, 0])

    def test_failed_calculation_renders_error(self):
        template = cap_table_template(
            grouping=None,
            calculations=(TemplateCalculation("ppv", "{share_count} / {price}"),),
        )
        rows = self.formatter.format_rows(RECORDS, template)
        self.assertEqual(rows[0].values["ppv"], 2000000)
        self.assertEqual(rows[2].values["ppv"], CALCULATION_ERROR)

    def test_overly_nested_calculation_renders_error_and_export_continues(self):
        template = cap_table_template(
            grouping=None,
            calculations=(
                TemplateCalculation("deep", "-" * 5000 + "{share_count}"),
                TemplateCalculation("double", "{share_count} * 2"),
            ),
        )
        rows = self.formatter.format_rows(RECORDS, template)
        self.assertEqual([r.values["deep"] for r in rows], [CALCULATION_ERROR] * 3)
        self.assertEqual([r.values["double"] for r in rows], [2000000, 500000, 1000])

    def test_defaults_and_transformations(self):
        template = cap_table_template(
            grouping=None,
            calculations=(),
            fields=(
                TemplateField("name", "Holder", transformation="uppercase"),
                TemplateField("email", "Email", default_value="n/a"),
                TemplateField("share_class", "Class", transformation="no_such_rule"),
            ),
        )
        with self.assertLogs("captable_io.export", level="WARNING"):
            rows = self.formatter.format_rows(RECORDS[:1], template)
        self.assertEqual(rows[0].values, {"Holder": "ADA", "Email": "n/a", "Class": "COMMON"})

    def test_filters_run_before_formatting(self):
        template = cap_table_template(grouping=None, filters=(TemplateFilter("share_class", "equals", "COMMON"),))
        rows = self.formatter.format_rows(RECORDS, template)
        self.assertEqual([r.values["Holder"] for r in rows], ["Ada", "Alan"])

    def test_inputs_are_not_mutated(self):
        records = copy.deepcopy(RECORDS)
        self.formatter.generate(records, cap_table_template(), generated_at=GENERATED_AT)
        self.assertEqual(records, RECORDS)


class GenerateTests(unittest.TestCase):
    def setUp(self):
        self.formatter = ExportFormatter()

    def test_csv_output(self):
        result = self.formatter.generate(RECORDS, cap_table_template(), company_id="co-1", generated_at=GENERATED_AT)
        self.assertEqual(result.filename, "Cap_Table_20240301T120000.csv")
        self.assertEqual(result.content_type, CSV_CONTENT_TYPE)
        self.assertEqual(result.row_count, 3)
        expected = (
            "# Export: Cap Table\n"
            "# Generated: 2024-03-01T12:00:00+00:00\n"
            "# Records: 3\n"
            "# Company ID: co-1\n"
            "# Target Schema: shareholders\n"
            "Holder,Shares,Class,Issued,Price,Value\n"
            'Ada,"1,000,000",COMMON,01/15/2021,$0.50,500000\n'
            "Alan,500,COMMON,,,0\n"
            ',"1,000,500",COMMON (Subtotal),,,0\n'
            'Grace,"250,000",SERIES A,06/30/2021,$1.25,312500\n'
            ',"250,000",SERIES A (Subtotal),,,0\n'
        )
        self.assertEqual(result.content.decode("utf-8"), expected)

    def test_csv_output_is_deterministic(self):
        first = self.formatter.generate(RECORDS, cap_table_template(), generated_at=GENERATED_AT)
        second = self.formatter.generate(RECORDS, cap_table_template(), generated_at=GENERATED_AT)
        self.assertEqual(first.content, second.content)

    def test_csv_without_metadata_or_headers(self):
        template = cap_table_template(
            grouping=None,
            calculations=(),
            formatting=TemplateFormatting(file_format="csv", include_headers=False, include_metadata=False),
        )
        content = self.formatter.generate(RECORDS[:1], template, generated_at=GENERATED_AT).content.decode("utf-8")
        self.assertEqual(content, 'Ada,"1,000,000",COMMON,01/15/2021,$0.50\n')

    def test_xlsx_output(self):
        result = self.formatter.generate(
            RECORDS, cap_table_template("xlsx"), company_id="co-1", generated_at=GENERATED_AT
        )
        self.assertEqual(result.filename, "Cap_Table_20240301T120000.xlsx")
        self.assertEqual(result.content_type, XLSX_CONTENT_TYPE)

        wb = openpyxl.load_workbook(io.BytesIO(result.content))
        self.assertEqual(wb.sheetnames, ["Data", "Export Info"])
        data = wb["Data"]
        values = [list(row) for row in data.iter_rows(values_only=True)]
        self.assertEqual(values[0], ["Holder", "Shares", "Class", "Issued", "Price", "Value"])
        self.assertEqual(values[1], ["Ada", "1,000,000", "COMMON", "01/15/2021", "$0.50", 500000])
        self.assertEqual(values[3][2], "COMMON (Subtotal)")
        self.assertTrue(data.cell(row=4, column=1).font.bold)
        self.assertFalse(data.cell(row=2, column=1).font.bold)
        self.assertEqual(data.column_dimensions["A"].width, 25)
        self.assertEqual(data.column_dimensions["B"].width, 15)

        info = dict(wb["Export Info"].iter_rows(min_row=2, values_only=True))
        self.assertEqual(info["Export Template"], "Cap Table")
        self.assertEqual(info["Record Count"], 3)
        self.assertEqual(info["Company ID"], "co-1")

    def test_empty_export_still_has_headers(self):
        result = self.formatter.generate([], cap_table_template(), generated_at=GENERATED_AT)
        self.assertEqual(result.row_count, 0)
        self.assertTrue(result.content.decode("utf-8").endswith("Holder,Shares,Class,Issued,Price,Value\n"))


class TemplateTests(unittest.TestCase):
    def test_default_template_follows_schema_columns(self):
        template = default_export_template("shareholders")
        self.assertEqual(template.name, "SHAREHOLDERS Export")
        self.assertEqual(template.formatting.file_format, "xlsx")
        self.assertEqual(template.columns[:3], ["Shareholder Name", "Email", "Shares Owned"])

    def test_default_template_needs_a_schema(self):
        with self.assertRaises(ValueError):
            default_export_template(None)

    def test_unsupported_format_is_rejected(self):
        with self.assertRaises(ValueError):
            TemplateFormatting(file_format="pdf")

    def test_dict_round_trip(self):
        template = cap_table_template(filters=(TemplateFilter("share_count", "between", values=(1, 10)),))
        self.assertEqual(ExportTemplate.from_dict(template.to_dict()), template)

    def test_filename_stem(self):
        self.assertEqual(export_filename_stem("  Board  Pack ", GENERATED_AT), "Board_Pack_20240301T120000")


if __name__ == "__main__":
    unittest.main()
