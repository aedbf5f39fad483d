from __future__ import annotations

import unittest

from captable_io import transforms
from captable_io.errors import UnknownRuleError
from captable_io.transforms import TRANSFORMATIONS, apply_transformation, round_half_up


class ImportTransformTests(unittest.TestCase):
    def test_case_and_trim(self):
        self.assertEqual(transforms.uppercase(" series a "), " SERIES A ")
        self.assertEqual(transforms.lowercase("ADA@Example.COM"), "ada@example.com")
        self.assertEqual(transforms.trim("  Ada  "), "Ada")
        self.assertEqual(transforms.trim(42), "42")

    def test_number_never_raises_and_falls_back_to_zero(self):
        for junk in ("lots", "", "N/A", "--", ".."):
            with self.subTest(junk=junk):
                self.assertEqual(transforms.number(junk), 0)

    def test_number_strips_formatting(self):
        self.assertEqual(transforms.number("1,000,000"), 1000000)
        self.assertEqual(transforms.number("$12.50"), 12.5)
        self.assertEqual(transforms.number(" -3 "), -3)
        self.assertEqual(transforms.number(7.0), 7)
        self.assertEqual(transforms.number(True), 1)

    def test_currency(self):
        self.assertEqual(transforms.currency("$1,234.50"), 1234.5)
        self.assertEqual(transforms.currency("free"), 0)
        self.assertEqual(transforms.currency(3), 3)

    def test_date_formats(self):
        self.assertEqual(transforms.date("01/15/2021"), "2021-01-15")
        self.assertEqual(transforms.date("1-5-2021"), "2021-01-05")
        self.assertEqual(transforms.date("2021-6-3"), "2021-06-03")
        self.assertEqual(transforms.date("2021/06/30"), "2021-06-30")
        self.assertEqual(transforms.date("March 5, 2023"), "2023-03-05")

    def test_date_falls_back_to_none(self):
        self.assertIsNone(transforms.date("not a date"))
        self.assertIsNone(transforms.date(""))
        self.assertIsNone(transforms.date(12))
        self.assertIsNone(transforms.date("02/30/2021"))

    def test_boolean(self):
        for truthy in ("true", "1", "YES", "on", "checked", "y", 1, True):
            self.assertIs(transforms.boolean(truthy), True, truthy)
        for falsy in ("false", "0", "no", "", "maybe", 0, False):
            self.assertIs(transforms.boolean(falsy), False, falsy)

    def test_phone(self):
        self.assertEqual(transforms.phone("555.123.4567"), "(555) 123-4567")
        self.assertEqual(transforms.phone("1-555-123-4567"), "+1 (555) 123-4567")
        self.assertEqual(transforms.phone("ext 12"), "ext 12")

    def test_missing_values_pass_through(self):
        for name in ("uppercase", "lowercase", "trim", "number", "currency", "date", "phone", "capitalize"):
            self.assertIsNone(TRANSFORMATIONS[name](None), name)


class ExportTransformTests(unittest.TestCase):
    def test_capitalize(self):
        self.assertEqual(transforms.capitalize("series a preferred"), "Series A Preferred")

    def test_rounding_is_half_up(self):
        self.assertEqual(transforms.round_2(1.234), 1.23)
        self.assertEqual(transforms.round_2(1.2351), 1.24)
        self.assertEqual(transforms.round_0(2.5), 3)
        self.assertEqual(transforms.round_0("7.49"), 7)
        self.assertEqual(round_half_up(0.125, 2), 0.13)

    def test_percentage_and_cents(self):
        self.assertEqual(transforms.percentage(0.25), 25)
        self.assertEqual(transforms.currency_cents(12345), 123.45)

    def test_non_numeric_input_is_left_alone(self):
        self.assertEqual(transforms.round_2("n/a"), "n/a")
        self.assertEqual(transforms.percentage("n/a"), "n/a")


class ApplyTransformationTests(unittest.TestCase):
    def test_no_transformation_normalizes_only(self):
        self.assertEqual(apply_transformation(5.0, None), 5.0)
        self.assertIsNone(apply_transformation(float("nan"), None))

    def test_unknown_transformation_raises(self):
        with self.assertRaises(UnknownRuleError):
            apply_transformation("x", "reverse")


if __name__ == "__main__":
    unittest.main()
