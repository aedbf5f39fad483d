#!/usr/bin/env python3
"""
Generates sample-data/cap_table.xlsx for trying the spreadsheet import path.

Run from the repo root:
    python sample-data/generate_xlsx.py

What is in it:
  Sheet "Cover"
    - A title block above the data, so the first sheet is not the table
  Sheet "Holders"
    - Two banner rows before the header (use --skip-rows 2)
    - Native date cells in "Grant Date"
    - A formula column "Total" whose cached value is what gets imported
    - A holder with an unparseable share count
  Sheet "Classes"
    - A small share-class table
"""

from datetime import date
from pathlib import Path

import openpyxl

OUTPUT = Path(__file__).parent / "cap_table.xlsx"

wb = openpyxl.Workbook()

cover = wb.active
cover.title = "Cover"
cover.append(["Acme Robotics, Inc."])
cover.append(["Capitalization table as of 2024-01-01"])

holders = wb.create_sheet("Holders")
holders.append(["Acme Robotics, Inc. cap table"])
holders.append(["Confidential"])
holders.append(["Holder", "Email", "Shares", "Share Class", "Grant Date", "Price", "Total"])
rows = [
    ["Ada Lovelace", "ada@example.com", 1_000_000, "Common", date(2021, 1, 15), 0.0001],
    ["Grace Hopper", "grace@example.com", 250_000, "Series A", date(2021, 6, 30), 1.25],
    ["Alan Turing", "alan@example.com", "TBD", "Common", date(2022, 3, 1), 2.5],
]
for index, row in enumerate(rows, start=4):
    holders.append(row + [f"=C{index}*F{index}"])

classes = wb.create_sheet("Classes")
classes.append(["Class Name", "Authorized Shares", "Par Value", "Liquidation Preference"])
classes.append(["Common", 10_000_000, 0.0001, 1])
classes.append(["Series A", 2_000_000, 0.0001, 1.5])

wb.save(OUTPUT)
print(f"Wrote {OUTPUT}")
