#!/usr/bin/env python3
"""Sample workbook generator for manual runs and load checks.

Writes a GRN upload workbook (one sheet, first row = headers) with random but
plausible values. ``--error-rate`` blanks a required cell or breaks a quantity in
that share of rows so the validator has something to report.

    python scripts/gen_sample_workbook.py grn.xlsx --rows 500 --error-rate 0.05
    python -m bulkupload.cli grn.xlsx --domain grn --export out.xlsx
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any

import numpy as np
import pandas as pd

GRN_HEADERS = [
    "Sequence Number",
    "GRN Document Number",
    "Document Date",
    "Posting Date",
    "Material",
    "Plant",
    "Storage Location",
    "Movement Type",
    "PO Number",
    "PO Item",
    "Quantity",
    "Entry Unit",
    "Header Text",
]


def generate_grn_rows(rows: int, error_rate: float = 0.0, seed: int = 42) -> list[list[Any]]:
    """Random GRN rows; roughly ``error_rate`` of them carry one defect."""
    rng = np.random.default_rng(seed)
    dates = pd.date_range("2024-01-01", "2024-12-31", periods=120)
    data: list[list[Any]] = []
    document = 5000000000
    for i in range(rows):
        # two to four lines per GRN document
        if i == 0 or rng.random() < 0.35:
            document += 1
        posted = dates[int(rng.integers(0, len(dates)))]
        row = [
            i + 1,
            str(document),
            posted.date(),
            posted.date(),
            f"MAT-{int(rng.integers(1000, 9999))}",
            rng.choice(["1000", "1100", "2000"]),
            rng.choice(["0001", "0002"]),
            "101",
            str(4500000000 + int(rng.integers(0, 9999))),
            int(rng.integers(1, 20)) * 10,
            round(float(rng.uniform(0.5, 500)), 3),
            rng.choice(["EA", "KG", "PC"]),
            f"Receipt {i + 1}",
        ]
        if error_rate and rng.random() < error_rate:
            defect = int(rng.integers(0, 3))
            if defect == 0:
                row[5] = None  # Plant missing
            elif defect == 1:
                row[10] = 12345678901234.1234  # beyond 13,3
            else:
                row[10] = -1  # not positive
        data.append(row)
    return data


def create_workbook(output_path: Path, rows: int, error_rate: float = 0.0, seed: int = 42) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    table = [GRN_HEADERS] + generate_grn_rows(rows, error_rate, seed)
    with pd.ExcelWriter(output_path, engine="openpyxl") as writer:
        pd.DataFrame(table).to_excel(writer, sheet_name="GRN", header=False, index=False)
    print(f"Created workbook: {output_path}")
    print(f"  Rows: {rows} (+ 1 header row)")


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate a sample GRN upload workbook")
    parser.add_argument("output", type=Path, help="Output .xlsx path")
    parser.add_argument("--rows", type=int, default=100, help="Data rows (default: 100)")
    parser.add_argument("--error-rate", type=float, default=0.0, help="Share of defective rows (0-1)")
    parser.add_argument("--seed", type=int, default=42, help="Random seed (default: 42)")
    args = parser.parse_args()

    if args.rows <= 0:
        print("Error: --rows must be positive", file=sys.stderr)
        return 1
    if not 0 <= args.error_rate <= 1:
        print("Error: --error-rate must be between 0 and 1", file=sys.stderr)
        return 1

    create_workbook(args.output, args.rows, args.error_rate, args.seed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
