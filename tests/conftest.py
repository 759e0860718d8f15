# Shared pytest fixtures
from __future__ import annotations

import tempfile
from datetime import date
from pathlib import Path

import pandas as pd
import pytest

from bulkupload.config.loader import load_domain
from bulkupload.logging.init import reset_logging

FIXED_TODAY = date(2025, 6, 30)

GRN_HEADERS = [
    "Sequence Number", "GRN Document Number", "Document Date", "Posting Date", "Material", "Plant",
    "Storage Location", "Movement Type", "PO Number", "PO Item", "Quantity", "Entry Unit",
]


def _grn_row(seq: int, document: str = "5000000001", overrides: dict[str, object] | None = None) -> list[object]:
    values = {
        "Sequence Number": seq,
        "GRN Document Number": document,
        "Document Date": "2024-05-01",
        "Posting Date": "2024-05-02",
        "Material": f"MAT-{seq}",
        "Plant": "1000",
        "Storage Location": "0001",
        "Movement Type": "101",
        "PO Number": "4500000001",
        "PO Item": 10,
        "Quantity": 5,
        "Entry Unit": "EA",
    }
    values.update(overrides or {})
    return [values[h] for h in GRN_HEADERS]


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def make_workbook(tmp_path: Path):
    """Factory writing {sheet: rows} to an .xlsx (first row = headers) and returning the path."""
    def _make(name: str, sheets: dict[str, list[list[object]]], directory: Path | None = None) -> Path:
        p = (directory or tmp_path) / name
        with pd.ExcelWriter(p) as writer:
            for sheet, rows in sheets.items():
                df = pd.DataFrame(rows)
                df.to_excel(writer, sheet_name=sheet, header=False, index=False)
        return p
    return _make


@pytest.fixture()
def write_domain(tmp_path: Path):
    """Factory writing a domain YAML and loading it."""
    def _write(text: str, name: str = "custom.yml"):
        p = tmp_path / name
        p.write_text(text, encoding="utf-8")
        return load_domain(p)
    return _write


@pytest.fixture()
def mini_domain(write_domain):
    return write_domain(
        """name: mini
sequence_field: SequenceID
sheets:
  - name: Data
    keywords: [data]
header_aliases:
  SequenceID: [Sequence ID, Seq No]
constraints:
  CompanyCode: {required: true, label: Company Code, max_length: 4}
  Amount: {type: decimal, precision: 13, scale: 3}
"""
    )


@pytest.fixture()
def grn_domain():
    return load_domain("grn")


@pytest.fixture()
def journal_domain():
    return load_domain("customer_journal")


@pytest.fixture()
def invoice_domain():
    return load_domain("supplier_invoice")


@pytest.fixture()
def grn_row():
    """Builder for one GRN data row (list aligned with grn_headers); overrides keyed by header."""
    return _grn_row


@pytest.fixture()
def grn_headers() -> list[str]:
    return list(GRN_HEADERS)


@pytest.fixture()
def today() -> date:
    return FIXED_TODAY
