from __future__ import annotations

import io
import logging
import re
from collections.abc import Callable, Mapping, Sequence
from decimal import Decimal
from typing import Any, Protocol

import pandas as pd
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from ..models.errors import ExportError

"""Export sinks.

A formatter turns ordered records into file bytes. xlsx (pandas + openpyxl) and csv
are built in; hosts plug in other formats (PDF, JSON, ...) with register_formatter().
"""

__all__ = [
    "Formatter",
    "XlsxFormatter",
    "CsvFormatter",
    "register_formatter",
    "get_formatter",
    "available_formats",
]

logger = logging.getLogger(__name__)

Record = Mapping[str, Any]

HEADER_FILL = PatternFill(start_color="354A5F", end_color="354A5F", fill_type="solid")
HEADER_FONT = Font(color="FFFFFF", bold=True, size=11)
THIN_BORDER = Border(
    left=Side(style="thin"),
    right=Side(style="thin"),
    top=Side(style="thin"),
    bottom=Side(style="thin"),
)
_SHEET_NAME_BAD = re.compile(r"[\[\]:*?/\\]")
_MAX_SHEET_NAME = 31


class Formatter(Protocol):
    extension: str

    def write(self, records: Sequence[Record], columns: Sequence[str], metadata: Mapping[str, Any]) -> bytes: ...

    def write_grouped(
        self, groups: Mapping[str, Sequence[Record]], columns: Sequence[str], metadata: Mapping[str, Any]
    ) -> bytes: ...


def _frame(records: Sequence[Record], columns: Sequence[str]) -> pd.DataFrame:
    return pd.DataFrame([[r.get(c) for c in columns] for r in records], columns=list(columns), dtype=object)


def _cell(value: Any) -> Any:
    # openpyxl writes Decimal, but Excel only stores doubles anyway
    if isinstance(value, Decimal):
        return float(value)
    return value


def _sheet_name(name: str, taken: set[str]) -> str:
    base = _SHEET_NAME_BAD.sub("_", str(name)).strip() or "Sheet"
    base = base[:_MAX_SHEET_NAME]
    candidate = base
    n = 2
    while candidate.lower() in taken:
        suffix = f" ({n})"
        candidate = base[: _MAX_SHEET_NAME - len(suffix)] + suffix
        n += 1
    taken.add(candidate.lower())
    return candidate


def _apply_header_style(ws: Any, col_count: int) -> None:
    for col in range(1, col_count + 1):
        cell = ws.cell(row=1, column=col)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.border = THIN_BORDER
        cell.alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)


def _auto_width(ws: Any) -> None:
    """Size columns to their content (capped at 60 chars)."""
    for col in ws.columns:
        max_len = 0
        col_letter = get_column_letter(col[0].column)
        for cell in col:
            if cell.value is not None:
                max_len = max(max_len, min(len(str(cell.value)), 60))
        ws.column_dimensions[col_letter].width = max(max_len + 4, 12)


class XlsxFormatter:
    extension = "xlsx"

    def __init__(self, sheet_name: str = "Export", info_sheet: bool = True) -> None:
        self.sheet_name = sheet_name
        self.info_sheet = info_sheet

    def _write_sheet(self, writer: pd.ExcelWriter, name: str, records: Sequence[Record], columns: Sequence[str]) -> None:
        df = _frame(records, columns).map(_cell)
        df.to_excel(writer, sheet_name=name, index=False)
        ws = writer.sheets[name]
        _apply_header_style(ws, len(columns))
        ws.freeze_panes = "A2"
        _auto_width(ws)

    def _write_info(self, writer: pd.ExcelWriter, metadata: Mapping[str, Any], taken: set[str]) -> None:
        if not self.info_sheet or not metadata:
            return
        name = _sheet_name("Export Info", taken)
        info = pd.DataFrame([[k, str(v)] for k, v in metadata.items()], columns=["Key", "Value"])
        info.to_excel(writer, sheet_name=name, index=False)
        ws = writer.sheets[name]
        _apply_header_style(ws, 2)
        _auto_width(ws)

    def write_sheets(
        self, sheets: Mapping[str, tuple[Sequence[str], Sequence[Record]]], metadata: Mapping[str, Any]
    ) -> bytes:
        """One styled sheet per ``name -> (columns, records)`` entry, in order, then the info sheet."""
        buf = io.BytesIO()
        taken: set[str] = set()
        with pd.ExcelWriter(buf, engine="openpyxl") as writer:
            for name, (columns, records) in sheets.items():
                self._write_sheet(writer, _sheet_name(name, taken), records, columns)
            self._write_info(writer, metadata, taken)
        return buf.getvalue()

    def write(self, records: Sequence[Record], columns: Sequence[str], metadata: Mapping[str, Any]) -> bytes:
        return self.write_sheets({self.sheet_name: (columns, records)}, metadata)

    def write_grouped(
        self, groups: Mapping[str, Sequence[Record]], columns: Sequence[str], metadata: Mapping[str, Any]
    ) -> bytes:
        """One sheet per group, in the order the groups are given."""
        return self.write_sheets({key: (columns, records) for key, records in groups.items()}, metadata)


class CsvFormatter:
    """Plain UTF-8 CSV; metadata is not written."""
    extension = "csv"

    def write(self, records: Sequence[Record], columns: Sequence[str], metadata: Mapping[str, Any]) -> bytes:
        return _frame(records, columns).to_csv(index=False).encode("utf-8")

    def write_grouped(
        self, groups: Mapping[str, Sequence[Record]], columns: Sequence[str], metadata: Mapping[str, Any]
    ) -> bytes:
        flat = [r for records in groups.values() for r in records]
        return self.write(flat, columns, metadata)


_FORMATTERS: dict[str, Callable[[], Formatter]] = {
    "xlsx": XlsxFormatter,
    "csv": CsvFormatter,
}


def register_formatter(name: str, factory: Callable[[], Formatter]) -> None:
    """Register (or replace) the formatter factory used for ``name``."""
    key = name.lower().lstrip(".")
    if key in _FORMATTERS:
        logger.info("replacing export formatter '%s'", key)
    _FORMATTERS[key] = factory


def available_formats() -> list[str]:
    return sorted(_FORMATTERS)


def get_formatter(name: str) -> Formatter:
    key = name.lower().lstrip(".")
    factory = _FORMATTERS.get(key)
    if factory is None:
        raise ExportError(f"unknown export format '{name}' (available: {', '.join(available_formats())})")
    return factory()
