from __future__ import annotations

import logging
import numbers
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

import pandas as pd

from ..models.canonical_row import RawRow
from ..models.config_models import DomainConfig, SheetSpec, normalize_sheet_name
from ..models.errors import MissingSheetError

"""Workbook reading and sheet parsing.

read_workbook() buffers the whole file (pandas, openpyxl engine for xlsx) before any
parsing starts. parse_workbook() then:
1. resolves every expected sheet (exact name, normalized name, keyword containment)
   and fails with MissingSheetError listing *all* missing sheets
2. takes the first row of each sheet as header and maps it through the alias table
3. drops rows whose non-metadata cells are all blank
4. joins line sheets to their header sheet on the join key (multi-sheet domains)

Cells are normalized without float rounding: floats go through their shortest repr
into Decimal, date cells become YYYY-MM-DD strings.
"""

__all__ = [
    "Workbook",
    "read_workbook",
    "resolve_sheet",
    "parse_workbook",
    "SheetParser",
    "cell_to_key",
    "is_blank",
]

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES = (".xlsx", ".xlsm", ".xls", ".csv")


@dataclass
class Workbook:
    name: str
    sheets: dict[str, pd.DataFrame]  # raw frames, header=None

    @property
    def sheet_names(self) -> list[str]:
        return list(self.sheets)

    def sheet_rows(self, sheet_name: str) -> list[list[Any]]:
        df = self.sheets[sheet_name]
        return [list(r) for r in df.itertuples(index=False, name=None)]


def read_workbook(path: Path, keep_na_strings: list[str] | None = None) -> Workbook:
    """Read an .xlsx/.xls/.csv file into raw frames keyed by sheet name.

    Parameters
    ----------
    path: workbook path; a CSV becomes a single sheet named after the file stem
    keep_na_strings: strings pandas would turn into NaN but that are real values
        here (e.g. 'NA' as a country code)
    """
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ValueError(f"unsupported file type '{path.suffix}' (expected one of {', '.join(SUPPORTED_SUFFIXES)})")

    if suffix == ".csv":
        # text only: no float parsing at all
        df = pd.read_csv(path, header=None, dtype=str, keep_default_na=False)
        return Workbook(name=path.name, sheets={path.stem: df})

    import pandas._libs.parsers as parsers

    if keep_na_strings:
        na_values = list(parsers.STR_NA_VALUES - set(keep_na_strings))
        keep_default_na = False
    else:
        na_values = None
        keep_default_na = True

    sheets: dict[str, pd.DataFrame] = {}
    with pd.ExcelFile(path) as xls:
        for name in xls.sheet_names:
            sheets[str(name)] = xls.parse(
                name, header=None, dtype=object, keep_default_na=keep_default_na, na_values=na_values
            )
    return Workbook(name=path.name, sheets=sheets)


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, float):
        return value != value  # NaN
    return value is pd.NaT


def _normalize_cell(value: Any) -> Any:
    if is_blank(value):
        return None
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return value
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        return Decimal(str(float(value)))
    return value


def cell_to_key(value: Any) -> str | None:
    """Render a cell used as identifier (sequence / join key): 5.0 -> '5'."""
    value = _normalize_cell(value)
    if value is None:
        return None
    if isinstance(value, Decimal) and value == value.to_integral_value():
        return str(int(value))
    return str(value)


def resolve_sheet(sheet_names: Sequence[str], spec: SheetSpec, taken: Iterable[str] = (), *, fuzzy: bool = True) -> str | None:
    """Find the workbook sheet for ``spec``; exact name first, keywords last."""
    taken = set(taken)
    available = [n for n in sheet_names if n not in taken]
    if spec.name in available:
        return spec.name
    target = normalize_sheet_name(spec.name)
    for n in available:
        if normalize_sheet_name(n) == target:
            return n
    if not fuzzy:
        return None
    for n in available:
        normalized = normalize_sheet_name(n)
        if any(k and k in normalized for k in spec.keywords):
            return n
    return None


def _resolve_all(workbook: Workbook, specs: Sequence[SheetSpec]) -> dict[str, str]:
    resolved: dict[str, str] = {}
    # exact matches first so keyword matching cannot steal a sheet named for a later spec
    for fuzzy in (False, True):
        for spec in specs:
            if spec.name in resolved:
                continue
            found = resolve_sheet(workbook.sheet_names, spec, resolved.values(), fuzzy=fuzzy)
            if found is not None:
                resolved[spec.name] = found
    missing = [s.name for s in specs if s.required and s.name not in resolved]
    if missing:
        raise MissingSheetError(workbook.sheet_names, missing)
    return resolved


def _header_text(cell: Any) -> str:
    if is_blank(cell):
        return ""
    key = cell_to_key(cell)
    return key.strip() if key else ""


def _read_sheet(
    workbook: Workbook,
    actual_name: str,
    spec: SheetSpec,
    header_resolver: Callable[[str], str | None] | None,
    keep_header: Callable[[str], bool],
    metadata_fields: frozenset[str],
) -> list[RawRow]:
    table = workbook.sheet_rows(actual_name)
    if not table:
        logger.warning("sheet '%s' is empty", actual_name)
        return []

    columns: list[tuple[int, str]] = []
    used: set[str] = set()
    for idx, cell in enumerate(table[0]):
        text = _header_text(cell)
        if not text:
            continue
        canonical = header_resolver(text) if header_resolver else None
        if canonical is None:
            if not keep_header(text):
                logger.debug("sheet '%s': dropping unmapped header '%s'", actual_name, text)
                continue
            key = text
        elif canonical in used:
            logger.warning(
                "sheet '%s': header '%s' maps to '%s' which is already taken; kept as '%s'",
                actual_name, text, canonical, text,
            )
            key = text
        else:
            key = canonical
        if key in used:
            key = f"{text} ({idx + 1})"
        used.add(key)
        columns.append((idx, key))

    rows: list[RawRow] = []
    for offset, raw in enumerate(table[1:], start=2):
        values = {key: (_normalize_cell(raw[idx]) if idx < len(raw) else None) for idx, key in columns}
        if all(is_blank(v) for k, v in values.items() if k not in metadata_fields):
            continue
        rows.append(RawRow(sheet=spec.name, row_number=offset, values=values))
    return rows


def _join(
    specs: Sequence[SheetSpec], rows_by_sheet: dict[str, list[RawRow]], join_key: str
) -> list[RawRow]:
    header_spec = next(s for s in specs if s.role == "header")
    line_specs = [s for s in specs if s.role == "lines"]
    lines = [r for s in line_specs for r in rows_by_sheet.get(s.name, [])]

    joined: list[RawRow] = []
    claimed: set[int] = set()
    seen_keys: set[str] = set()
    for header in rows_by_sheet.get(header_spec.name, []):
        key = cell_to_key(header.values.get(join_key))
        if key is None or key in seen_keys:
            if key is not None:
                logger.warning("sheet '%s' row %d: duplicate %s '%s'", header.sheet, header.row_number, join_key, key)
            joined.append(header)
            continue
        seen_keys.add(key)
        matched = [(i, line) for i, line in enumerate(lines) if cell_to_key(line.values.get(join_key)) == key]
        if not matched:
            joined.append(header)
            continue
        for i, line in matched:
            claimed.add(i)
            merged = dict(header.values)
            for k, v in line.values.items():
                if not is_blank(v) or k not in merged:
                    merged[k] = v
            joined.append(RawRow(sheet=line.sheet, row_number=line.row_number, values=merged))

    for i, line in enumerate(lines):
        if i not in claimed:
            logger.warning(
                "sheet '%s' row %d: no header row for %s '%s'",
                line.sheet, line.row_number, join_key, cell_to_key(line.values.get(join_key)),
            )
            joined.append(line)
    return joined


def parse_workbook(
    workbook: Workbook,
    expected_sheets: Sequence[SheetSpec | str],
    header_resolver: Callable[[str], str | None] | None = None,
    *,
    join_key: str | None = None,
    keep_header: Callable[[str], bool] | None = None,
    metadata_fields: Iterable[str] = (),
) -> list[RawRow]:
    """Turn a workbook into ordered RawRows.

    Args:
        workbook: buffered workbook
        expected_sheets: sheet specs (or plain names) in processing order
        header_resolver: header text -> canonical field (None = unmapped)
        join_key: canonical column joining line sheets to the header sheet
        keep_header: decides whether an unmapped header is kept (default: keep)
        metadata_fields: columns ignored when deciding whether a row is empty

    Raises:
        MissingSheetError: a required sheet could not be resolved
    """
    specs = [SheetSpec(name=s) if isinstance(s, str) else s for s in expected_sheets]
    resolved = _resolve_all(workbook, specs)
    keep = keep_header or (lambda _h: True)
    meta = frozenset(metadata_fields)

    rows_by_sheet: dict[str, list[RawRow]] = {}
    for spec in specs:
        actual = resolved.get(spec.name)
        if actual is None:
            continue
        if actual != spec.name:
            logger.info("using sheet '%s' for '%s'", actual, spec.name)
        rows_by_sheet[spec.name] = _read_sheet(workbook, actual, spec, header_resolver, keep, meta)

    if join_key and any(s.role == "header" for s in specs):
        return _join(specs, rows_by_sheet, join_key)
    return [r for spec in specs for r in rows_by_sheet.get(spec.name, [])]


class SheetParser:
    """parse_workbook() wired to one domain's sheets, aliases and policies."""

    def __init__(self, domain: DomainConfig) -> None:
        self.domain = domain
        self._patterns = [re.compile(s.column_pattern) for s in domain.substructures]

    def _keep_header(self, header: str) -> bool:
        if self.domain.unmapped_headers == "keep":
            return True
        return any(p.match(header) for p in self._patterns)

    def parse(self, workbook: Workbook) -> list[RawRow]:
        return parse_workbook(
            workbook,
            self.domain.sheets,
            self.domain.resolve_header,
            join_key=self.domain.join_key,
            keep_header=self._keep_header,
            metadata_fields=self.domain.metadata_fields,
        )
