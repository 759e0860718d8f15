from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import pandas as pd

from ..excel.reader import cell_to_key, is_blank
from ..models.canonical_row import CanonicalRow, RawRow
from ..models.config_models import DomainConfig, SubstructureSpec
from ..models.constraint import FieldType
from ..models.errors import InvalidInputError

"""Row transformer: RawRow -> CanonicalRow.

- sequence id from the domain's sequence column, else row_index + 1
- header aliases -> canonical field names; unknown columns go to ``extra``
- values coerced per constraint type (date / decimal / boolean / string); a value
  that cannot be coerced is set to None and kept in ``rejected`` for the validator
- patterned columns expanded into repeating sub-structures, deduplicated by their
  discriminator (first occurrence wins)
"""

__all__ = [
    "RowTransformer",
    "parse_date",
    "parse_decimal",
    "parse_boolean",
    "dedupe_by_key",
    "EXCEL_EPOCH",
]

logger = logging.getLogger(__name__)

EXCEL_EPOCH = date(1899, 12, 30)  # serial 1 == 1900-01-01 (includes the 1900 leap-year bug)
_MAX_SERIAL = 2958465  # 9999-12-31
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:[T ].*)?$")
_THOUSANDS = re.compile(r"^[+-]?\d{1,3}(,\d{3})+(\.\d+)?$")

TRUE_MARKERS = frozenset({"x", "true", "yes", "y", "1"})
FALSE_MARKERS = frozenset({"false", "no", "n", "0", "-"})


def parse_date(value: Any) -> str | None:
    """Normalize a date cell to YYYY-MM-DD.

    Accepts ISO strings (optionally with a time part), spreadsheet serial numbers and
    native date values. Raises ValueError for anything else.
    """
    if is_blank(value):
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a date: {value!r}")
    if isinstance(value, (pd.Timestamp, datetime)):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        text = value.strip()
        m = _ISO_DATE.match(text)
        if m:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3))).isoformat()
        if not re.fullmatch(r"\d+(\.\d+)?", text):
            raise ValueError(f"not a date: {value!r}")
        value = Decimal(text)
    serial = Decimal(str(value)) if not isinstance(value, Decimal) else value
    if not serial.is_finite() or not (1 <= serial <= _MAX_SERIAL):
        raise ValueError(f"serial date out of range: {value!r}")
    return (EXCEL_EPOCH + timedelta(days=int(serial))).isoformat()


def parse_decimal(value: Any) -> Decimal | None:
    if is_blank(value):
        return None
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        text = str(value).strip()
        if _THOUSANDS.match(text):
            text = text.replace(",", "")
        try:
            result = Decimal(text)
        except InvalidOperation as e:
            raise ValueError(f"not a number: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def parse_boolean(value: Any) -> bool | None:
    if is_blank(value):
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, Decimal)) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in TRUE_MARKERS:
        return True
    if text in FALSE_MARKERS:
        return False
    raise ValueError(f"not a boolean marker: {value!r}")


def _to_text(value: Any) -> str | None:
    if is_blank(value):
        return None
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return str(int(value))
        return format(value, "f")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


_COERCERS = {
    FieldType.DATE: parse_date,
    FieldType.DECIMAL: parse_decimal,
    FieldType.BOOLEAN: parse_boolean,
    FieldType.STRING: _to_text,
}


def dedupe_by_key(items: list[dict[str, Any]], key: str) -> tuple[list[dict[str, Any]], list[str]]:
    """Keep the first item per ``key`` value.

    Items without a value for ``key`` are always kept. Returns (kept, dropped key
    values); the input list is not modified.
    """
    seen: set[str] = set()
    kept: list[dict[str, Any]] = []
    dropped: list[str] = []
    for item in items:
        value = item.get(key)
        if is_blank(value):
            kept.append(item)
            continue
        marker = str(value)
        if marker in seen:
            dropped.append(marker)
            continue
        seen.add(marker)
        kept.append(item)
    return kept, dropped


class RowTransformer:
    def __init__(self, domain: DomainConfig) -> None:
        self.domain = domain
        self._substructures = [(s, re.compile(s.column_pattern)) for s in domain.substructures]
        self._header_sheets = frozenset(s.name for s in domain.sheets if s.role == "header")

    def transform(self, raw: RawRow, row_index: int) -> CanonicalRow:
        """Build the CanonicalRow for the ``row_index``-th (0-based) parsed row."""
        domain = self.domain
        sequence_raw: Any = None
        data: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        patterned: dict[str, list[tuple[re.Match[str], Any]]] = {}
        prebuilt: dict[str, Any] = {}

        for key, value in raw.values.items():
            canonical = domain.resolve_header(key)
            if canonical == domain.sequence_field:
                if sequence_raw is None or is_blank(sequence_raw):
                    sequence_raw = value
                continue
            if canonical is not None:
                if canonical in data:
                    extra[key] = value
                else:
                    data[canonical] = value
                continue
            spec = self._match_substructure(key, value, patterned, prebuilt)
            if spec is None:
                extra[key] = value

        sequence_key = cell_to_key(sequence_raw)
        row = CanonicalRow(
            sequence_id=sequence_key or str(row_index + 1),
            sheet=raw.sheet,
            row_number=raw.row_number,
            group_key=sequence_key if domain.group_by_sequence else None,
            extra=extra,
        )
        for name, value in data.items():
            constraint = domain.constraints.get(name)
            if constraint is None:
                row.data[name] = value
                continue
            try:
                row.data[name] = _COERCERS[constraint.type](value)
            except ValueError:
                row.data[name] = None
                row.rejected[name] = value

        for spec, _pattern in self._substructures:
            items = self._build_items(spec, patterned.get(spec.name, []), prebuilt.get(spec.name))
            if not items:
                continue
            kept, dropped = dedupe_by_key(items, spec.discriminator)
            row.substructures[spec.name] = kept
            if dropped:
                row.duplicates[spec.name] = dropped
                logger.warning(
                    "row %s: dropped %d %s entries with duplicate %s: %s",
                    row.sequence_id, len(dropped), spec.name, spec.discriminator, ", ".join(dropped),
                )
        return row

    def _match_substructure(
        self,
        key: str,
        value: Any,
        patterned: dict[str, list[tuple[re.Match[str], Any]]],
        prebuilt: dict[str, Any],
    ) -> SubstructureSpec | None:
        for spec, pattern in self._substructures:
            if key == spec.name and isinstance(value, list):
                prebuilt[spec.name] = value
                return spec
            m = pattern.match(key)
            if m:
                patterned.setdefault(spec.name, []).append((m, value))
                return spec
        return None

    @staticmethod
    def _build_items(
        spec: SubstructureSpec, matches: list[tuple[re.Match[str], Any]], prebuilt: Any
    ) -> list[dict[str, Any]]:
        if prebuilt is not None:
            return [dict(item) for item in prebuilt if isinstance(item, dict)]
        items: dict[tuple[str, ...], dict[str, Any]] = {}
        filled: set[tuple[str, ...]] = set()
        for m, value in matches:
            attrs = {attr: m.group(group) for group, attr in spec.group_fields.items()}
            ident = tuple(attrs.values())
            item = items.setdefault(ident, dict(attrs))
            item[m.group("field")] = value
            if not is_blank(value):
                filled.add(ident)
        # blocks with no values at all were simply not used in this row
        return [item for ident, item in items.items() if ident in filled]

    def transform_all(self, raws: Iterable[RawRow]) -> list[CanonicalRow]:
        """Transform a batch, guaranteeing unique sequence ids.

        A repeated id becomes '<id>-2', '<id>-3', ... (which is also how the lines of
        one joined transaction are numbered).
        """
        if isinstance(raws, (str, bytes)) or not isinstance(raws, Iterable):
            raise InvalidInputError(f"expected an iterable of RawRow, got {type(raws).__name__}")
        rows: list[CanonicalRow] = []
        taken: set[str] = set()
        for index, raw in enumerate(raws):
            if not isinstance(raw, RawRow):
                raise InvalidInputError(f"item {index} is {type(raw).__name__}, expected RawRow")
            row = self.transform(raw, index)
            if row.sequence_id in taken:
                base = row.sequence_id
                n = 2
                while f"{base}-{n}" in taken:
                    n += 1
                row.sequence_id = f"{base}-{n}"
                # lines of one transaction share its id; anything else is a real duplicate
                if row.group_key is None or raw.sheet in self._header_sheets:
                    logger.warning("sheet '%s' row %s: duplicate sequence id '%s' renamed to '%s'",
                                   raw.sheet, raw.row_number, base, row.sequence_id)
                else:
                    logger.debug("sheet '%s' row %s: line of transaction '%s' numbered '%s'",
                                 raw.sheet, raw.row_number, row.group_key, row.sequence_id)
            taken.add(row.sequence_id)
            rows.append(row)
        logger.info("transformed %d rows", len(rows))
        return rows
