from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from ..models.config_models import DomainConfig
from ..models.constraint import FieldConstraint
from .sinks import XlsxFormatter

"""Blank upload templates.

A template has one sheet per domain sheet, headed with the labels the parser
resolves back to canonical fields, plus a "Field Definitions" sheet listing each
field's rules so users can fill the workbook without reading the registry.
"""

__all__ = [
    "build_template",
    "write_template",
    "field_definitions",
    "DEFINITIONS_SHEET",
]

logger = logging.getLogger(__name__)

DEFINITIONS_SHEET = "Field Definitions"
DEFINITION_COLUMNS = ["Sheet", "Column", "Field", "Required", "Type", "Rules"]


def _rules(c: FieldConstraint) -> str:
    parts = []
    if c.min_length is not None and c.max_length is not None:
        parts.append(f"length {c.min_length}-{c.max_length}")
    elif c.max_length is not None:
        parts.append(f"max length {c.max_length}")
    if c.precision is not None:
        parts.append(f"precision {c.precision}, scale {c.scale or 0}")
    if c.min_value is not None:
        parts.append(f">= {c.min_value}")
    if c.max_value is not None:
        parts.append(f"<= {c.max_value}")
    if c.allowed_values:
        parts.append("one of " + ", ".join(sorted(c.allowed_values)))
    if c.pattern:
        parts.append(f"pattern {c.pattern}")
    return "; ".join(parts)


def _header(domain: DomainConfig, name: str) -> str:
    if name == domain.sequence_field:
        return name
    return domain.constraints.label_for(name)


def field_definitions(domain: DomainConfig) -> list[dict[str, Any]]:
    records = []
    for sheet in domain.sheets:
        for name in domain.sheet_columns(sheet):
            c = domain.constraints.get(name)
            records.append({
                "Sheet": sheet.name,
                "Column": _header(domain, name),
                "Field": name,
                "Required": "Yes" if name == domain.sequence_field or (c and c.required) else "No",
                "Type": c.type.value if c else "string",
                "Rules": _rules(c) if c else "",
            })
    return records


def build_template(domain: DomainConfig, definitions: bool = True) -> bytes:
    """Empty xlsx for ``domain``: its sheets with labelled headers and no data rows."""
    sheets: dict[str, tuple[list[str], list[dict[str, Any]]]] = {}
    for sheet in domain.sheets:
        headers = [_header(domain, name) for name in domain.sheet_columns(sheet)]
        sheets[sheet.name] = (headers, [])
    if definitions:
        sheets[DEFINITIONS_SHEET] = (DEFINITION_COLUMNS, field_definitions(domain))
    return XlsxFormatter(info_sheet=False).write_sheets(sheets, {})


def write_template(domain: DomainConfig, path: Path) -> Path:
    if path.suffix.lower() != ".xlsx":
        path = path.with_suffix(".xlsx")
    data = build_template(domain)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    logger.info("template for %s written to %s", domain.title, path)
    return path
