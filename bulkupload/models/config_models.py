from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from .canonical_row import Severity
from .constraint import ConstraintRegistry
from .submission import SubmissionMode

"""Config dataclasses for the bulk upload pipeline.

Two kinds of configuration exist:
- Settings: process-wide knobs (tolerance, submission mode/timeout, export defaults),
  loaded from config/upload.yml.
- DomainConfig: everything that makes one upload type (GRN, asset master, ...)
  different from another, loaded from bulkupload/config/domains/<name>.yml.

Both are produced by bulkupload.config.loader after JSON schema validation.
"""

__all__ = [
    "ValidationSettings",
    "SubmissionSettings",
    "ExportSettings",
    "Settings",
    "SheetSpec",
    "SubstructureSpec",
    "ExportPolicy",
    "DomainConfig",
    "DEFAULT_BALANCE_TOLERANCE",
    "normalize_header",
    "normalize_sheet_name",
]

DEFAULT_BALANCE_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class ValidationSettings:
    balance_tolerance: Decimal = DEFAULT_BALANCE_TOLERANCE  # abs(total) above this => unbalanced
    future_date_severity: Severity = Severity.WARNING


@dataclass(frozen=True)
class SubmissionSettings:
    mode: SubmissionMode = SubmissionMode.DIRECT
    timeout_seconds: float = 60.0
    batch_size: int = 10


@dataclass(frozen=True)
class ExportSettings:
    default_format: str = "xlsx"
    output_directory: str = "./exports"


@dataclass(frozen=True)
class Settings:
    """Root process configuration (config/upload.yml)."""
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    submission: SubmissionSettings = field(default_factory=SubmissionSettings)
    export: ExportSettings = field(default_factory=ExportSettings)


@dataclass(frozen=True)
class SheetSpec:
    """Expected sheet of a domain workbook.

    ``keywords`` drive the fuzzy fallback: a sheet whose normalized name contains
    any keyword is accepted when no exact match exists.
    """
    name: str
    role: str = "single"  # single | header | lines
    keywords: tuple[str, ...] = ()
    required: bool = True
    columns: tuple[str, ...] = ()  # canonical fields laid out on this sheet (templates, header/line split)


@dataclass(frozen=True)
class SubstructureSpec:
    """Repeating block expanded from patterned columns (e.g. DepreciationKey_0L_01)."""
    name: str
    column_pattern: str  # regex with a 'field' group plus attribute groups
    group_fields: dict[str, str]  # regex group -> attribute name on the sub-row
    discriminator: str
    on_duplicate: str = "keep_first"  # keep_first | error


@dataclass(frozen=True)
class ExportPolicy:
    columns: tuple[str, ...] = ()
    mandatory_columns: tuple[str, ...] = ("SequenceID", "Status", "Message")
    excluded_fields: frozenset[str] = frozenset()
    excluded_patterns: tuple[str, ...] = ()
    legacy_message_fields: tuple[str, ...] = ("ErrorMessage", "SuccessMessage")
    group_by: str | None = None


@dataclass(frozen=True)
class DomainConfig:
    name: str
    title: str
    sheets: tuple[SheetSpec, ...]
    constraints: ConstraintRegistry
    header_aliases: dict[str, str]  # normalized header text -> canonical field
    sequence_field: str = "SequenceID"
    join_key: str | None = None  # multi-sheet join column (canonical name)
    group_by_sequence: bool = False  # rows sharing the raw sequence value form a group
    unmapped_headers: str = "keep"  # keep | drop
    metadata_fields: frozenset[str] = frozenset()
    rules: tuple[dict[str, Any], ...] = ()
    group_rules: tuple[dict[str, Any], ...] = ()
    substructures: tuple[SubstructureSpec, ...] = ()
    document_id_fields: tuple[str, ...] = ()
    items_field: str = "Items"  # payload key holding the lines of a grouped submission
    export: ExportPolicy = field(default_factory=ExportPolicy)

    @property
    def is_multi_sheet(self) -> bool:
        return any(s.role == "header" for s in self.sheets)

    @property
    def header_fields(self) -> tuple[str, ...]:
        """Fields declared on the header sheet; submitted once per transaction."""
        for s in self.sheets:
            if s.role == "header":
                return tuple(c for c in s.columns if c != self.sequence_field)
        return ()

    def sheet_columns(self, sheet: SheetSpec) -> list[str]:
        """Template layout of ``sheet``: declared columns, else every constrained field."""
        columns = list(sheet.columns) or self.constraints.field_names
        return [self.sequence_field] + [c for c in columns if c != self.sequence_field]

    @property
    def sheet_names(self) -> list[str]:
        return [s.name for s in self.sheets]

    def resolve_header(self, header: str) -> str | None:
        """Canonical field for a free-text header, or None when unmapped."""
        return self.header_aliases.get(normalize_header(header))


_HEADER_STRIP = re.compile(r"[\s_\-./()#:*]+")


def normalize_header(text: Any) -> str:
    """Lowercase and drop whitespace/punctuation: 'Seq. No' -> 'seqno'."""
    return _HEADER_STRIP.sub("", str(text)).lower()


def normalize_sheet_name(text: Any) -> str:
    """Lowercase and drop whitespace: 'Customer Debit Lines' -> 'customerdebitlines'."""
    return "".join(str(text).lower().split())
