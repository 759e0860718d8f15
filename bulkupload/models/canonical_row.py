from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

"""Row models flowing through the pipeline.

RawRow is what the sheet parser emits (header text -> cell value). CanonicalRow is
created by the transformer and then mutated only through its own methods, which keep
the status / error list pairing consistent:

    validation_errors non-empty  <=>  status in {Invalid, Error}
"""

__all__ = [
    "RawRow",
    "RowStatus",
    "Severity",
    "ValidationIssue",
    "CanonicalRow",
    "FAILED_STATUSES",
    "SUBMITTABLE_STATUSES",
]


@dataclass(frozen=True)
class RawRow:
    sheet: str  # canonical sheet name (domain config), not the workbook tab text
    row_number: int  # source row in the sheet, header = 1
    values: dict[str, Any]


class RowStatus(str, Enum):
    PENDING = "Pending"
    VALID = "Valid"
    INVALID = "Invalid"
    SUBMITTING = "Submitting"
    SUCCESS = "Success"
    ERROR = "Error"


FAILED_STATUSES = frozenset({RowStatus.INVALID, RowStatus.ERROR})
SUBMITTABLE_STATUSES = frozenset({RowStatus.VALID, RowStatus.ERROR})


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str
    severity: Severity = Severity.ERROR
    code: str | None = None
    sequence_id: str | None = None
    group_key: str | None = None


@dataclass(eq=False)
class CanonicalRow:
    """One upload row after normalization.

    Attributes:
        sequence_id: unique join key within the batch
        data: canonical field name -> normalized value (validated fields only)
        substructures: repeating blocks, e.g. {"Valuation": [{...}, ...]}
        duplicates: discriminator values dropped while deduplicating substructures
        rejected: raw values the transformer could not coerce to the field type
        extra: unmapped columns, carried for export but never validated
    """
    sequence_id: str
    data: dict[str, Any] = field(default_factory=dict)
    sheet: str | None = None
    row_number: int | None = None
    group_key: str | None = None
    status: RowStatus = RowStatus.PENDING
    validation_errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)
    substructures: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    duplicates: dict[str, list[str]] = field(default_factory=dict)
    rejected: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)
    response_fields: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    error_code: str | None = None

    def get(self, name: str, default: Any = None) -> Any:
        if name in self.data:
            return self.data[name]
        return self.extra.get(name, default)

    @property
    def has_errors(self) -> bool:
        return bool(self.validation_errors)

    def is_consistent(self) -> bool:
        return self.has_errors == (self.status in FAILED_STATUSES)

    def apply_validation(self, errors: list[ValidationIssue], warnings: list[ValidationIssue]) -> None:
        self.validation_errors = list(errors)
        self.warnings = list(warnings)
        self.status = RowStatus.INVALID if errors else RowStatus.VALID

    def mark_submitting(self) -> None:
        # a resubmitted Error row drops its previous failure
        self.validation_errors = []
        self.message = None
        self.error_code = None
        self.status = RowStatus.SUBMITTING

    def mark_success(self, message: str, response_fields: dict[str, Any]) -> None:
        self.response_fields = dict(response_fields)
        self.message = message
        self.error_code = None
        self.validation_errors = []
        self.status = RowStatus.SUCCESS

    def mark_error(self, message: str, code: str, response_fields: dict[str, Any] | None = None) -> None:
        self.response_fields = dict(response_fields or {})
        self.message = message
        self.error_code = code
        self.validation_errors = [
            ValidationIssue(field="Submission", message=message, code=code, sequence_id=self.sequence_id)
        ]
        self.status = RowStatus.ERROR
