from __future__ import annotations

from dataclasses import dataclass, field

from .canonical_row import CanonicalRow, ValidationIssue

"""Derived validation / aggregation results. Recomputed on every pass, never stored."""

__all__ = [
    "RowValidation",
    "ValidationResult",
    "BatchSummary",
]


@dataclass(frozen=True)
class RowValidation:
    is_valid: bool
    errors: list[ValidationIssue]
    warnings: list[ValidationIssue] = field(default_factory=list)


@dataclass
class ValidationResult:
    """Batch level outcome of Validator.validate_all (compares by value)."""
    entries: list[CanonicalRow]
    valid_count: int
    error_count: int
    is_valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)  # row errors, then group errors
    group_errors: dict[str, list[ValidationIssue]] = field(default_factory=dict)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def errors_for(self, sequence_id: str) -> list[ValidationIssue]:
        return [e for e in self.errors if e.sequence_id == sequence_id]


@dataclass(frozen=True)
class BatchSummary:
    total: int
    valid_count: int  # Valid + Success rows
    error_count: int  # Invalid + Error
    is_valid: bool
    pending_count: int = 0
    success_count: int = 0
    failed_count: int = 0  # submission failures only
