"""Domain models for the bulk upload pipeline.

Rows, constraints, validation / submission results, configuration and the error
taxonomy shared by the parser, transformer, validator, reconciler and exporter.
"""

from .canonical_row import CanonicalRow, RawRow, RowStatus, Severity, ValidationIssue
from .config_models import DomainConfig, ExportPolicy, Settings, SheetSpec, SubstructureSpec
from .constraint import ConstraintRegistry, FieldConstraint, FieldType
from .submission import (
    BatchSubmissionResult,
    CancelStatus,
    SubmissionMode,
    SubmissionOutcome,
    SubmissionRecord,
)
from .validation_result import BatchSummary, RowValidation, ValidationResult

__all__ = [
    # Rows
    "CanonicalRow",
    "RawRow",
    "RowStatus",
    "Severity",
    "ValidationIssue",
    # Configuration models
    "ConstraintRegistry",
    "DomainConfig",
    "ExportPolicy",
    "FieldConstraint",
    "FieldType",
    "Settings",
    "SheetSpec",
    "SubstructureSpec",
    # Results
    "BatchSummary",
    "BatchSubmissionResult",
    "CancelStatus",
    "RowValidation",
    "SubmissionMode",
    "SubmissionOutcome",
    "SubmissionRecord",
    "ValidationResult",
]
