from __future__ import annotations

from collections.abc import Iterable

"""Error taxonomy for the upload pipeline.

Fatal errors (MissingSheetError, InvalidInputError, NoDataError, ExportError) abort
the operation that raised them. FieldValidationError / CrossRowValidationError are
raised by individual rules and collected by the validator; SubmissionError /
ParseResponseError are turned into per-row Error outcomes by the reconciler.
"""

__all__ = [
    "BulkUploadError",
    "MissingSheetError",
    "InvalidInputError",
    "FieldValidationError",
    "CrossRowValidationError",
    "SubmissionError",
    "ParseResponseError",
    "NoDataError",
    "ExportError",
]


class BulkUploadError(Exception):
    """Base class for every error raised by the pipeline."""


class MissingSheetError(BulkUploadError):
    """Raised when a required sheet cannot be resolved in the workbook."""

    def __init__(self, available_sheets: Iterable[str], required_sheets: Iterable[str]) -> None:
        self.available_sheets = list(available_sheets)
        self.required_sheets = list(required_sheets)
        super().__init__(
            f"missing required sheets: {', '.join(self.required_sheets)} "
            f"(available: {', '.join(self.available_sheets) or 'none'})"
        )


class InvalidInputError(BulkUploadError):
    """Raised for structurally impossible input (host integration bug)."""


class FieldValidationError(BulkUploadError):
    """A single field-level rule violation. Collected, never propagated."""

    def __init__(self, field: str, message: str, *, code: str | None = None) -> None:
        self.field = field
        self.message = message
        self.code = code
        super().__init__(f"{field}: {message}")


class CrossRowValidationError(BulkUploadError):
    """A rule violation attached to a group of rows sharing a grouping key."""

    def __init__(self, group_key: str, message: str, *, field: str | None = None, code: str | None = None) -> None:
        self.group_key = group_key
        self.message = message
        self.field = field
        self.code = code
        super().__init__(f"group {group_key}: {message}")


class SubmissionError(BulkUploadError):
    """One row's submission failed. The batch continues."""

    def __init__(self, message: str, *, code: str | None = None, sequence_id: str | None = None) -> None:
        self.message = message
        self.code = code
        self.sequence_id = sequence_id
        super().__init__(message)


class ParseResponseError(SubmissionError):
    """The collaborator reported success but the response could not be interpreted."""

    def __init__(self, message: str, *, sequence_id: str | None = None) -> None:
        super().__init__(message, code="PARSE_ERROR", sequence_id=sequence_id)


class NoDataError(BulkUploadError):
    """Raised when an export has no records left after filtering."""

    def __init__(self, status_filter: str) -> None:
        self.status_filter = status_filter
        super().__init__(f"no data of type '{status_filter}' to export")


class ExportError(BulkUploadError):
    """Raised for unknown export formats or sink failures."""
