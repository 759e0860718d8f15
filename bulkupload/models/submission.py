from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .canonical_row import CanonicalRow

"""Submission models exchanged between the reconciler and its callers."""

__all__ = [
    "SubmissionMode",
    "CancelStatus",
    "SubmissionOutcome",
    "SubmissionRecord",
    "BatchSubmissionResult",
]


class SubmissionMode(str, Enum):
    DIRECT = "direct"  # one request per row, dispatched at once; not cancellable
    BATCHED = "batched"  # chunks of batch_size; cancellable between chunks


class CancelStatus(str, Enum):
    CANCELLED = "cancelled"
    ALREADY_REQUESTED = "already_requested"
    NOT_RUNNING = "not_running"
    NOT_SUPPORTED = "not_supported"


@dataclass(frozen=True)
class SubmissionOutcome:
    sequence_id: str
    success: bool
    response_fields: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    error_code: str | None = None


@dataclass(frozen=True)
class SubmissionRecord:
    entry: CanonicalRow
    outcome: SubmissionOutcome


@dataclass
class BatchSubmissionResult:
    success_records: list[SubmissionRecord] = field(default_factory=list)
    error_records: list[SubmissionRecord] = field(default_factory=list)
    skipped_records: list[CanonicalRow] = field(default_factory=list)
    cancelled: bool = False

    @property
    def processed(self) -> int:
        return len(self.success_records) + len(self.error_records)
