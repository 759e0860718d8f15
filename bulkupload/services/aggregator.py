from __future__ import annotations

from collections.abc import Iterable

from ..models.canonical_row import FAILED_STATUSES, CanonicalRow, RowStatus
from ..models.validation_result import BatchSummary

"""Batch summaries and status filtering.

Everything here is derived from row statuses on demand and never stored, so a
summary can be recomputed after validation, after submission or after a retry.
"""

__all__ = [
    "summarize",
    "filter_by_status",
    "render_summary_line",
]


def summarize(rows: Iterable[CanonicalRow]) -> BatchSummary:
    """Count rows per status without touching them.

    Invalid and Error rows both count as errors. Only Valid and Success rows count as
    valid, so a batch holding Pending or Submitting rows is not valid yet.
    """
    counts = {status: 0 for status in RowStatus}
    total = 0
    for row in rows:
        counts[row.status] += 1
        total += 1
    error_count = sum(counts[s] for s in FAILED_STATUSES)
    valid_count = counts[RowStatus.VALID] + counts[RowStatus.SUCCESS]
    return BatchSummary(
        total=total,
        valid_count=valid_count,
        error_count=error_count,
        is_valid=valid_count == total,
        pending_count=counts[RowStatus.PENDING],
        success_count=counts[RowStatus.SUCCESS],
        failed_count=counts[RowStatus.ERROR],
    )


def filter_by_status(rows: Iterable[CanonicalRow], *statuses: RowStatus) -> list[CanonicalRow]:
    """Rows whose status is one of ``statuses`` (all rows when none given), in order."""
    if not statuses:
        return list(rows)
    wanted = set(statuses)
    return [r for r in rows if r.status in wanted]


def render_summary_line(summary: BatchSummary, elapsed_seconds: float | None = None) -> str:
    """Render the SUMMARY line body.

    Format:
    rows={total} valid={valid} errors={errors} pending={pending} success={success}
    failed={failed} [elapsed_sec={elapsed}]

    >>> render_summary_line(BatchSummary(total=3, valid_count=2, error_count=1, is_valid=False))
    'rows=3 valid=2 errors=1 pending=0 success=0 failed=0'
    """
    line = (
        f"rows={summary.total} "
        f"valid={summary.valid_count} "
        f"errors={summary.error_count} "
        f"pending={summary.pending_count} "
        f"success={summary.success_count} "
        f"failed={summary.failed_count}"
    )
    if elapsed_seconds is None:
        return line
    if elapsed_seconds == int(elapsed_seconds):
        elapsed = str(int(elapsed_seconds))
    else:
        elapsed = f"{elapsed_seconds:.3f}".rstrip("0").rstrip(".")
    return f"{line} elapsed_sec={elapsed}"
