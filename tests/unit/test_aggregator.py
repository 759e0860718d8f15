from __future__ import annotations

import re

import pytest

from bulkupload.models.canonical_row import CanonicalRow, RowStatus
from bulkupload.models.validation_result import BatchSummary
from bulkupload.services.aggregator import filter_by_status, render_summary_line, summarize


def _rows(*statuses: RowStatus) -> list[CanonicalRow]:
    return [CanonicalRow(sequence_id=str(i + 1), status=s) for i, s in enumerate(statuses)]


def test_summarize_counts_statuses():
    rows = _rows(RowStatus.VALID, RowStatus.INVALID, RowStatus.SUCCESS, RowStatus.ERROR, RowStatus.PENDING)
    summary = summarize(rows)
    assert summary == BatchSummary(
        total=5, valid_count=2, error_count=2, is_valid=False,
        pending_count=1, success_count=1, failed_count=1,
    )


def test_unvalidated_rows_keep_the_batch_invalid():
    summary = summarize(_rows(RowStatus.VALID, RowStatus.PENDING, RowStatus.SUBMITTING))
    assert (summary.valid_count, summary.error_count, summary.pending_count) == (1, 0, 1)
    assert not summary.is_valid
    assert summarize(_rows(RowStatus.VALID, RowStatus.SUCCESS)).is_valid


def test_summarize_is_pure():
    rows = _rows(RowStatus.VALID, RowStatus.INVALID)
    assert summarize(rows) == summarize(rows)
    assert [r.status for r in rows] == [RowStatus.VALID, RowStatus.INVALID]


def test_summarize_empty_batch():
    summary = summarize([])
    assert (summary.total, summary.error_count, summary.is_valid) == (0, 0, True)


def test_filter_by_status_keeps_order():
    rows = _rows(RowStatus.ERROR, RowStatus.VALID, RowStatus.INVALID)
    assert [r.sequence_id for r in filter_by_status(rows, RowStatus.INVALID, RowStatus.ERROR)] == ["1", "3"]
    assert filter_by_status(rows) == rows


class TestRenderSummaryLine:
    SUMMARY = BatchSummary(total=3, valid_count=2, error_count=1, is_valid=False)

    def test_without_elapsed(self):
        assert render_summary_line(self.SUMMARY) == "rows=3 valid=2 errors=1 pending=0 success=0 failed=0"

    @pytest.mark.parametrize("elapsed,rendered", [(2.0, "2"), (1.5, "1.5"), (0.1234, "0.123")])
    def test_elapsed(self, elapsed, rendered):
        line = render_summary_line(self.SUMMARY, elapsed)
        assert line.endswith(f" elapsed_sec={rendered}")

    def test_format(self):
        line = render_summary_line(self.SUMMARY, 3.25)
        assert re.fullmatch(
            r"rows=\d+ valid=\d+ errors=\d+ pending=\d+ success=\d+ failed=\d+( elapsed_sec=[\d.]+)?", line
        )
