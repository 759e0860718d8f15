from __future__ import annotations

import re

from bulkupload.models.canonical_row import CanonicalRow, RowStatus
from bulkupload.models.validation_result import BatchSummary
from bulkupload.services.aggregator import render_summary_line, summarize

"""SUMMARY line format contract (the line the CLI logs after every run)."""

SUMMARY_PATTERN = re.compile(
    r"^rows=(\d+) valid=(\d+) errors=(\d+) pending=(\d+) success=(\d+) failed=(\d+)"
    r"( elapsed_sec=\d+(\.\d+)?)?$"
)


def test_summary_pattern_example_line():
    line = "rows=4 valid=3 errors=1 pending=0 success=2 failed=1 elapsed_sec=0.84"
    assert SUMMARY_PATTERN.match(line)


def test_rendered_line_matches_contract():
    rows = [CanonicalRow(sequence_id=str(n), status=s) for n, s in enumerate(
        [RowStatus.SUCCESS, RowStatus.ERROR, RowStatus.INVALID, RowStatus.PENDING], start=1
    )]
    line = render_summary_line(summarize(rows), 12.5)
    m = SUMMARY_PATTERN.match(line)
    assert m
    total, valid, errors, pending, success, failed = (int(g) for g in m.groups()[:6])
    assert (total, valid, errors, pending, success, failed) == (4, 1, 2, 1, 1, 1)


def test_counts_add_up():
    summary = BatchSummary(total=5, valid_count=3, error_count=2, is_valid=False, success_count=1, failed_count=1)
    m = SUMMARY_PATTERN.match(render_summary_line(summary))
    total, valid, errors = (int(g) for g in m.groups()[:3])
    assert valid + errors <= total
