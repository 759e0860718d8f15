from __future__ import annotations

import asyncio
import random
from decimal import Decimal

import pytest

from bulkupload.logging.error_log import ErrorLogBuffer
from bulkupload.models.canonical_row import CanonicalRow, RowStatus
from bulkupload.models.errors import SubmissionError
from bulkupload.models.submission import CancelStatus, SubmissionMode
from bulkupload.services.aggregator import summarize
from bulkupload.services.reconciler import (
    DEFAULT_ERROR_MESSAGE,
    DEFAULT_SUCCESS_MESSAGE,
    SubmissionReconciler,
    default_group_payload,
    default_payload,
    error_code,
    error_message,
    success_message,
)


class FakeTransport:
    """Echoes the sequence id back after a per-row delay; ``responses`` override by id."""

    def __init__(self, delays=None, responses=None, release: asyncio.Event | None = None):
        self.delays = delays or {}
        self.responses = responses or {}
        self.release = release
        self.calls: list[dict] = []

    async def __call__(self, payload):
        self.calls.append(payload)
        seq = payload["SequenceID"]
        if self.release is not None:
            await self.release.wait()
        await asyncio.sleep(self.delays.get(seq, 0))
        response = self.responses.get(seq)
        if isinstance(response, Exception):
            raise response
        if response is not None:
            return response
        return {"success": True, "data": {"SequenceID": seq, "AccountingDocument": f"49{seq}"}}


def _valid(seq: str, **data) -> CanonicalRow:
    return CanonicalRow(sequence_id=seq, data=data, sheet="Data", status=RowStatus.VALID)


def _reconciler(transport, **kwargs) -> SubmissionReconciler:
    kwargs.setdefault("document_id_fields", ["AccountingDocument"])
    return SubmissionReconciler(transport, **kwargs)


class TestResponseHelpers:
    def test_success_message_chain(self):
        assert success_message({"message": "Posted"}) == "Posted"
        assert success_message({"message": {"value": "Posted v2"}}) == "Posted v2"
        assert success_message({"FixedAsset": "100"}, ["MasterFixedAsset", "FixedAsset"]) == (
            "Document 100 created successfully"
        )
        assert success_message({}) == DEFAULT_SUCCESS_MESSAGE

    def test_error_message_chain(self):
        odata = {"error": {"code": "M7/021", "message": {"value": "Plant 9999 does not exist"}}}
        assert error_message(odata) == "Plant 9999 does not exist"
        assert error_code(odata) == "M7/021"
        assert error_message({"details": [{"message": "first detail"}]}) == "first detail"
        assert error_message({"ErrorMessage": "legacy"}) == "legacy"
        assert error_message("  plain text ") == "plain text"
        assert error_message({"message": "   "}) == DEFAULT_ERROR_MESSAGE
        assert error_message(None) == DEFAULT_ERROR_MESSAGE
        assert error_code({"errorCode": 403}) == "403"
        assert error_code({}) == "SUBMISSION_FAILED"

    def test_default_payload(self):
        row = _valid("7", Amount=Decimal("12.50"), Text=None, Customer="C1")
        row.substructures["Valuation"] = [{"Area": "01", "Key": None}]
        assert default_payload(row) == {
            "SequenceID": "7",
            "Amount": "12.50",
            "Customer": "C1",
            "Valuation": [{"Area": "01"}],
        }


@pytest.mark.asyncio
async def test_completions_are_matched_by_sequence_id():
    rows = [_valid("1"), _valid("2"), _valid("3")]
    transport = FakeTransport(delays={"1": 0.03, "2": 0.0, "3": 0.015})
    seen = []
    result = await _reconciler(transport, on_progress=seen.append).submit_batch(rows)

    assert [r.entry.sequence_id for r in result.success_records] == ["2", "3", "1"]
    for row in rows:
        assert row.status == RowStatus.SUCCESS
        assert row.response_fields["AccountingDocument"] == f"49{row.sequence_id}"
        assert row.message == f"Document 49{row.sequence_id} created successfully"
        assert row.validation_errors == []
    assert seen[-1] == {"processed": 3, "total": 3}


@pytest.mark.asyncio
async def test_server_error_marks_only_that_row():
    odata = {"error": {"code": "M7/021", "message": {"value": "Plant 9999 does not exist"}}}
    transport = FakeTransport(responses={"2": {"success": False, "error": odata}})
    rows = [_valid("1"), _valid("2"), _valid("3")]
    error_log = ErrorLogBuffer()
    result = await _reconciler(transport, error_log=error_log, source_name="je.xlsx").submit_batch(rows)

    assert [r.status for r in rows] == [RowStatus.SUCCESS, RowStatus.ERROR, RowStatus.SUCCESS]
    failed = rows[1]
    assert failed.message == "Plant 9999 does not exist"
    assert failed.error_code == "M7/021"
    assert [e.message for e in failed.validation_errors] == ["Plant 9999 does not exist"]
    assert failed.is_consistent()
    assert len(result.error_records) == 1
    assert len(error_log) == 1

    summary = summarize(rows)
    assert (summary.success_count, summary.failed_count, summary.error_count) == (2, 1, 1)


@pytest.mark.asyncio
async def test_timeout():
    transport = FakeTransport(delays={"1": 1.0})
    row = _valid("1")
    outcome = await _reconciler(transport, timeout_seconds=0.05).submit(row)
    assert outcome.error_code == "TIMEOUT"
    assert row.status == RowStatus.ERROR
    assert row.message == "No response within 0.05 seconds"


@pytest.mark.asyncio
async def test_parse_errors():
    transport = FakeTransport(responses={
        "1": {"success": True, "data": {"SequenceID": "99"}},
        "2": {"data": {}},
        "3": RuntimeError("connection reset"),
    })
    rows = [_valid("1"), _valid("2"), _valid("3")]
    await _reconciler(transport).submit_batch(rows)

    assert [r.error_code for r in rows] == ["PARSE_ERROR", "PARSE_ERROR", "SUBMISSION_FAILED"]
    assert rows[2].message == "connection reset"
    assert all(r.status == RowStatus.ERROR for r in rows)


@pytest.mark.asyncio
async def test_duplicate_submission_while_in_flight():
    release = asyncio.Event()
    reconciler = _reconciler(FakeTransport(release=release))
    row = _valid("1")
    first = asyncio.create_task(reconciler.submit(row))
    await asyncio.sleep(0)
    assert reconciler.in_flight == frozenset({"1"})

    with pytest.raises(SubmissionError) as exc:
        await reconciler.submit(row)
    assert exc.value.code == "DUPLICATE_SUBMISSION"

    release.set()
    outcome = await first
    assert outcome.success
    assert reconciler.in_flight == frozenset()


@pytest.mark.asyncio
async def test_only_valid_or_error_rows_are_submitted():
    invalid = CanonicalRow(sequence_id="2", status=RowStatus.INVALID)
    reconciler = _reconciler(FakeTransport())
    with pytest.raises(SubmissionError) as exc:
        await reconciler.submit(invalid)
    assert exc.value.code == "NOT_SUBMITTABLE"

    result = await reconciler.submit_batch([_valid("1"), invalid])
    assert result.processed == 1
    assert result.skipped_records == [invalid]
    assert invalid.status == RowStatus.INVALID


@pytest.mark.asyncio
async def test_error_rows_can_be_retried():
    transport = FakeTransport(responses={"1": {"success": False, "error": "Period closed"}})
    reconciler = _reconciler(transport)
    row = _valid("1")
    await reconciler.submit(row)
    assert row.status == RowStatus.ERROR

    transport.responses.clear()
    await reconciler.submit(row)
    assert row.status == RowStatus.SUCCESS
    assert row.validation_errors == []
    assert row.error_code is None


@pytest.mark.asyncio
async def test_cancel_between_chunks():
    answers = []
    reconciler = None

    def on_progress(progress):
        if progress["processed"] == 1:
            answers.append(reconciler.cancel())
            answers.append(reconciler.cancel())

    reconciler = _reconciler(
        FakeTransport(), mode=SubmissionMode.BATCHED, batch_size=1, on_progress=on_progress
    )
    rows = [_valid("1"), _valid("2"), _valid("3")]
    result = await reconciler.submit_batch(rows)

    assert answers == [CancelStatus.CANCELLED, CancelStatus.ALREADY_REQUESTED]
    assert result.cancelled
    assert result.processed == 1
    assert [r.sequence_id for r in result.skipped_records] == ["2", "3"]
    assert [r.status for r in rows] == [RowStatus.SUCCESS, RowStatus.VALID, RowStatus.VALID]
    assert reconciler.cancel() == CancelStatus.NOT_RUNNING


def test_cancel_not_supported_in_direct_mode():
    assert _reconciler(FakeTransport()).cancel() == CancelStatus.NOT_SUPPORTED


@pytest.mark.asyncio
async def test_second_batch_is_rejected_while_running():
    release = asyncio.Event()
    reconciler = _reconciler(FakeTransport(release=release))
    running = asyncio.create_task(reconciler.submit_batch([_valid("1")]))
    await asyncio.sleep(0)

    with pytest.raises(SubmissionError) as exc:
        await reconciler.submit_batch([_valid("2")])
    assert exc.value.code == "BATCH_RUNNING"

    release.set()
    result = await running
    assert result.processed == 1


def test_invalid_batch_size():
    with pytest.raises(ValueError):
        SubmissionReconciler(FakeTransport(), batch_size=0)


@pytest.mark.asyncio
async def test_completion_order_never_changes_the_pairing():
    rng = random.Random(20240502)
    ids = [str(n) for n in range(1, 9)]
    for _ in range(5):
        delays = {seq: rng.uniform(0, 0.02) for seq in ids}
        rows = [_valid(seq) for seq in ids]
        result = await _reconciler(FakeTransport(delays=delays)).submit_batch(rows)

        assert result.processed == 8
        finished = [r.entry.sequence_id for r in result.success_records]
        assert sorted(finished, key=int) == ids
        for row in rows:
            assert row.status == RowStatus.SUCCESS
            assert row.response_fields["SequenceID"] == row.sequence_id
            assert row.response_fields["AccountingDocument"] == f"49{row.sequence_id}"


@pytest.mark.asyncio
async def test_payload_builder_failure_is_that_rows_error():
    def builder(row):
        if row.sequence_id == "2":
            raise KeyError("CompanyCode")
        return default_payload(row)

    completed = []
    rows = [_valid("1"), _valid("2"), _valid("3")]
    reconciler = _reconciler(FakeTransport(), payload_builder=builder, on_complete=completed.append)
    result = await reconciler.submit_batch(rows)

    assert [r.status for r in rows] == [RowStatus.SUCCESS, RowStatus.ERROR, RowStatus.SUCCESS]
    assert rows[1].error_code == "PAYLOAD_ERROR"
    assert rows[1].message == "cannot build payload: 'CompanyCode'"
    assert rows[1].is_consistent()
    assert completed == [result]
    assert (len(result.success_records), len(result.error_records)) == (2, 1)
    assert reconciler.in_flight == frozenset()


def _line(seq: str, group: str, indicator: str, amount: str, status=RowStatus.VALID) -> CanonicalRow:
    data = {"CompanyCode": "1000", "DocumentDate": "2024-05-01", "DebitCreditCode": indicator,
            "AmountInTransactionCurrency": Decimal(amount), "SequenceID": group}
    return CanonicalRow(sequence_id=seq, data=data, sheet="Lines", group_key=group, status=status)


def test_default_group_payload():
    rows = [_line("1", "1", "S", "100"), _line("1-2", "1", "H", "100")]
    rows[1].substructures["Tax"] = [{"Code": "V1"}]
    payload = default_group_payload("1", rows, header_fields=["CompanyCode", "DocumentDate"])
    assert payload == {
        "SequenceID": "1",
        "CompanyCode": "1000",
        "DocumentDate": "2024-05-01",
        "Items": [
            {"DebitCreditCode": "S", "AmountInTransactionCurrency": "100"},
            {"DebitCreditCode": "H", "AmountInTransactionCurrency": "100", "Tax": [{"Code": "V1"}]},
        ],
    }


@pytest.mark.asyncio
async def test_group_submission_sends_one_payload_per_transaction():
    transport = FakeTransport(responses={"2": {"success": False, "error": "Posting period closed"}})
    rows = [
        _line("1", "1", "S", "100"), _line("1-2", "1", "H", "100"),
        _line("2", "2", "S", "50"), _line("2-2", "2", "H", "50"),
        _line("3", "3", "S", "10"), _line("3-2", "3", "H", "10", status=RowStatus.INVALID),
    ]
    progress = []
    reconciler = _reconciler(
        transport, group_submission=True, header_fields=["CompanyCode", "DocumentDate"],
        on_progress=progress.append,
    )
    result = await reconciler.submit_batch(rows)

    assert sorted(p["SequenceID"] for p in transport.calls) == ["1", "2"]
    assert all(len(p["Items"]) == 2 for p in transport.calls)
    assert [r.status for r in rows[:4]] == [RowStatus.SUCCESS] * 2 + [RowStatus.ERROR] * 2
    assert rows[1].response_fields["AccountingDocument"] == "491"
    assert rows[3].message == "Posting period closed"
    assert [r.status for r in rows[4:]] == [RowStatus.VALID, RowStatus.INVALID]
    assert {r.sequence_id for r in result.skipped_records} == {"3", "3-2"}
    assert (len(result.success_records), len(result.error_records)) == (2, 2)
    assert progress[-1] == {"processed": 4, "total": 4}


@pytest.mark.asyncio
async def test_group_in_flight_blocks_its_members():
    release = asyncio.Event()
    reconciler = _reconciler(FakeTransport(release=release), group_submission=True)
    rows = [_line("1", "1", "S", "100"), _line("1-2", "1", "H", "100")]
    running = asyncio.create_task(reconciler.submit_group(rows))
    await asyncio.sleep(0)
    assert reconciler.in_flight == frozenset({"1"})

    with pytest.raises(SubmissionError) as exc:
        await reconciler.submit(rows[1])
    assert exc.value.code == "DUPLICATE_SUBMISSION"

    release.set()
    outcome = await running
    assert outcome.success
    assert all(r.status == RowStatus.SUCCESS for r in rows)
