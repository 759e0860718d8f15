from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from decimal import Decimal
from typing import Any

from ..excel.reader import is_blank
from ..logging.error_log import ErrorLogBuffer
from ..models.canonical_row import SUBMITTABLE_STATUSES, CanonicalRow
from ..models.config_models import DomainConfig, Settings
from ..models.error_record import ErrorRecord
from ..models.errors import InvalidInputError, ParseResponseError, SubmissionError
from ..models.submission import (
    BatchSubmissionResult,
    CancelStatus,
    SubmissionMode,
    SubmissionOutcome,
    SubmissionRecord,
)
from .progress import ProgressTracker

"""Submission reconciler.

Rows are sent to an async transport (the host's API client) and every completion is
matched back to its row by sequence id, whatever order completions arrive in:

    pending[sequence_id] -> asyncio.Future[SubmissionOutcome]

The coroutine calling the transport closes over the id it dispatched and resolves
that id's future; an id echoed back by the server is cross-checked against it.
Each wait is bounded by asyncio.wait_for; expiry marks the row Error/TIMEOUT.

Transport contract::

    await transport(payload) -> {"success": True, "data": {...}}
                              | {"success": False, "error": {...} | "text"}

A raising transport or payload builder counts as a failed submission for that row only.

Domains that group rows by sequence value (journal entries, supplier invoices)
submit one payload per transaction: header fields once plus a list of line items.
The transaction key is the pending key and its outcome lands on every member row.
"""

__all__ = [
    "SubmissionReconciler",
    "Transport",
    "default_payload",
    "default_group_payload",
    "success_message",
    "error_message",
    "error_code",
    "DEFAULT_SUCCESS_MESSAGE",
    "DEFAULT_ERROR_MESSAGE",
    "DEFAULT_ERROR_CODE",
]

logger = logging.getLogger(__name__)

Transport = Callable[[dict[str, Any]], Awaitable[Mapping[str, Any]]]
ProgressCallback = Callable[[dict[str, int]], None]
CompleteCallback = Callable[[BatchSubmissionResult], None]

DEFAULT_SUCCESS_MESSAGE = "Processed successfully"
DEFAULT_ERROR_MESSAGE = "Submission failed"
DEFAULT_ERROR_CODE = "SUBMISSION_FAILED"
TIMEOUT_CODE = "TIMEOUT"
DUPLICATE_CODE = "DUPLICATE_SUBMISSION"
PAYLOAD_ERROR_CODE = "PAYLOAD_ERROR"

# Ordered lookup paths; the first non-blank text wins.
SUCCESS_MESSAGE_PATHS: tuple[tuple[Any, ...], ...] = (
    ("message",),
    ("Message",),
    ("SuccessMessage",),
    ("message", "value"),
)
ERROR_MESSAGE_PATHS: tuple[tuple[Any, ...], ...] = (
    ("error", "message", "value"),  # OData v2/v4
    ("message", "value"),
    ("message",),
    ("ErrorMessage",),
    ("details", 0, "message"),
    ("error", "message"),
)
ERROR_CODE_PATHS: tuple[tuple[Any, ...], ...] = (
    ("error", "code"),
    ("code",),
    ("errorCode",),
    ("ErrorCode",),
)


def _dig(obj: Any, path: Sequence[Any]) -> Any:
    for key in path:
        if isinstance(key, int):
            if isinstance(obj, (list, tuple)) and len(obj) > key:
                obj = obj[key]
            else:
                return None
        elif isinstance(obj, Mapping):
            obj = obj.get(key)
        else:
            return None
    return obj


def _first_text(obj: Any, paths: Iterable[Sequence[Any]]) -> str | None:
    for path in paths:
        value = _dig(obj, path)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value).strip()
    return None


def success_message(data: Mapping[str, Any], document_id_fields: Sequence[str] = ()) -> str:
    """Server message, else 'Document <id> created successfully', else the default."""
    message = _first_text(data, SUCCESS_MESSAGE_PATHS)
    if message:
        return message
    for name in document_id_fields:
        value = data.get(name)
        if not is_blank(value):
            return f"Document {value} created successfully"
    return DEFAULT_SUCCESS_MESSAGE


def error_message(error: Any) -> str:
    if isinstance(error, str):
        return error.strip() or DEFAULT_ERROR_MESSAGE
    return _first_text(error, ERROR_MESSAGE_PATHS) or DEFAULT_ERROR_MESSAGE


def error_code(error: Any) -> str:
    return _first_text(error, ERROR_CODE_PATHS) or DEFAULT_ERROR_CODE


def _payload_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, list):
        return [_payload_value(v) for v in value]
    if isinstance(value, dict):
        return {k: _payload_value(v) for k, v in value.items() if not is_blank(v)}
    return value


def default_payload(row: CanonicalRow, sequence_field: str = "SequenceID") -> dict[str, Any]:
    """Non-blank canonical fields plus sub-structures; the sequence id is echoed."""
    payload: dict[str, Any] = {sequence_field: row.sequence_id}
    for name, value in row.data.items():
        if not is_blank(value):
            payload[name] = _payload_value(value)
    for name, items in row.substructures.items():
        payload[name] = _payload_value(items)
    return payload


def default_group_payload(
    group_key: str,
    rows: Sequence[CanonicalRow],
    sequence_field: str = "SequenceID",
    header_fields: Sequence[str] = (),
    items_field: str = "Items",
) -> dict[str, Any]:
    """One transaction: header fields from its first row, every row as a line item."""
    header = set(header_fields)
    payload: dict[str, Any] = {sequence_field: group_key}
    for name in header_fields:
        value = rows[0].get(name)
        if not is_blank(value):
            payload[name] = _payload_value(value)
    items = []
    for row in rows:
        item = {
            name: _payload_value(value)
            for name, value in row.data.items()
            if name not in header and name != sequence_field and not is_blank(value)
        }
        for name, subitems in row.substructures.items():
            item[name] = _payload_value(subitems)
        items.append(item)
    payload[items_field] = items
    return payload


class SubmissionReconciler:
    """Submits rows through ``transport`` and reconciles the outcomes.

    Args:
        transport: async callable ``payload -> response mapping``
        mode: DIRECT dispatches every row at once; BATCHED sends chunks of
            ``batch_size`` and can be cancelled between chunks
        timeout_seconds: per row bound on waiting for a completion
        sequence_field: payload key carrying (and echoing back) the sequence id
        payload_builder: row -> payload (default_payload when None)
        group_submission: send the rows sharing a group key as one payload
        header_fields: fields sent once per transaction in group payloads
        items_field: group payload key holding the line items
        group_payload_builder: (group_key, rows) -> payload (default_group_payload when None)
        document_id_fields: response fields naming the created document
        on_progress: called with {"processed", "total"} after each completion
        on_complete: called with the BatchSubmissionResult of submit_batch
        error_log: failed rows are appended as ErrorRecord
        show_progress: drive a tqdm ProgressTracker during submit_batch
        source_name: workbook name written to the error log
    """

    def __init__(
        self,
        transport: Transport,
        *,
        mode: SubmissionMode = SubmissionMode.DIRECT,
        timeout_seconds: float = 60.0,
        batch_size: int = 10,
        sequence_field: str = "SequenceID",
        payload_builder: Callable[[CanonicalRow], dict[str, Any]] | None = None,
        group_submission: bool = False,
        header_fields: Sequence[str] = (),
        items_field: str = "Items",
        group_payload_builder: Callable[[str, Sequence[CanonicalRow]], dict[str, Any]] | None = None,
        document_id_fields: Sequence[str] = (),
        on_progress: ProgressCallback | None = None,
        on_complete: CompleteCallback | None = None,
        error_log: ErrorLogBuffer | None = None,
        show_progress: bool = False,
        source_name: str = "-",
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._transport = transport
        self.mode = SubmissionMode(mode)
        self.timeout_seconds = timeout_seconds
        self.batch_size = batch_size
        self.sequence_field = sequence_field
        self._payload_builder = payload_builder or (lambda row: default_payload(row, sequence_field))
        self.group_submission = group_submission
        self._group_payload_builder = group_payload_builder or (
            lambda key, rows: default_group_payload(key, rows, sequence_field, header_fields, items_field)
        )
        self.document_id_fields = tuple(document_id_fields)
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.error_log = error_log
        self.show_progress = show_progress
        self.source_name = source_name

        self._pending: dict[str, asyncio.Future[SubmissionOutcome]] = {}
        self._batch_running = False
        self._cancel_requested = False

    @classmethod
    def from_config(
        cls, transport: Transport, domain: DomainConfig, settings: Settings | None = None, **kwargs: Any
    ) -> SubmissionReconciler:
        """Reconciler using the domain's sequence / document fields and the submission settings."""
        settings = settings or Settings()
        options: dict[str, Any] = {
            "mode": settings.submission.mode,
            "timeout_seconds": settings.submission.timeout_seconds,
            "batch_size": settings.submission.batch_size,
            "sequence_field": domain.sequence_field,
            "document_id_fields": domain.document_id_fields,
            "group_submission": domain.group_by_sequence,
            "header_fields": domain.header_fields,
            "items_field": domain.items_field,
        }
        options.update(kwargs)
        return cls(transport, **options)

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._pending)

    # ------------------------------------------------------------ responses

    def _interpret(self, sequence_id: str, response: Any) -> SubmissionOutcome:
        """Turn a transport response into an outcome for ``sequence_id``.

        Raises:
            ParseResponseError: the response does not follow the transport contract
        """
        if not isinstance(response, Mapping):
            raise ParseResponseError(
                f"unexpected response type {type(response).__name__}", sequence_id=sequence_id
            )
        success = response.get("success")
        data = response.get("data") or {}
        if not isinstance(data, Mapping):
            raise ParseResponseError("response data is not an object", sequence_id=sequence_id)

        if success is True:
            echoed = data.get(self.sequence_field)
            if not is_blank(echoed) and str(echoed) != sequence_id:
                raise ParseResponseError(
                    f"response for {sequence_id} carries {self.sequence_field} '{echoed}'",
                    sequence_id=sequence_id,
                )
            return SubmissionOutcome(
                sequence_id=sequence_id,
                success=True,
                response_fields=dict(data),
                message=success_message(data, self.document_id_fields),
            )
        if success is False:
            error = response.get("error")
            return SubmissionOutcome(
                sequence_id=sequence_id,
                success=False,
                response_fields=dict(data),
                message=error_message(error),
                error_code=error_code(error),
            )
        raise ParseResponseError("response has no boolean 'success' flag", sequence_id=sequence_id)

    def _resolve(self, sequence_id: str, outcome: SubmissionOutcome) -> None:
        future = self._pending.get(sequence_id)
        if future is None or future.done():
            logger.warning("late completion for %s ignored (%s)", sequence_id,
                           "success" if outcome.success else outcome.error_code)
            return
        future.set_result(outcome)

    async def _call(self, sequence_id: str, payload: dict[str, Any]) -> None:
        try:
            response = await self._transport(payload)
            outcome = self._interpret(sequence_id, response)
        except SubmissionError as e:
            outcome = SubmissionOutcome(
                sequence_id=sequence_id,
                success=False,
                message=e.message or DEFAULT_ERROR_MESSAGE,
                error_code=e.code or DEFAULT_ERROR_CODE,
            )
        except Exception as e:
            # any transport failure becomes this row's Error outcome
            logger.debug("transport raised for %s: %r", sequence_id, e)
            outcome = SubmissionOutcome(
                sequence_id=sequence_id,
                success=False,
                message=str(e) or DEFAULT_ERROR_MESSAGE,
                error_code=DEFAULT_ERROR_CODE,
            )
        self._resolve(sequence_id, outcome)

    # ------------------------------------------------------------ submission

    def _apply(self, row: CanonicalRow, outcome: SubmissionOutcome) -> None:
        if outcome.success:
            row.mark_success(outcome.message, outcome.response_fields)
            logger.info("row %s submitted: %s", row.sequence_id, outcome.message)
            return
        code = outcome.error_code or DEFAULT_ERROR_CODE
        row.mark_error(outcome.message, code, outcome.response_fields)
        logger.warning("row %s failed [%s]: %s", row.sequence_id, code, outcome.message)
        if self.error_log is not None:
            self.error_log.append(ErrorRecord.create(
                file=self.source_name,
                sheet=row.sheet or "-",
                sequence_id=row.sequence_id,
                error_type=code,
                message=outcome.message,
            ))

    async def _dispatch(
        self, key: str, rows: Sequence[CanonicalRow], build: Callable[[], dict[str, Any]]
    ) -> SubmissionOutcome:
        """Send one payload for ``rows`` under ``key`` and apply the outcome to every row."""
        future: asyncio.Future[SubmissionOutcome] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        for row in rows:
            row.mark_submitting()
        task: asyncio.Task[None] | None = None
        try:
            try:
                payload = build()
            except Exception as e:
                logger.debug("payload builder raised for %s: %r", key, e)
                outcome = SubmissionOutcome(
                    sequence_id=key,
                    success=False,
                    message=f"cannot build payload: {e}",
                    error_code=PAYLOAD_ERROR_CODE,
                )
            else:
                task = asyncio.ensure_future(self._call(key, payload))
                try:
                    outcome = await asyncio.wait_for(future, timeout=self.timeout_seconds)
                except asyncio.TimeoutError:
                    outcome = SubmissionOutcome(
                        sequence_id=key,
                        success=False,
                        message=f"No response within {self.timeout_seconds:g} seconds",
                        error_code=TIMEOUT_CODE,
                    )
        finally:
            self._pending.pop(key, None)
            if task is not None and not task.done():
                task.cancel()
        for row in rows:
            self._apply(row, outcome)
        return outcome

    def _dispatch_row(self, row: CanonicalRow) -> Awaitable[SubmissionOutcome]:
        return self._dispatch(row.sequence_id, [row], lambda: self._payload_builder(row))

    def _dispatch_group(self, key: str, rows: Sequence[CanonicalRow]) -> Awaitable[SubmissionOutcome]:
        return self._dispatch(key, rows, lambda: self._group_payload_builder(key, rows))

    def _check_submittable(self, row: Any) -> None:
        if not isinstance(row, CanonicalRow):
            raise InvalidInputError(f"expected CanonicalRow, got {type(row).__name__}")
        in_flight_group = self.group_submission and row.group_key is not None and row.group_key in self._pending
        if row.sequence_id in self._pending or in_flight_group:
            raise SubmissionError(
                f"row {row.sequence_id} is already being submitted",
                code=DUPLICATE_CODE,
                sequence_id=row.sequence_id,
            )
        if row.status not in SUBMITTABLE_STATUSES:
            raise SubmissionError(
                f"row {row.sequence_id} is {row.status.value}; only Valid or Error rows can be submitted",
                code="NOT_SUBMITTABLE",
                sequence_id=row.sequence_id,
            )

    async def submit(self, row: CanonicalRow) -> SubmissionOutcome:
        """Submit one row and wait for its outcome.

        Raises:
            SubmissionError: the row is already in flight (DUPLICATE_SUBMISSION) or
                not in a submittable status (NOT_SUBMITTABLE)
        """
        self._check_submittable(row)
        return await self._dispatch_row(row)

    async def submit_group(self, rows: Sequence[CanonicalRow]) -> SubmissionOutcome:
        """Submit the rows of one transaction as a single payload.

        Raises:
            InvalidInputError: ``rows`` is empty or spans more than one group
            SubmissionError: a member row is in flight or not submittable
        """
        rows = list(rows)
        for row in rows:
            self._check_submittable(row)
        keys = {row.group_key for row in rows}
        if not rows or len(keys) != 1 or None in keys:
            raise InvalidInputError("submit_group needs the rows of exactly one transaction")
        return await self._dispatch_group(keys.pop(), rows)

    def _plan(
        self, rows: Iterable[CanonicalRow], result: BatchSubmissionResult
    ) -> list[tuple[str, list[CanonicalRow]]]:
        """Split ``rows`` into dispatch units, first-seen order; unsubmittable ones go to skipped."""
        units: dict[str, list[CanonicalRow]] = {}
        blocked: set[str] = set()
        seen: set[str] = set()
        for row in rows:
            try:
                self._check_submittable(row)
            except SubmissionError as e:
                logger.debug("skipping row: %s", e)
                result.skipped_records.append(row)
                if self.group_submission and row.group_key is not None:
                    blocked.add(row.group_key)
                continue
            if row.sequence_id in seen:
                result.skipped_records.append(row)
                continue
            seen.add(row.sequence_id)
            key = row.group_key if self.group_submission and row.group_key is not None else row.sequence_id
            units.setdefault(key, []).append(row)

        plan: list[tuple[str, list[CanonicalRow]]] = []
        for key, members in units.items():
            if key in blocked:
                logger.warning("transaction %s has rows that cannot be submitted; skipping it", key)
                result.skipped_records.extend(members)
            else:
                plan.append((key, members))
        return plan

    async def submit_batch(self, rows: Iterable[CanonicalRow]) -> BatchSubmissionResult:
        """Submit every submittable row; the rest are returned as skipped.

        A failed row never stops the others. With group submission the rows of a
        transaction travel as one payload and share its outcome; a transaction with
        any unsubmittable row is skipped whole. In BATCHED mode a cancel() request
        stops dispatching further chunks; rows not dispatched are skipped.
        """
        if self._batch_running:
            raise SubmissionError("a batch submission is already running", code="BATCH_RUNNING")
        result = BatchSubmissionResult()
        plan = self._plan(rows, result)

        total = sum(len(members) for _, members in plan)
        chunk_size = (len(plan) or 1) if self.mode == SubmissionMode.DIRECT else self.batch_size
        self._batch_running = True
        self._cancel_requested = False
        tracker = ProgressTracker(total) if self.show_progress else None

        async def run(key: str, members: list[CanonicalRow]) -> None:
            if self.group_submission and members[0].group_key == key:
                outcome = await self._dispatch_group(key, members)
            else:
                outcome = await self._dispatch_row(members[0])
            for row in members:
                record = SubmissionRecord(entry=row, outcome=outcome)
                (result.success_records if outcome.success else result.error_records).append(record)
                if tracker is not None:
                    tracker.update(outcome.success)
            if self.on_progress is not None:
                self.on_progress({"processed": result.processed, "total": total})

        logger.info("submitting %d rows in %d payloads (%s mode)", total, len(plan), self.mode.value)
        try:
            for start in range(0, len(plan), chunk_size):
                if self._cancel_requested:
                    result.cancelled = True
                    left = [row for _, members in plan[start:] for row in members]
                    result.skipped_records.extend(left)
                    logger.warning("submission cancelled; %d rows not sent", len(left))
                    break
                await asyncio.gather(*(run(key, members) for key, members in plan[start:start + chunk_size]))
        finally:
            self._batch_running = False
            if tracker is not None:
                tracker.close()

        logger.info(
            "submission finished: %d succeeded, %d failed, %d skipped",
            len(result.success_records), len(result.error_records), len(result.skipped_records),
        )
        if self.on_complete is not None:
            self.on_complete(result)
        return result

    def cancel(self) -> CancelStatus:
        """Request cancellation of the running batch (BATCHED mode only)."""
        if self.mode == SubmissionMode.DIRECT:
            return CancelStatus.NOT_SUPPORTED
        if not self._batch_running:
            return CancelStatus.NOT_RUNNING
        if self._cancel_requested:
            return CancelStatus.ALREADY_REQUESTED
        self._cancel_requested = True
        logger.info("cancellation requested")
        return CancelStatus.CANCELLED
