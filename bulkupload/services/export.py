from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from ..excel.reader import cell_to_key, is_blank
from ..models.canonical_row import CanonicalRow, RowStatus
from ..models.config_models import DomainConfig, ExportPolicy
from ..models.errors import ExportError, NoDataError
from .sinks import Formatter, get_formatter

"""Export consolidation.

Rows become flat records: sequence id and status first, then canonical fields,
unmapped columns and response fields. The various message columns are folded into
one ``Message`` chosen by status, internal fields are dropped, and columns follow the
domain's declared order with the rest in first-seen order.
"""

__all__ = [
    "ExportConsolidator",
    "STATUS_FILTERS",
    "READY_MESSAGE",
]

logger = logging.getLogger(__name__)

STATUS_FILTERS: dict[str, frozenset[RowStatus] | None] = {
    "success": frozenset({RowStatus.VALID, RowStatus.SUCCESS}),
    "error": frozenset({RowStatus.INVALID, RowStatus.ERROR}),
    "all": None,
}
READY_MESSAGE = "Ready for submission"
_FALLBACK_MESSAGES = {
    RowStatus.SUCCESS: "Processed successfully",
    RowStatus.ERROR: "Submission failed",
}
BLANK_GROUP = "(blank)"


class ExportConsolidator:
    def __init__(self, policy: ExportPolicy, sequence_field: str = "SequenceID", domain_name: str = "") -> None:
        self.policy = policy
        self.sequence_field = sequence_field
        self.domain_name = domain_name
        self._excluded = [re.compile(p) for p in policy.excluded_patterns]

    @classmethod
    def from_domain(cls, domain: DomainConfig) -> ExportConsolidator:
        return cls(domain.export, domain.sequence_field, domain.name)

    # -------------------------------------------------------------- records

    def filter_rows(self, rows: Iterable[CanonicalRow], status_filter: str = "all") -> list[CanonicalRow]:
        """Rows matching ``status_filter``.

        Raises:
            ExportError: unknown filter
            NoDataError: nothing left after filtering
        """
        if status_filter not in STATUS_FILTERS:
            raise ExportError(
                f"unknown status filter '{status_filter}' (expected one of {', '.join(STATUS_FILTERS)})"
            )
        wanted = STATUS_FILTERS[status_filter]
        selected = [r for r in rows if wanted is None or r.status in wanted]
        if not selected:
            raise NoDataError(status_filter)
        return selected

    def _is_excluded(self, name: str) -> bool:
        if name in self.policy.mandatory_columns:
            return False
        if name in self.policy.excluded_fields or name in self.policy.legacy_message_fields:
            return True
        return any(p.search(name) for p in self._excluded)

    def _legacy_message(self, row: CanonicalRow) -> str | None:
        for source in (row.response_fields, row.extra):
            for name in self.policy.legacy_message_fields:
                value = source.get(name)
                if not is_blank(value):
                    return str(value).strip()
        return None

    def message_for(self, row: CanonicalRow) -> str:
        """The single Message column value for ``row``."""
        if row.status in (RowStatus.SUCCESS, RowStatus.ERROR):
            if row.message and row.message.strip():
                return row.message.strip()
            return self._legacy_message(row) or _FALLBACK_MESSAGES[row.status]
        if row.status == RowStatus.INVALID:
            return "; ".join(issue.message for issue in row.validation_errors)
        if row.status == RowStatus.VALID:
            return READY_MESSAGE
        return ""

    def to_record(self, row: CanonicalRow) -> dict[str, Any]:
        record: dict[str, Any] = {self.sequence_field: row.sequence_id, "Status": row.status.value}
        for source in (row.data, row.extra, row.response_fields):
            for name, value in source.items():
                if name in record or self._is_excluded(name):
                    continue
                if isinstance(value, (dict, list)):
                    continue
                record[name] = value
        record["Message"] = self.message_for(row)
        return record

    def build_export_records(self, rows: Iterable[CanonicalRow], status_filter: str = "all") -> list[dict[str, Any]]:
        return [self.to_record(r) for r in self.filter_rows(rows, status_filter)]

    def column_order(self, records: list[dict[str, Any]]) -> list[str]:
        """Declared columns first, then first-seen; all-blank optional columns dropped."""
        seen: list[str] = []
        known: set[str] = set()
        for record in records:
            for name in record:
                if name not in known:
                    known.add(name)
                    seen.append(name)
        ordered = [c for c in self.policy.columns if c in known]
        ordered += [c for c in seen if c not in ordered]
        mandatory = set(self.policy.mandatory_columns)
        return [
            c for c in ordered
            if c in mandatory or any(not is_blank(r.get(c)) for r in records)
        ]

    # ------------------------------------------------------------- grouping

    def _group_rows(
        self, rows: Iterable[CanonicalRow], field: str | None, status_filter: str
    ) -> dict[str, list[CanonicalRow]]:
        field = field or self.policy.group_by
        if not field:
            raise ExportError("no group-by field given and the domain declares none")
        groups: dict[str, list[CanonicalRow]] = {}
        for row in self.filter_rows(rows, status_filter):
            if field == self.sequence_field:
                value = row.sequence_id
            else:
                value = row.get(field, row.response_fields.get(field))
            key = cell_to_key(value) or BLANK_GROUP
            groups.setdefault(key, []).append(row)
        return groups

    def group_by(
        self, rows: Iterable[CanonicalRow], field: str | None = None, status_filter: str = "all"
    ) -> dict[str, list[dict[str, Any]]]:
        """Export records of the filtered rows grouped by ``field`` (policy default).

        Keys keep first-seen order; rows with a blank value share the '(blank)' group.

        Raises:
            ExportError: no field given and the domain declares no default
            NoDataError: nothing matches ``status_filter``
        """
        groups = self._group_rows(rows, field, status_filter)
        return {key: [self.to_record(r) for r in members] for key, members in groups.items()}

    # --------------------------------------------------------------- output

    def _metadata(self, status_filter: str, count: int, extra: Mapping[str, Any] | None) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "domain": self.domain_name,
            "status_filter": status_filter,
            "records": count,
            "exported_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        }
        metadata.update(extra or {})
        return metadata

    @staticmethod
    def _formatter(formatter: Formatter | str) -> Formatter:
        return get_formatter(formatter) if isinstance(formatter, str) else formatter

    def export(
        self,
        rows: Iterable[CanonicalRow],
        formatter: Formatter | str = "xlsx",
        status_filter: str = "all",
        metadata: Mapping[str, Any] | None = None,
    ) -> bytes:
        """Render the filtered rows with ``formatter`` (instance or registered name).

        Raises:
            NoDataError: nothing matches ``status_filter``
            ExportError: unknown format or filter
        """
        sink = self._formatter(formatter)
        records = self.build_export_records(rows, status_filter)
        columns = self.column_order(records)
        logger.info("exporting %d records (%s, filter=%s)", len(records), sink.extension, status_filter)
        return sink.write(records, columns, self._metadata(status_filter, len(records), metadata))

    def export_grouped(
        self,
        rows: Iterable[CanonicalRow],
        field: str | None = None,
        formatter: Formatter | str = "xlsx",
        status_filter: str = "all",
        metadata: Mapping[str, Any] | None = None,
    ) -> bytes:
        sink = self._formatter(formatter)
        grouped = self.group_by(rows, field, status_filter)
        all_records = [r for records in grouped.values() for r in records]
        columns = self.column_order(all_records)
        logger.info("exporting %d records in %d groups (%s)", len(all_records), len(grouped), sink.extension)
        return sink.write_grouped(grouped, columns, self._metadata(status_filter, len(all_records), metadata))
