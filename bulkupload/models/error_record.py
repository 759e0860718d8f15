from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for the JSON Lines error log.

One record per failed row submission (or per fatal file-level error, with
sequence_id="-"). The key set is fixed; to_json_line never adds keys.
"""

__all__ = [
    "ErrorRecord",
]


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        file: uploaded workbook name
        sheet: sheet the row came from
        sequence_id: row sequence id, "-" for file-level errors
        error_type: UPPER_SNAKE classification (TIMEOUT, PARSE_ERROR, ...)
        message: server or local error message
    """
    timestamp: str
    file: str
    sheet: str
    sequence_id: str
    error_type: str
    message: str

    @staticmethod
    def create(file: str, sheet: str, sequence_id: str, error_type: str, message: str) -> ErrorRecord:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            file=file,
            sheet=sheet,
            sequence_id=sequence_id,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)
