from __future__ import annotations

import logging
import zipfile
from datetime import UTC, date, datetime
from collections.abc import Callable
from pathlib import Path
from typing import Any

from ..excel.reader import SheetParser, Workbook, read_workbook
from ..logging.error_log import ErrorLogBuffer
from ..models.canonical_row import CanonicalRow
from ..models.config_models import DomainConfig, Settings
from ..models.errors import InvalidInputError
from ..models.submission import BatchSubmissionResult
from ..models.validation_result import BatchSummary, ValidationResult
from .aggregator import summarize
from .export import ExportConsolidator
from .reconciler import SubmissionReconciler, Transport
from .transformer import RowTransformer
from .validator import Validator

"""Upload session: one workbook through parse -> transform -> validate -> submit -> export.

The session owns the rows of one upload; every stage mutates them only through
CanonicalRow's own methods, and summaries are recomputed from the rows on demand.
"""

__all__ = [
    "UploadSession",
]

logger = logging.getLogger(__name__)

_UNREADABLE = (OSError, ValueError, zipfile.BadZipFile)


class UploadSession:
    """Pipeline driver for a single upload.

    Example:
        session = UploadSession(load_domain("grn"), load_settings(None))
        session.load(Path("grn.xlsx"))
        result = session.validate()
        await session.submit(transport)
        Path("out.xlsx").write_bytes(session.export("all"))
    """

    def __init__(
        self,
        domain: DomainConfig,
        settings: Settings | None = None,
        *,
        today: date | None = None,
        error_log: ErrorLogBuffer | None = None,
        on_validation_complete: Callable[[ValidationResult], None] | None = None,
    ) -> None:
        self.domain = domain
        self.settings = settings or Settings()
        self.error_log = error_log or ErrorLogBuffer()
        self.parser = SheetParser(domain)
        self.transformer = RowTransformer(domain)
        self.validator = Validator(domain, self.settings, today=today)
        self.exporter = ExportConsolidator.from_domain(domain)
        self.rows: list[CanonicalRow] = []
        self.source_name = "-"
        self.started_at = datetime.now(UTC)
        self.last_validation: ValidationResult | None = None
        self.on_validation_complete = on_validation_complete

    @property
    def elapsed_seconds(self) -> float:
        return (datetime.now(UTC) - self.started_at).total_seconds()

    def load_workbook(self, workbook: Workbook) -> list[CanonicalRow]:
        """Parse and transform an already buffered workbook.

        Raises:
            MissingSheetError: a required sheet is missing
        """
        self.source_name = workbook.name
        raws = self.parser.parse(workbook)
        self.rows = self.transformer.transform_all(raws)
        self.last_validation = None
        logger.info("%s: %d rows loaded for %s", workbook.name, len(self.rows), self.domain.title)
        return self.rows

    def load(self, path: Path, keep_na_strings: list[str] | None = None) -> list[CanonicalRow]:
        """Read ``path`` completely, then parse and transform it.

        Raises:
            InvalidInputError: the file is missing, of an unsupported type or unreadable
            MissingSheetError: a required sheet is missing
        """
        try:
            workbook = read_workbook(path, keep_na_strings=keep_na_strings)
        except _UNREADABLE as e:
            raise InvalidInputError(f"cannot read {path}: {e}") from e
        return self.load_workbook(workbook)

    def validate(self) -> ValidationResult:
        """Validate every row; ``on_validation_complete`` receives the result."""
        result = self.validator.validate_all(self.rows)
        self.last_validation = result
        if self.on_validation_complete is not None:
            self.on_validation_complete(result)
        return result

    def summary(self) -> BatchSummary:
        return summarize(self.rows)

    async def submit(self, transport: Transport, **options: Any) -> BatchSubmissionResult:
        """Submit every Valid/Error row; failures are flushed to the error log.

        ``options`` override the reconciler settings (mode, timeout_seconds,
        on_progress, on_complete, payload_builder, ...).
        """
        reconciler = SubmissionReconciler.from_config(
            transport,
            self.domain,
            self.settings,
            error_log=self.error_log,
            source_name=self.source_name,
            **options,
        )
        try:
            return await reconciler.submit_batch(self.rows)
        finally:
            path = self.error_log.flush()
            if path is not None:
                logger.info("error log written to %s", path)

    def export(self, status_filter: str = "all", fmt: str | None = None, group_by: str | None = None) -> bytes:
        fmt = fmt or self.settings.export.default_format
        metadata = {"source": self.source_name}
        if group_by:
            return self.exporter.export_grouped(self.rows, group_by, fmt, status_filter, metadata)
        return self.exporter.export(self.rows, fmt, status_filter, metadata)

    def export_to(self, path: Path, status_filter: str = "all", group_by: str | None = None) -> Path:
        """Write an export in the format named by ``path``'s suffix (settings default when none)."""
        fmt = path.suffix.lstrip(".") or self.settings.export.default_format
        if not path.suffix:
            path = path.with_suffix(f".{fmt}")
        data = self.export(status_filter, fmt, group_by)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info("export written to %s (%d bytes)", path, len(data))
        return path
