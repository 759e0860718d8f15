from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from bulkupload.config.loader import ConfigError, load_domain, load_settings
from bulkupload.excel.reader import is_blank, read_workbook
from bulkupload.logging.init import log_summary, set_debug, setup_logging
from bulkupload.models.errors import BulkUploadError
from bulkupload.services.aggregator import render_summary_line
from bulkupload.services.export import STATUS_FILTERS
from bulkupload.services.session import UploadSession
from bulkupload.services.template import write_template

"""CLI entrypoint.

    python -m bulkupload.cli <workbook> --domain grn [--config upload.yml]
        [--export out.xlsx] [--status all|success|error] [--group-by FIELD]
        [--inspect-data] [--debug]
    python -m bulkupload.cli --domain grn --template grn_template.xlsx

Parses, transforms and validates one workbook, logs a SUMMARY line and optionally
writes an export. Exit codes: 0 all rows valid, 2 some rows have errors, 1 fatal
(configuration, missing sheet, unreadable file, export without data).
"""

__all__ = [
    "main",
    "EXIT_SUCCESS_ALL",
    "EXIT_PARTIAL_FAILURE",
    "EXIT_FATAL",
]

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

DEFAULT_CONFIG_PATH = Path("config/upload.yml")


def _load_env_file(path: Path, override: bool = False) -> None:
    """Load .env with python-dotenv (existing environment wins unless ``override``)."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="bulkupload", description="Validate and export spreadsheet bulk uploads")
    p.add_argument("workbook", type=Path, nargs="?", help="Workbook to process (.xlsx, .xls, .csv)")
    p.add_argument("--domain", help="Domain registry name (e.g. grn) or path to a domain YAML")
    p.add_argument("--config", type=Path, help="Settings YAML (default: $BULKUPLOAD_CONFIG or config/upload.yml)")
    p.add_argument("--export", type=Path, help="Write an export file (.xlsx or .csv)")
    p.add_argument("--status", choices=list(STATUS_FILTERS), default="all", help="Rows to export")
    p.add_argument("--group-by", help="Export one sheet per value of this field")
    p.add_argument("--inspect-data", action="store_true", help="Print sheet headers & first rows then exit")
    p.add_argument("--template", type=Path, help="Write a blank upload template for --domain and exit")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    return p.parse_args(argv)


def _config_path(arg: Path | None) -> Path | None:
    if arg is not None:
        return arg
    env = os.getenv("BULKUPLOAD_CONFIG")
    if env:
        return Path(env)
    return DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None


def _inspect_data(path: Path) -> int:
    try:
        workbook = read_workbook(path)
    except (OSError, ValueError) as e:
        print(f"inspect: cannot read {path}: {e}")
        return EXIT_FATAL
    print(f"FILE: {workbook.name}")
    for name in workbook.sheet_names:
        rows = workbook.sheet_rows(name)
        if not rows:
            print(f"  SHEET: {name} (empty)")
            continue
        headers = [str(h) for h in rows[0] if not is_blank(h)]
        print(f"  SHEET: {name} rows={len(rows) - 1} cols={headers}")
        for r in rows[1:4]:
            print("    sample_row=", [v.isoformat() if hasattr(v, "isoformat") else v for v in r])
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # only read sys.argv when no list is given, so main([]) in tests stays isolated
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"))

    if args.debug:
        set_debug(logger)
        logger.debug("debug mode enabled")

    if args.template is None and args.workbook is None:
        logger.error("a workbook is required unless --template is given")
        return EXIT_FATAL

    if args.inspect_data and args.workbook is not None:
        return _inspect_data(args.workbook)

    if not args.domain:
        logger.error("--domain is required")
        return EXIT_FATAL

    try:
        settings = load_settings(_config_path(args.config))
        domain = load_domain(args.domain)
    except ConfigError as e:
        logger.error("config: %s", e)
        return EXIT_FATAL

    if args.template is not None:
        try:
            write_template(domain, args.template)
        except OSError as e:
            logger.error("template: %s", e)
            return EXIT_FATAL
        return EXIT_SUCCESS_ALL

    session = UploadSession(domain, settings)
    try:
        session.load(args.workbook)
        result = session.validate()
    except BulkUploadError as e:
        logger.error("%s", e)
        return EXIT_FATAL

    for issue in result.errors[:50]:
        where = f"row {issue.sequence_id}" if issue.sequence_id else f"group {issue.group_key}"
        logger.warning("%s %s: %s", where, issue.field, issue.message)
    if len(result.errors) > 50:
        logger.warning("... %d more errors", len(result.errors) - 50)

    if args.export is not None:
        try:
            session.export_to(args.export, args.status, args.group_by)
        except BulkUploadError as e:
            logger.error("export: %s", e)
            return EXIT_FATAL

    log_summary(render_summary_line(session.summary(), session.elapsed_seconds))
    return EXIT_SUCCESS_ALL if result.is_valid else EXIT_PARTIAL_FAILURE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
