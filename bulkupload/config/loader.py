from __future__ import annotations

import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.canonical_row import Severity
from ..models.config_models import (
    DomainConfig,
    ExportPolicy,
    ExportSettings,
    Settings,
    SheetSpec,
    SubmissionSettings,
    SubstructureSpec,
    ValidationSettings,
    normalize_header,
    normalize_sheet_name,
)
from ..models.constraint import ConstraintRegistry
from ..models.submission import SubmissionMode

"""Configuration loader.

Responsibilities:
- Load process settings (config/upload.yml) and per-domain registries
  (bulkupload/config/domains/<name>.yml) with yaml.safe_load
- Validate both against their JSON schemas before touching any key
- Apply defaults and return frozen dataclasses
"""

__all__ = [
    "ConfigError",
    "load_settings",
    "load_domain",
    "available_domains",
    "DOMAINS_DIR",
]

_CONFIG_DIR = Path(__file__).parent
SETTINGS_SCHEMA_PATH = _CONFIG_DIR / "settings_schema.json"
DOMAIN_SCHEMA_PATH = _CONFIG_DIR / "domain_schema.json"
DOMAINS_DIR = _CONFIG_DIR / "domains"

DEFAULT_EXCLUDED_FIELDS = frozenset(
    {"index", "ProcessedAt", "ErrorCode", "error", "errorCode", "details", "ValidationErrors"}
)
DEFAULT_EXCLUDED_PATTERNS = (r"(?i)uuid$",)


class ConfigError(Exception):
    pass


def _validate_against(data: Any, schema_path: Path) -> None:
    """Validate config data against a JSON schema.

    Raises:
        ConfigError: schema file missing or not JSON, or data fails validation
    """
    if not schema_path.exists():
        raise ConfigError(f"config schema not found: {schema_path}")
    try:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        location = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"config validation failed at {location}: {e.message}") from e


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e


def load_settings(path: Path | None = None) -> Settings:
    """Load process settings; ``None`` returns the defaults."""
    if path is None:
        return Settings()
    data = _read_yaml(path)
    _validate_against(data, SETTINGS_SCHEMA_PATH)

    v = data.get("validation", {})
    s = data.get("submission", {})
    e = data.get("export", {})
    defaults = Settings()
    return Settings(
        validation=ValidationSettings(
            balance_tolerance=Decimal(str(v.get("balance_tolerance", defaults.validation.balance_tolerance))),
            future_date_severity=Severity(v.get("future_date_severity", defaults.validation.future_date_severity.value)),
        ),
        submission=SubmissionSettings(
            mode=SubmissionMode(s.get("mode", defaults.submission.mode.value)),
            timeout_seconds=float(s.get("timeout_seconds", defaults.submission.timeout_seconds)),
            batch_size=int(s.get("batch_size", defaults.submission.batch_size)),
        ),
        export=ExportSettings(
            default_format=e.get("default_format", defaults.export.default_format),
            output_directory=e.get("output_directory", defaults.export.output_directory),
        ),
    )


def _domain_dir() -> Path:
    override = os.getenv("BULKUPLOAD_DOMAIN_DIR")
    return Path(override) if override else DOMAINS_DIR


def available_domains() -> list[str]:
    return sorted(p.stem for p in _domain_dir().glob("*.yml"))


def _resolve_domain_path(name_or_path: str | Path) -> Path:
    candidate = Path(name_or_path)
    if candidate.suffix in (".yml", ".yaml"):
        return candidate
    path = _domain_dir() / f"{name_or_path}.yml"
    if not path.exists():
        raise ConfigError(
            f"unknown domain '{name_or_path}' (available: {', '.join(available_domains()) or 'none'})"
        )
    return path


def _build_aliases(data: dict[str, Any], registry: ConstraintRegistry, sequence_field: str) -> dict[str, str]:
    aliases: dict[str, str] = {}

    def add(text: str, canonical: str) -> None:
        key = normalize_header(text)
        existing = aliases.get(key)
        if existing is not None and existing != canonical:
            raise ConfigError(f"header alias '{text}' maps to both '{existing}' and '{canonical}'")
        aliases[key] = canonical

    add(sequence_field, sequence_field)
    for c in registry:
        add(c.field_name, c.field_name)
        if c.label:
            add(c.label, c.field_name)
    for canonical, texts in data.get("header_aliases", {}).items():
        add(canonical, canonical)
        for text in texts:
            add(text, canonical)
    return aliases


def load_domain(name_or_path: str | Path) -> DomainConfig:
    """Load a domain registry by bundled name ('grn') or by YAML path."""
    path = _resolve_domain_path(name_or_path)
    data = _read_yaml(path)
    _validate_against(data, DOMAIN_SCHEMA_PATH)

    registry = ConstraintRegistry.from_mapping(data.get("constraints", {}))
    sequence_field = data.get("sequence_field", "SequenceID")
    sheets = tuple(
        SheetSpec(
            name=s["name"],
            role=s.get("role", "single"),
            keywords=tuple(normalize_sheet_name(k) for k in s.get("keywords", [])),
            required=s.get("required", True),
            columns=tuple(s.get("columns", [])),
        )
        for s in data["sheets"]
    )
    roles = [s.role for s in sheets]
    if "lines" in roles and roles.count("header") != 1:
        raise ConfigError(f"domain '{data['name']}': line sheets need exactly one header sheet")
    known = set(registry.field_names) | set(data.get("header_aliases", {})) | {sequence_field}
    for s in sheets:
        unknown = [c for c in s.columns if c not in known]
        if unknown:
            raise ConfigError(f"domain '{data['name']}': sheet '{s.name}' lists unknown columns: {', '.join(unknown)}")

    substructures = tuple(
        SubstructureSpec(
            name=s["name"],
            column_pattern=s["column_pattern"],
            group_fields=dict(s["group_fields"]),
            discriminator=s["discriminator"],
            on_duplicate=s.get("on_duplicate", "keep_first"),
        )
        for s in data.get("substructures", [])
    )

    export_raw = data.get("export", {})
    export = ExportPolicy(
        columns=tuple(export_raw.get("columns", [])),
        mandatory_columns=(sequence_field, "Status", "Message"),
        excluded_fields=DEFAULT_EXCLUDED_FIELDS | frozenset(export_raw.get("excluded_fields", [])),
        excluded_patterns=DEFAULT_EXCLUDED_PATTERNS + tuple(export_raw.get("excluded_patterns", [])),
        legacy_message_fields=tuple(export_raw.get("legacy_message_fields", ["ErrorMessage", "SuccessMessage"])),
        group_by=export_raw.get("group_by"),
    )

    return DomainConfig(
        name=data["name"],
        title=data.get("title", data["name"]),
        sheets=sheets,
        constraints=registry,
        header_aliases=_build_aliases(data, registry, sequence_field),
        sequence_field=sequence_field,
        join_key=data.get("join_key"),
        group_by_sequence=bool(data.get("group_by_sequence", False)),
        unmapped_headers=data.get("unmapped_headers", "keep"),
        metadata_fields=frozenset(data.get("metadata_fields", [])) | {sequence_field},
        rules=tuple(data.get("rules", [])),
        group_rules=tuple(data.get("group_rules", [])),
        substructures=substructures,
        document_id_fields=tuple(data.get("document_id_fields", [])),
        items_field=data.get("items_field", "Items"),
        export=export,
    )
