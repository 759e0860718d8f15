from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

"""Field constraint registry.

A domain's constraints are loaded once from its YAML registry (see
bulkupload.config.loader.load_domain) and never mutated afterwards.
"""

__all__ = [
    "FieldType",
    "FieldConstraint",
    "ConstraintRegistry",
]


class FieldType(str, Enum):
    STRING = "string"
    DATE = "date"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"


@dataclass(frozen=True)
class FieldConstraint:
    """Validation rules for one canonical field.

    ``label`` is the human readable name used in messages; it also acts as an
    implicit header alias.
    """
    field_name: str
    required: bool = False
    type: FieldType = FieldType.STRING
    label: str | None = None
    max_length: int | None = None
    min_length: int | None = None
    pattern: str | None = None
    precision: int | None = None  # total significant digits
    scale: int | None = None  # digits after the decimal point
    min_value: Decimal | None = None
    max_value: Decimal | None = None
    allowed_values: frozenset[str] | None = None

    @property
    def display_label(self) -> str:
        return self.label or self.field_name

    @classmethod
    def from_mapping(cls, field_name: str, data: Mapping[str, Any]) -> FieldConstraint:
        """Build a constraint from a registry entry (YAML mapping)."""
        allowed = data.get("allowed_values")
        return cls(
            field_name=field_name,
            required=bool(data.get("required", False)),
            type=FieldType(data.get("type", FieldType.STRING.value)),
            label=data.get("label"),
            max_length=data.get("max_length"),
            min_length=data.get("min_length"),
            pattern=data.get("pattern"),
            precision=data.get("precision"),
            scale=data.get("scale"),
            min_value=_to_decimal(data.get("min_value")),
            max_value=_to_decimal(data.get("max_value")),
            allowed_values=frozenset(str(v) for v in allowed) if allowed else None,
        )


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    # str() first so YAML floats such as 0.001 keep their written digits
    return Decimal(str(value))


class ConstraintRegistry:
    """Ordered, read-only collection of FieldConstraint keyed by field name."""

    def __init__(self, constraints: Iterable[FieldConstraint]) -> None:
        self._by_name: dict[str, FieldConstraint] = {}
        for c in constraints:
            if c.field_name in self._by_name:
                raise ValueError(f"duplicate constraint for field '{c.field_name}'")
            self._by_name[c.field_name] = c

    @classmethod
    def from_mapping(cls, data: Mapping[str, Mapping[str, Any]]) -> ConstraintRegistry:
        return cls([FieldConstraint.from_mapping(name, spec or {}) for name, spec in data.items()])

    def get(self, field_name: str) -> FieldConstraint | None:
        return self._by_name.get(field_name)

    def __contains__(self, field_name: object) -> bool:
        return field_name in self._by_name

    def __iter__(self) -> Iterator[FieldConstraint]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    @property
    def field_names(self) -> list[str]:
        return list(self._by_name)

    @property
    def required_fields(self) -> list[str]:
        return [c.field_name for c in self._by_name.values() if c.required]

    def label_for(self, field_name: str) -> str:
        c = self._by_name.get(field_name)
        return c.display_label if c else field_name
