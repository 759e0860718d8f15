from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from ..excel.reader import is_blank
from ..models.canonical_row import CanonicalRow, Severity
from ..models.constraint import ConstraintRegistry
from ..models.errors import CrossRowValidationError, FieldValidationError

"""Business rules referenced by the domain registries.

Row rules raise FieldValidationError and group rules raise CrossRowValidationError
for a single violation; the validator runs every rule and collects what they raise.
"""

__all__ = [
    "RuleContext",
    "RequiredIf",
    "RequiredWith",
    "CodeFormat",
    "NotInFuture",
    "Positive",
    "Balance",
    "IndicatorPairing",
    "SumEquals",
    "build_row_rules",
    "build_group_rules",
]


@dataclass(frozen=True)
class RuleContext:
    constraints: ConstraintRegistry
    today: date
    tolerance: Decimal
    future_date_severity: Severity = Severity.WARNING

    def label(self, field: str) -> str:
        return self.constraints.label_for(field)


def _text(value: Any) -> str:
    return "" if is_blank(value) else str(value).strip()


def _present(row: CanonicalRow, field: str) -> bool:
    # a rejected value was supplied, just not in a usable form
    return not is_blank(row.get(field)) or field in row.rejected


@dataclass(frozen=True)
class RequiredIf:
    """``field`` is required when ``when_field`` equals ``equals``."""
    field: str
    when_field: str
    equals: str
    message: str | None = None
    severity: Severity | None = None

    def check(self, row: CanonicalRow, ctx: RuleContext) -> None:
        if _text(row.get(self.when_field)) == str(self.equals) and not _present(row, self.field):
            raise FieldValidationError(
                self.field,
                self.message
                or f"{ctx.label(self.field)} is required when {ctx.label(self.when_field)} is '{self.equals}'",
                code="CONDITIONAL_REQUIRED",
            )


@dataclass(frozen=True)
class RequiredWith:
    """``field`` is required as soon as ``when_present`` has a value."""
    field: str
    when_present: str
    message: str | None = None
    severity: Severity | None = None

    def check(self, row: CanonicalRow, ctx: RuleContext) -> None:
        if _present(row, self.when_present) and not _present(row, self.field):
            raise FieldValidationError(
                self.field,
                self.message or f"{ctx.label(self.field)} is required when {ctx.label(self.when_present)} is provided",
                code="CONDITIONAL_REQUIRED",
            )


@dataclass(frozen=True)
class CodeFormat:
    field: str
    pattern: str
    message: str | None = None
    severity: Severity | None = None

    def check(self, row: CanonicalRow, ctx: RuleContext) -> None:
        value = _text(row.get(self.field))
        if value and not re.fullmatch(self.pattern, value):
            raise FieldValidationError(
                self.field, self.message or f"{ctx.label(self.field)} has an invalid format", code="CODE_FORMAT"
            )


@dataclass(frozen=True)
class NotInFuture:
    field: str
    message: str | None = None
    severity: Severity | None = None  # None -> settings.validation.future_date_severity

    def check(self, row: CanonicalRow, ctx: RuleContext) -> None:
        value = row.get(self.field)
        if not isinstance(value, str):
            return
        try:
            day = date.fromisoformat(value)
        except ValueError:
            return  # format check reports it
        if day > ctx.today:
            raise FieldValidationError(
                self.field, self.message or f"{ctx.label(self.field)} {value} is in the future", code="FUTURE_DATE"
            )


@dataclass(frozen=True)
class Positive:
    field: str
    message: str | None = None
    severity: Severity | None = None

    def check(self, row: CanonicalRow, ctx: RuleContext) -> None:
        value = row.get(self.field)
        if isinstance(value, Decimal) and value <= 0:
            raise FieldValidationError(
                self.field, self.message or f"{ctx.label(self.field)} must be a positive number", code="NOT_POSITIVE"
            )


@dataclass(frozen=True)
class Balance:
    """Signed amounts (credit +, debit -) of one group must net to zero."""
    amount_field: str
    indicator_field: str
    credit_code: str = "H"
    debit_code: str = "S"
    tolerance: Decimal | None = None  # None -> settings.validation.balance_tolerance

    def check(self, group_key: str, rows: Sequence[CanonicalRow], ctx: RuleContext) -> None:
        total = Decimal(0)
        for row in rows:
            amount = row.get(self.amount_field)
            if not isinstance(amount, Decimal):
                continue
            indicator = _text(row.get(self.indicator_field))
            if indicator == self.credit_code:
                total += amount
            elif indicator == self.debit_code:
                total -= amount
        tolerance = self.tolerance if self.tolerance is not None else ctx.tolerance
        if abs(total) > tolerance:
            raise CrossRowValidationError(
                group_key,
                f"Transaction with Sequence ID {group_key} is not balanced. Total difference: {total:.2f}",
                field=self.amount_field,
                code="UNBALANCED",
            )


@dataclass(frozen=True)
class IndicatorPairing:
    """An indicator on one sheet needs its counterpart indicator on another sheet."""
    indicator_field: str
    sheet: str
    indicator: str
    counterpart_sheet: str
    counterpart_indicator: str

    def _has(self, rows: Sequence[CanonicalRow], sheet: str, indicator: str) -> bool:
        return any(r.sheet == sheet and _text(r.get(self.indicator_field)) == indicator for r in rows)

    def check(self, group_key: str, rows: Sequence[CanonicalRow], ctx: RuleContext) -> None:
        if self._has(rows, self.sheet, self.indicator) and not self._has(
            rows, self.counterpart_sheet, self.counterpart_indicator
        ):
            raise CrossRowValidationError(
                group_key,
                f"Sequence ID {group_key}: Missing '{self.counterpart_indicator}' indicator in "
                f"{self.counterpart_sheet} corresponding to '{self.indicator}' in {self.sheet}",
                field=self.indicator_field,
                code="INDICATOR_PAIRING",
            )


@dataclass(frozen=True)
class SumEquals:
    """Header total (repeated on every joined line) equals the sum of line amounts."""
    total_field: str
    sum_field: str
    message: str | None = None
    tolerance: Decimal | None = None

    def check(self, group_key: str, rows: Sequence[CanonicalRow], ctx: RuleContext) -> None:
        totals = [r.get(self.total_field) for r in rows if isinstance(r.get(self.total_field), Decimal)]
        if not totals:
            return  # required check reports the missing total
        amounts = [r.get(self.sum_field) for r in rows if isinstance(r.get(self.sum_field), Decimal)]
        difference = totals[0] - sum(amounts, Decimal(0))
        tolerance = self.tolerance if self.tolerance is not None else ctx.tolerance
        if abs(difference) > tolerance:
            base = self.message or (
                f"{ctx.label(self.total_field)} does not equal the sum of {ctx.label(self.sum_field)}"
            )
            raise CrossRowValidationError(
                group_key,
                f"{base} (difference {difference:.2f})",
                field=self.total_field,
                code="SUM_MISMATCH",
            )


def _severity(spec: Mapping[str, Any]) -> Severity | None:
    return Severity(spec["severity"]) if spec.get("severity") else None


def _decimal(value: Any) -> Decimal | None:
    return None if value is None else Decimal(str(value))


def _build_row_rule(spec: Mapping[str, Any]) -> Any:
    kind = spec["type"]
    if kind == "required_if":
        return RequiredIf(spec["field"], spec["when_field"], str(spec["equals"]), spec.get("message"), _severity(spec))
    if kind == "required_with":
        return RequiredWith(spec["field"], spec["when_present"], spec.get("message"), _severity(spec))
    if kind == "code_format":
        return CodeFormat(spec["field"], spec["pattern"], spec.get("message"), _severity(spec))
    if kind == "not_in_future":
        return NotInFuture(spec["field"], spec.get("message"), _severity(spec))
    if kind == "positive":
        return Positive(spec["field"], spec.get("message"), _severity(spec))
    raise ValueError(f"unknown rule type '{kind}'")


def build_row_rules(specs: Sequence[Mapping[str, Any]]) -> list[Any]:
    return [_build_row_rule(s) for s in specs]


def build_group_rules(specs: Sequence[Mapping[str, Any]]) -> list[Any]:
    rules: list[Any] = []
    for spec in specs:
        kind = spec["type"]
        if kind == "balance":
            rules.append(Balance(
                spec["amount_field"],
                spec["indicator_field"],
                spec.get("credit_code", "H"),
                spec.get("debit_code", "S"),
                _decimal(spec.get("tolerance")),
            ))
        elif kind == "indicator_pairing":
            for pair in spec["pairs"]:
                rules.append(IndicatorPairing(
                    spec["indicator_field"],
                    pair["sheet"],
                    pair["indicator"],
                    pair["counterpart_sheet"],
                    pair["counterpart_indicator"],
                ))
        elif kind == "sum_equals":
            rules.append(SumEquals(
                spec["total_field"], spec["sum_field"], spec.get("message"), _decimal(spec.get("tolerance"))
            ))
        else:
            raise ValueError(f"unknown group rule type '{kind}'")
    return rules
