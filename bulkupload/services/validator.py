from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import date
from decimal import Decimal
from typing import Any

from ..excel.reader import is_blank
from ..models.canonical_row import CanonicalRow, Severity, ValidationIssue
from ..models.config_models import DomainConfig, Settings
from ..models.constraint import FieldConstraint, FieldType
from ..models.errors import CrossRowValidationError, FieldValidationError, InvalidInputError
from ..models.validation_result import RowValidation, ValidationResult
from .rules import NotInFuture, RuleContext, build_group_rules, build_row_rules
from .transformer import parse_boolean, parse_date, parse_decimal

"""Validator: constraint registry + business rules -> row status.

Per row: required checks, then format checks in declaration order, then the
domain's business rules. Afterwards rows sharing a group key are checked by the
group rules; a failing group is recorded once in ``group_errors`` and every member
row gets a single GROUP_INVALID pointer so that its status reflects the group.
"""

__all__ = [
    "Validator",
    "GROUP_INVALID",
    "digit_counts",
]

logger = logging.getLogger(__name__)

GROUP_INVALID = "GROUP_INVALID"

_TYPE_NAMES = {
    FieldType.DATE: "a valid date",
    FieldType.DECIMAL: "a valid number",
    FieldType.BOOLEAN: "a valid yes/no value",
    FieldType.STRING: "valid text",
}


def digit_counts(value: Decimal) -> tuple[int, int]:
    """(integer digits, fraction digits) ignoring leading and trailing zeros.

    >>> digit_counts(Decimal("0012.3400"))
    (2, 2)
    """
    text = format(abs(value), "f")
    int_part, _, frac_part = text.partition(".")
    return len(int_part.lstrip("0")), len(frac_part.rstrip("0"))


class Validator:
    def __init__(self, domain: DomainConfig, settings: Settings | None = None, today: date | None = None) -> None:
        self.domain = domain
        self.settings = settings or Settings()
        self.context = RuleContext(
            constraints=domain.constraints,
            today=today or date.today(),
            tolerance=self.settings.validation.balance_tolerance,
            future_date_severity=self.settings.validation.future_date_severity,
        )
        self.rules = build_row_rules(domain.rules)
        self.group_rules = build_group_rules(domain.group_rules)

    # ------------------------------------------------------------------ rows

    def _issue(self, row: CanonicalRow, field: str, message: str, code: str | None,
               severity: Severity = Severity.ERROR) -> ValidationIssue:
        return ValidationIssue(
            field=field, message=message, severity=severity, code=code,
            sequence_id=row.sequence_id, group_key=row.group_key,
        )

    def _check_required(self, row: CanonicalRow) -> list[ValidationIssue]:
        issues = []
        for c in self.domain.constraints:
            if c.required and is_blank(row.data.get(c.field_name)) and c.field_name not in row.rejected:
                issues.append(self._issue(row, c.field_name, f"{c.display_label} is required", "REQUIRED"))
        return issues

    def _check_format(self, c: FieldConstraint, value: Any) -> list[tuple[str, str]]:
        """(message, code) pairs for every violated format rule of one present value."""
        label = c.display_label
        problems: list[tuple[str, str]] = []

        if c.type == FieldType.DATE:
            try:
                parse_date(value)
            except ValueError:
                problems.append((f"{label} '{value}' is not a valid date", "INVALID_TYPE"))
            return problems

        if c.type == FieldType.BOOLEAN:
            try:
                parse_boolean(value)
            except ValueError:
                problems.append((f"{label} '{value}' is not a valid yes/no value", "INVALID_TYPE"))
            return problems

        if c.type == FieldType.DECIMAL:
            try:
                number = parse_decimal(value)
            except ValueError:
                return [(f"{label} '{value}' is not a valid number", "INVALID_TYPE")]
            int_digits, frac_digits = digit_counts(number)
            if c.precision is not None and int_digits + frac_digits > c.precision:
                problems.append((f"{label} exceeds {c.precision} total digits", "PRECISION"))
            if c.scale is not None and frac_digits > c.scale:
                problems.append((f"{label} allows at most {c.scale} decimal places", "SCALE"))
            if c.min_value is not None and number < c.min_value:
                problems.append((f"{label} must be at least {c.min_value}", "MIN_VALUE"))
            if c.max_value is not None and number > c.max_value:
                problems.append((f"{label} must be at most {c.max_value}", "MAX_VALUE"))
            return problems

        text = str(value)
        if c.max_length is not None and len(text) > c.max_length:
            problems.append((f"{label} exceeds maximum length of {c.max_length}", "MAX_LENGTH"))
        if c.min_length is not None and len(text) < c.min_length:
            problems.append((f"{label} must be at least {c.min_length} characters", "MIN_LENGTH"))
        if c.pattern is not None and not re.fullmatch(c.pattern, text):
            problems.append((f"{label} has an invalid format", "PATTERN"))
        if c.allowed_values is not None and text not in c.allowed_values:
            problems.append((f"{label} must be one of: {', '.join(sorted(c.allowed_values))}", "NOT_ALLOWED"))
        return problems

    def _check_formats(self, row: CanonicalRow) -> list[ValidationIssue]:
        issues = []
        for c in self.domain.constraints:
            if c.field_name in row.rejected:
                raw = row.rejected[c.field_name]
                issues.append(self._issue(
                    row, c.field_name, f"{c.display_label} '{raw}' is not {_TYPE_NAMES[c.type]}", "INVALID_TYPE"
                ))
                continue
            value = row.data.get(c.field_name)
            if is_blank(value):
                continue
            for message, code in self._check_format(c, value):
                issues.append(self._issue(row, c.field_name, message, code))
        return issues

    def _rule_severity(self, rule: Any) -> Severity:
        if rule.severity is not None:
            return rule.severity
        if isinstance(rule, NotInFuture):
            return self.context.future_date_severity
        return Severity.ERROR

    def _check_rules(self, row: CanonicalRow) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []
        for rule in self.rules:
            try:
                rule.check(row, self.context)
            except FieldValidationError as e:
                severity = self._rule_severity(rule)
                issue = self._issue(row, e.field, e.message, e.code, severity)
                (warnings if severity == Severity.WARNING else errors).append(issue)

        for spec in self.domain.substructures:
            dropped = row.duplicates.get(spec.name)
            if not dropped:
                continue
            message = f"duplicate {spec.discriminator} in {spec.name}: {', '.join(dropped)}"
            if spec.on_duplicate == "error":
                errors.append(self._issue(row, spec.name, message, "DUPLICATE_SUBSTRUCTURE"))
            else:
                warnings.append(self._issue(
                    row, spec.name, f"{message} (first occurrence kept)", "DUPLICATE_SUBSTRUCTURE", Severity.WARNING
                ))
        return errors, warnings

    def _row_issues(self, row: CanonicalRow) -> tuple[list[ValidationIssue], list[ValidationIssue]]:
        if not isinstance(row, CanonicalRow):
            raise InvalidInputError(f"expected CanonicalRow, got {type(row).__name__}")
        errors = self._check_required(row) + self._check_formats(row)
        rule_errors, warnings = self._check_rules(row)
        return errors + rule_errors, warnings

    def validate_one(self, row: CanonicalRow) -> RowValidation:
        """Validate a single row (row level rules only) and apply its status."""
        errors, warnings = self._row_issues(row)
        row.apply_validation(errors, warnings)
        return RowValidation(is_valid=not errors, errors=errors, warnings=warnings)

    # ---------------------------------------------------------------- groups

    def _check_groups(self, rows: list[CanonicalRow]) -> dict[str, list[ValidationIssue]]:
        groups: dict[str, list[CanonicalRow]] = {}
        for row in rows:
            if row.group_key is not None:
                groups.setdefault(row.group_key, []).append(row)

        group_errors: dict[str, list[ValidationIssue]] = {}
        for key, members in groups.items():
            issues = []
            for rule in self.group_rules:
                try:
                    rule.check(key, members, self.context)
                except CrossRowValidationError as e:
                    issues.append(ValidationIssue(
                        field=e.field or "Group", message=e.message, code=e.code, group_key=key
                    ))
            if issues:
                group_errors[key] = issues
                logger.debug("group %s: %d cross-row errors", key, len(issues))
        return group_errors

    def validate_all(self, rows: Iterable[CanonicalRow]) -> ValidationResult:
        """Validate a batch and apply statuses.

        Raises:
            InvalidInputError: ``rows`` is not iterable or holds non-CanonicalRow items
        """
        if isinstance(rows, (str, bytes)) or not isinstance(rows, Iterable):
            raise InvalidInputError(f"expected an iterable of CanonicalRow, got {type(rows).__name__}")
        rows = list(rows)
        for index, row in enumerate(rows):
            if not isinstance(row, CanonicalRow):
                raise InvalidInputError(f"item {index} is {type(row).__name__}, expected CanonicalRow")

        per_row = [self._row_issues(row) for row in rows]
        group_errors = self._check_groups(rows)

        flat_errors: list[ValidationIssue] = []
        all_warnings: list[ValidationIssue] = []
        error_count = 0
        for row, (errors, warnings) in zip(rows, per_row):
            flat_errors.extend(errors)
            all_warnings.extend(warnings)
            if row.group_key in group_errors:
                issues = group_errors[row.group_key]
                detail = "; ".join(issue.message for issue in issues)
                errors = errors + [self._issue(
                    row, "Group",
                    f"Transaction {row.group_key} has {len(issues)} cross-row error(s): {detail}",
                    GROUP_INVALID,
                )]
            row.apply_validation(errors, warnings)
            if errors:
                error_count += 1
        for issues in group_errors.values():
            flat_errors.extend(issues)

        result = ValidationResult(
            entries=rows,
            valid_count=len(rows) - error_count,
            error_count=error_count,
            is_valid=error_count == 0,
            errors=flat_errors,
            group_errors=group_errors,
            warnings=all_warnings,
        )
        logger.info("validated %d rows: %d valid, %d with errors", len(rows), result.valid_count, error_count)
        return result
