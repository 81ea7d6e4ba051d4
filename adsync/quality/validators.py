"""
Page Validation Module

Rule checks run over each insights page, held as a polars DataFrame, before
the page is merged into the session timeline.

Error rules reject the page with MalformedPage:
- ad_id and date present on every row
- one row per (ad_id, date) inside the page
- no (ad_id, date) already merged by an earlier page of the same session
- every date inside the requested range
- metric columns non-negative

Warning rules are logged and the page is still merged:
- clicks and reach not above impressions
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

import polars as pl
import structlog

from adsync.core.models import DateRange, utc_now
from adsync.exceptions import MalformedPage

logger = structlog.get_logger(__name__)

PAGE_KEY = ["ad_id", "date"]
METRIC_COLUMNS = ["impressions", "clicks", "spend", "reach", "frequency", "conversions"]


class ValidationSeverity(str, Enum):
    """Severity levels for validation failures"""
    ERROR = "error"  # page rejected
    WARNING = "warning"  # logged, page merged


class ValidationStatus(str, Enum):
    """Overall validation status"""
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class ValidationCheck:
    """Outcome of one rule over one page"""
    name: str
    passed: bool
    severity: ValidationSeverity
    message: str
    failed_rows: int = 0
    total_rows: int = 0


@dataclass
class ValidationResult:
    """All rule outcomes for a page; counts and status derive from them"""
    checks: List[ValidationCheck] = field(default_factory=list)
    strict: bool = False
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    @property
    def errors(self) -> List[ValidationCheck]:
        return [c for c in self.checks if not c.passed and c.severity == ValidationSeverity.ERROR]

    @property
    def warnings(self) -> List[ValidationCheck]:
        return [c for c in self.checks if not c.passed and c.severity == ValidationSeverity.WARNING]

    @property
    def total_checks(self) -> int:
        return len(self.checks)

    @property
    def passed_checks(self) -> int:
        return sum(1 for c in self.checks if c.passed)

    @property
    def failed_checks(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    @property
    def status(self) -> ValidationStatus:
        if self.errors or (self.strict and self.warnings):
            return ValidationStatus.FAILED
        if self.warnings:
            return ValidationStatus.PARTIAL
        return ValidationStatus.PASSED

    @property
    def success_rate(self) -> float:
        """Percentage of passed checks"""
        if not self.checks:
            return 100.0
        return (self.passed_checks / self.total_checks) * 100


@dataclass
class _Rule:
    name: str
    columns: List[str]
    severity: ValidationSeverity
    count_failures: Callable[[pl.DataFrame], int]
    describe: Callable[[int], str]

    def run(self, df: pl.DataFrame) -> ValidationCheck:
        absent = [c for c in self.columns if c not in df.columns]
        if absent:
            return ValidationCheck(
                name=self.name,
                passed=False,
                severity=self.severity,
                message=f"Column '{absent[0]}' not found",
                failed_rows=len(df),
                total_rows=len(df),
            )

        failures = int(self.count_failures(df))
        return ValidationCheck(
            name=self.name,
            passed=failures == 0,
            severity=self.severity,
            message=self.describe(failures) if failures else "ok",
            failed_rows=failures,
            total_rows=len(df),
        )


class DataValidator:
    """
    Chainable rule set over tabular pages.

    Example:
        validator = DataValidator().add_not_null_check("ad_id").add_unique_check(["ad_id", "date"])
        result = validator.validate(df)
    """

    def __init__(self, strict_mode: bool = False):
        self.strict_mode = strict_mode  # warnings fail the page too
        self._rules: List[_Rule] = []

    def _add(self, rule: _Rule) -> "DataValidator":
        self._rules.append(rule)
        return self

    def add_not_null_check(
        self,
        column: str,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        return self._add(_Rule(
            name=f"not_null_{column}",
            columns=[column],
            severity=severity,
            count_failures=lambda df: df[column].null_count(),
            describe=lambda n: f"Column '{column}' has {n} null values",
        ))

    def add_unique_check(
        self,
        columns: Union[str, Sequence[str]],
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """The column, or column combination, identifies each row"""
        columns = [columns] if isinstance(columns, str) else list(columns)
        return self._add(_Rule(
            name=f"unique_{'_'.join(columns)}",
            columns=columns,
            severity=severity,
            count_failures=lambda df: df.select(columns).is_duplicated().sum(),
            describe=lambda n: f"{n} rows share a {tuple(columns)} key",
        ))

    def add_range_check(
        self,
        column: str,
        min_value: Optional[Any] = None,
        max_value: Optional[Any] = None,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Inclusive bounds; either may be omitted"""
        outside = pl.lit(False)
        if min_value is not None:
            outside = outside | (pl.col(column) < min_value)
        if max_value is not None:
            outside = outside | (pl.col(column) > max_value)

        return self._add(_Rule(
            name=f"range_{column}",
            columns=[column],
            severity=severity,
            count_failures=lambda df: df.filter(outside).height,
            describe=lambda n: f"Column '{column}' has {n} values outside [{min_value}, {max_value}]",
        ))

    def add_non_negative_check(
        self,
        column: str,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        return self.add_range_check(column, min_value=0, severity=severity)

    def add_not_above_check(
        self,
        column: str,
        ceiling: str,
        severity: ValidationSeverity = ValidationSeverity.WARNING,
    ) -> "DataValidator":
        """Row-wise ``column <= ceiling``"""
        return self._add(_Rule(
            name=f"{column}_not_above_{ceiling}",
            columns=[column, ceiling],
            severity=severity,
            count_failures=lambda df: df.filter(pl.col(column) > pl.col(ceiling)).height,
            describe=lambda n: f"Column '{column}' exceeds '{ceiling}' on {n} rows",
        ))

    def add_unseen_keys_check(
        self,
        columns: Sequence[str],
        seen: Set[Tuple],
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """No key was already delivered by an earlier page"""
        columns = list(columns)
        return self._add(_Rule(
            name="unseen_keys",
            columns=columns,
            severity=severity,
            count_failures=lambda df: sum(1 for key in df.select(columns).iter_rows() if key in seen),
            describe=lambda n: f"{n} rows repeat keys from earlier pages",
        ))

    def validate(self, df: pl.DataFrame) -> ValidationResult:
        result = ValidationResult(strict=self.strict_mode)
        result.checks = [rule.run(df) for rule in self._rules]
        result.completed_at = utc_now()

        for check in result.checks:
            if not check.passed:
                logger.warning(
                    "Validation check failed",
                    check=check.name,
                    message=check.message,
                    severity=check.severity.value,
                    failed_rows=check.failed_rows,
                )
        return result


def create_page_validator(date_range: DateRange, seen_keys: Set[Tuple[str, date]]) -> DataValidator:
    """Validator for one insights page of a session"""
    validator = DataValidator()
    for column in PAGE_KEY:
        validator.add_not_null_check(column)
    validator.add_unique_check(PAGE_KEY)
    validator.add_unseen_keys_check(PAGE_KEY, seen_keys)
    validator.add_range_check("date", min_value=date_range.start, max_value=date_range.end)
    for column in METRIC_COLUMNS:
        validator.add_non_negative_check(column)
    validator.add_not_above_check("clicks", "impressions")
    validator.add_not_above_check("reach", "impressions")
    return validator


def validate_page(
    rows: Iterable[Dict[str, Any]],
    date_range: DateRange,
    seen_keys: Set[Tuple[str, date]],
    page_index: Optional[int] = None,
) -> ValidationResult:
    """
    Validate a page of flattened insight rows.

    Raises:
        MalformedPage: if any error-severity check fails
    """
    rows = list(rows)
    if not rows:
        return ValidationResult(completed_at=utc_now())

    result = create_page_validator(date_range, seen_keys).validate(pl.DataFrame(rows))
    if result.status == ValidationStatus.FAILED:
        raise MalformedPage("; ".join(c.message for c in result.errors), page_index=page_index)
    return result
