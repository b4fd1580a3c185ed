"""
Quality evaluators.

Each evaluator scores one dimension of a table and returns a
QualityCheckResult with a score in [0, 1]. Completeness, uniqueness and
timeliness score a whole-table TableProfile; rule evaluators and Python
predicates run over a TableSnapshot; SQL business rules are evaluated at
the source.
"""

import logging
import time
from datetime import timedelta
from typing import List

from dataplane.connectors.base import BaseConnector
from dataplane.connectors.models import TableRef
from dataplane.connectors.query import count_violations
from dataplane.quality.models import (
    BusinessRule,
    CheckDetails,
    CheckType,
    QualityCheckResult,
    RuleEvaluator,
    SampleFailure,
    Severity,
    TableProfile,
    TableSnapshot,
)

logger = logging.getLogger(__name__)

FRESHNESS_PASS_RATIO = 0.8


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def check_completeness(profile: TableProfile, threshold: float) -> QualityCheckResult:
    """Share of non-null cells over rows x columns."""
    started = time.perf_counter()
    total_cells = profile.row_count * len(profile.null_counts)
    total_nulls = sum(profile.null_counts.values())
    score = (total_cells - total_nulls) / total_cells if total_cells else 1.0
    passed = score >= threshold

    return QualityCheckResult(
        check_type=CheckType.COMPLETENESS,
        table=profile.table,
        passed=passed,
        score=score,
        threshold=threshold,
        severity=Severity.INFO if passed else (Severity.WARNING if score >= 0.7 else Severity.ERROR),
        details=CheckDetails(
            total_records=total_cells,
            failed_records=total_nulls,
            sample_failures=[
                SampleFailure(value=name, reason=f"{count} null values found")
                for name, count in profile.null_counts.items() if count > 0
            ][:5],
        ),
        execution_time_ms=_elapsed_ms(started),
        suggestions=[] if passed else [
            "Implement NOT NULL constraints where appropriate",
            "Add data validation at source",
            "Consider default values for optional fields",
        ],
    )


def check_uniqueness(profile: TableProfile, threshold: float) -> QualityCheckResult:
    """
    Duplicate detection over key-like columns.

    score = 1 - duplicate_groups / key_columns, where a duplicate group is a
    non-null value occurring more than once in a key column.
    """
    started = time.perf_counter()
    duplicates = profile.duplicate_groups
    found = sum(duplicates.values())
    score = 1 - found / len(duplicates) if duplicates else 1.0
    score = min(1.0, max(0.0, score))
    passed = score >= threshold

    return QualityCheckResult(
        check_type=CheckType.UNIQUENESS,
        table=profile.table,
        passed=passed,
        score=score,
        threshold=threshold,
        severity=Severity.INFO if passed else (Severity.WARNING if score >= 0.8 else Severity.ERROR),
        details=CheckDetails(
            total_records=profile.row_count,
            failed_records=found,
            sample_failures=[
                SampleFailure(value=name, reason=f"{count} duplicate values found")
                for name, count in duplicates.items() if count > 0
            ][:5],
        ),
        execution_time_ms=_elapsed_ms(started),
        suggestions=[] if passed else [
            "Add unique constraints to prevent duplicates",
            "Implement deduplication logic in ETL process",
            "Review data source for duplicate generation",
        ],
    )


def check_rules(
    snapshot: TableSnapshot,
    check_type: CheckType,
    rules: List[RuleEvaluator],
    threshold: float,
) -> QualityCheckResult:
    """Score a dimension from its rule evaluators; no rules scores 1.0."""
    started = time.perf_counter()
    total = failed = 0
    samples: List[SampleFailure] = []
    for rule in rules:
        outcome = rule.evaluate(snapshot)
        total += outcome.total
        failed += outcome.failed
        samples.extend(outcome.samples)

    score = (total - failed) / total if total else 1.0
    passed = score >= threshold
    return QualityCheckResult(
        check_type=check_type,
        table=snapshot.table,
        passed=passed,
        score=score,
        threshold=threshold,
        severity=Severity.INFO if passed else (Severity.WARNING if score >= 0.7 else Severity.ERROR),
        details=CheckDetails(total_records=total, failed_records=failed, sample_failures=samples[:5]),
        execution_time_ms=_elapsed_ms(started),
        suggestions=[] if passed else [f"Review {check_type.value} rule failures: {', '.join(r.name for r in rules)}"],
    )




def check_timeliness(profile: TableProfile) -> QualityCheckResult:
    """
    Share of timestamped rows inside the freshness window.

    Passes when at least 80% of rows are fresh and the newest row is
    inside the window. Timestamps are compared in naive UTC.
    """
    started = time.perf_counter()
    stamps = profile.timestamp
    freshness_hours = profile.freshness_hours

    if stamps is None:
        return QualityCheckResult(
            check_type=CheckType.TIMELINESS,
            table=profile.table,
            passed=False,
            score=0.0,
            threshold=FRESHNESS_PASS_RATIO,
            severity=Severity.WARNING,
            execution_time_ms=_elapsed_ms(started),
            suggestions=["Add a timestamp column to track data freshness"],
        )

    if not stamps.count or stamps.latest is None:
        return QualityCheckResult(
            check_type=CheckType.TIMELINESS,
            table=profile.table,
            column=stamps.column,
            passed=False,
            score=0.0,
            threshold=FRESHNESS_PASS_RATIO,
            severity=Severity.ERROR,
            details=CheckDetails(total_records=profile.row_count, failed_records=profile.row_count),
            execution_time_ms=_elapsed_ms(started),
            suggestions=["No timestamp data found"],
        )

    hours_old = (profile.as_of - stamps.latest) / timedelta(hours=1)
    score = stamps.fresh / stamps.count
    passed = hours_old <= freshness_hours and score >= FRESHNESS_PASS_RATIO

    return QualityCheckResult(
        check_type=CheckType.TIMELINESS,
        table=profile.table,
        column=stamps.column,
        passed=passed,
        score=score,
        threshold=FRESHNESS_PASS_RATIO,
        severity=Severity.INFO if passed else (Severity.WARNING if score > 0.5 else Severity.ERROR),
        details=CheckDetails(
            total_records=stamps.count,
            failed_records=stamps.count - stamps.fresh,
            sample_failures=[] if passed else [SampleFailure(
                value=stamps.latest,
                reason=f"Latest data is {round(hours_old, 2)} hours old (threshold: {freshness_hours} hours)",
            )],
        ),
        execution_time_ms=_elapsed_ms(started),
        suggestions=[] if passed else [
            "Consider more frequent data refresh",
            "Check if data source is updating as expected",
            "Review ETL scheduling configuration",
        ],
    )


async def check_business_rule(
    connector: BaseConnector,
    table: TableRef,
    snapshot: TableSnapshot,
    rule: BusinessRule,
) -> QualityCheckResult:
    """
    Evaluate one business rule; passes only with zero violations.

    SQL expressions are counted over the whole table at the source;
    predicates run over the sampled rows.
    """
    started = time.perf_counter()
    if rule.expression is not None:
        total, violations, rows = await count_violations(connector, table, rule.expression)
        samples = [
            SampleFailure(row_id=index, value=row, reason=f"Business rule violation: {rule.description or rule.name}")
            for index, row in enumerate(rows)
        ]
    else:
        total = len(snapshot.rows)
        failing = [(i, row) for i, row in enumerate(snapshot.rows) if not rule.predicate(row)]
        violations = len(failing)
        samples = [
            SampleFailure(row_id=i, value=row, reason=f"Business rule violation: {rule.description or rule.name}")
            for i, row in failing[:5]
        ]

    score = (total - violations) / total if total else 1.0
    passed = violations == 0
    logger.info(f"Business rule {rule.name} on {table}: {violations} violation(s) in {total} rows")

    return QualityCheckResult(
        check_type=CheckType.BUSINESS_RULE,
        table=snapshot.table,
        rule_name=rule.name,
        passed=passed,
        score=score,
        threshold=1.0,
        severity=Severity.INFO if passed else rule.severity,
        details=CheckDetails(total_records=total, failed_records=violations, sample_failures=samples[:5]),
        execution_time_ms=_elapsed_ms(started),
        suggestions=[] if passed else [
            f"Review data to fix {rule.name} violations",
            "Consider data transformation rules to prevent future violations",
            "Update source system validation if applicable",
        ],
    )
