"""
Data Quality Engine.

Runs the configured checks for each table of a connection, validates
referential integrity across the table set and assembles a QualityReport.
Evaluators are isolated from one another: an evaluator that raises is
reported as a failing check of error severity and the run carries on.
"""

import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Union

from dataplane.connectors.base import BaseConnector
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import TableRef
from dataplane.connectors.query import sample_rows
from dataplane.connectors.registry import ConnectionRegistry
from dataplane.errors import ValidationError
from dataplane.notifications import EventType, NotificationDispatcher, Notifier
from dataplane.quality.anomaly import detect_anomalies
from dataplane.quality.evaluators import (
    check_business_rule,
    check_completeness,
    check_rules,
    check_timeliness,
    check_uniqueness,
)
from dataplane.quality.integrity import validate_integrity
from dataplane.quality.profile import profile_table
from dataplane.quality.models import (
    CheckConfig,
    CheckDetails,
    CheckType,
    QualityCheckResult,
    QualityReport,
    SampleFailure,
    Severity,
    TableProfile,
    TableQualityResult,
    TableSnapshot,
)

logger = logging.getLogger(__name__)

RULE_CHECKS = (CheckType.VALIDITY, CheckType.ACCURACY, CheckType.CONSISTENCY)


async def load_snapshot(
    connector: BaseConnector,
    table: TableRef,
    sample_size: int,
    with_rows: bool = True,
) -> TableSnapshot:
    """Columns of a table and, with_rows, up to sample_size of its rows."""
    columns = await connector.list_columns(table.table, database=table.database, schema=table.schema)
    rows = await sample_rows(connector, table, sample_size) if with_rows else []
    return TableSnapshot(table=table.key, columns=columns, rows=rows)


def needs_sample(connector: BaseConnector, config: CheckConfig) -> bool:
    """Rows are read only for row-level rules, predicates and non-SQL sources."""
    if not isinstance(connector, SQLConnector):
        return True
    if any(config.rules_for(check) for check in config.checks if check in RULE_CHECKS):
        return True
    return any(rule.predicate is not None for rule in config.business_rules)


def failed_check(
    check_type: CheckType,
    table: str,
    threshold: float,
    error: ValidationError,
    rule_name: Optional[str] = None,
) -> QualityCheckResult:
    """Result reported for an evaluator that raised."""
    return QualityCheckResult(
        check_type=check_type,
        table=table,
        rule_name=rule_name,
        passed=False,
        score=0.0,
        threshold=threshold,
        severity=Severity.ERROR,
        details=CheckDetails(sample_failures=[SampleFailure(reason=f"Rule validation failed: {error}")]),
    )


def table_recommendations(results: List[QualityCheckResult]) -> List[str]:
    recommendations: List[str] = []
    for result in results:
        if not result.passed:
            recommendations.extend(result.suggestions)

    failed = {r.check_type for r in results if not r.passed}
    if CheckType.COMPLETENESS in failed:
        recommendations.append("Consider implementing data validation rules to prevent null values in critical columns")
    if CheckType.UNIQUENESS in failed:
        recommendations.append("Review data ingestion process to prevent duplicate records")
    if CheckType.TIMELINESS in failed:
        recommendations.append("Implement more frequent data refresh schedules for time-sensitive tables")

    return list(dict.fromkeys(recommendations))


class QualityEngine:
    """
    Evaluates data quality for tables reachable through the registry.

    Usage:
        engine = QualityEngine(registry)
        report = await engine.run("warehouse", ["public.orders"], CheckConfig())
    """

    def __init__(self, registry: ConnectionRegistry, notifier: Optional[Notifier] = None):
        self.registry = registry
        self.dispatcher = NotificationDispatcher(notifier)

    async def run(
        self,
        connection_id: str,
        tables: List[Union[str, TableRef]],
        config: Optional[CheckConfig] = None,
    ) -> QualityReport:
        config = config or CheckConfig()
        refs = [t if isinstance(t, TableRef) else TableRef.parse(t) for t in tables]
        report = QualityReport(connection_id=connection_id)
        report.summary.total_tables = len(refs)

        logger.info(f"Running quality checks on {len(refs)} table(s) of {connection_id}")

        async with self.registry.session(connection_id) as connector:
            for table in refs:
                table_result = await self.check_table(connector, table, config)
                report.tables.append(table_result)

            if config.check_integrity:
                try:
                    report.integrity_issues = await validate_integrity(connector, refs)
                except Exception as e:
                    logger.warning(f"Referential integrity validation failed on {connection_id}: {e}")

        self._summarize(report)
        report.completed_at = datetime.utcnow()

        logger.info(
            f"Quality run on {connection_id} completed: score {report.summary.overall_score:.3f}, "
            f"{report.summary.checks_failed} failed check(s), "
            f"{len(report.integrity_issues)} integrity issue(s)"
        )
        self.dispatcher.emit(EventType.QUALITY_REPORT, connection_id, report.to_dict())
        if report.summary.critical_issues > 0:
            self.dispatcher.emit(EventType.QUALITY_CHECK_FAILED, connection_id, report.summary.to_dict())
        return report

    async def check_table(self, connector: BaseConnector, table: TableRef, config: CheckConfig) -> TableQualityResult:
        """Run every configured check for one table."""
        result = TableQualityResult(table=table.key)

        try:
            snapshot = await load_snapshot(
                connector, table, config.sample_size, with_rows=needs_sample(connector, config)
            )
            profile = await profile_table(
                connector, table, snapshot, config.freshness_hours, distributions=config.detect_anomalies
            )
        except Exception as e:
            error = ValidationError(f"Could not read {table}: {e}", cause=e)
            logger.error(str(error))
            result.checks = [
                failed_check(check, table.key, config.threshold_for(check), error) for check in config.checks
            ]
            result.checks.extend(
                failed_check(CheckType.BUSINESS_RULE, table.key, 1.0, error, rule.name)
                for rule in config.business_rules
            )
            result.recommendations = table_recommendations(result.checks)
            return result

        for check in config.checks:
            if check == CheckType.BUSINESS_RULE:
                continue
            result.checks.append(await self._isolated(
                check, table.key, config.threshold_for(check), lambda c=check: self._evaluate(c, profile, snapshot, config)
            ))

        for rule in config.business_rules:
            result.checks.append(await self._isolated(
                CheckType.BUSINESS_RULE,
                table.key,
                1.0,
                lambda r=rule: check_business_rule(connector, table, snapshot, r),
                rule_name=rule.name,
            ))

        if config.detect_anomalies:
            try:
                result.anomalies = detect_anomalies(profile)
            except Exception as e:
                logger.warning(f"Anomaly detection failed for {table}: {e}")

        result.recommendations = table_recommendations(result.checks)
        return result

    async def _evaluate(
        self,
        check: CheckType,
        profile: TableProfile,
        snapshot: TableSnapshot,
        config: CheckConfig,
    ) -> QualityCheckResult:
        if check == CheckType.COMPLETENESS:
            return check_completeness(profile, config.completeness_threshold)
        if check == CheckType.UNIQUENESS:
            return check_uniqueness(profile, config.uniqueness_threshold)
        if check == CheckType.TIMELINESS:
            return check_timeliness(profile)
        if check in RULE_CHECKS:
            return check_rules(snapshot, check, config.rules_for(check), config.threshold_for(check))
        raise ValueError(f"Unsupported check type: {check}")

    @staticmethod
    async def _isolated(
        check: CheckType,
        table: str,
        threshold: float,
        evaluate: Callable[[], Awaitable[QualityCheckResult]],
        rule_name: Optional[str] = None,
    ) -> QualityCheckResult:
        started = time.perf_counter()
        try:
            result = await evaluate()
        except Exception as e:
            error = ValidationError(f"{check.value} check on {table} raised: {e}", check=check.value, cause=e)
            logger.error(str(error))
            result = failed_check(check, table, threshold, error, rule_name)
        result.execution_time_ms = round((time.perf_counter() - started) * 1000, 3)
        logger.debug(f"{check.value} on {table}: score={result.score:.3f} passed={result.passed}")
        return result

    @staticmethod
    def _summarize(report: QualityReport) -> None:
        summary = report.summary
        summary.tables_checked = len(report.tables)
        results = report.results
        summary.checks_run = len(results)
        summary.checks_passed = sum(1 for r in results if r.passed)
        summary.checks_failed = summary.checks_run - summary.checks_passed
        summary.critical_issues = sum(1 for r in results if not r.passed and r.severity == Severity.ERROR)
        summary.critical_issues += sum(1 for i in report.integrity_issues if i.severity == Severity.ERROR)
        summary.warnings = sum(1 for r in results if not r.passed and r.severity == Severity.WARNING)
        if report.tables:
            summary.overall_score = sum(t.overall_score for t in report.tables) / len(report.tables)
