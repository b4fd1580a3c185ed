"""
Data quality: evaluators, integrity validation, anomaly detection and the
quality engine.
"""

from dataplane.quality.anomaly import detect_anomalies
from dataplane.quality.engine import QualityEngine, load_snapshot
from dataplane.quality.evaluators import (
    check_business_rule,
    check_completeness,
    check_rules,
    check_timeliness,
    check_uniqueness,
)
from dataplane.quality.integrity import validate_integrity
from dataplane.quality.profile import find_timestamp_column, key_columns, profile_snapshot, profile_table
from dataplane.quality.models import (
    AllowedValuesRule,
    AnomalyFinding,
    AnomalyType,
    BusinessRule,
    CheckConfig,
    CheckDetails,
    CheckType,
    ColumnComparisonRule,
    IntegrityIssue,
    NumericProfile,
    QualityCheckResult,
    QualityReport,
    QualitySummary,
    RangeRule,
    RuleEvaluator,
    RuleOutcome,
    SampleFailure,
    Severity,
    TableProfile,
    TableQualityResult,
    TableSnapshot,
    TimestampProfile,
    TypeConformanceRule,
)

__all__ = [
    "QualityEngine",
    "load_snapshot",
    "check_business_rule",
    "check_completeness",
    "check_rules",
    "check_timeliness",
    "check_uniqueness",
    "find_timestamp_column",
    "key_columns",
    "profile_snapshot",
    "profile_table",
    "validate_integrity",
    "detect_anomalies",
    "AllowedValuesRule",
    "AnomalyFinding",
    "AnomalyType",
    "BusinessRule",
    "CheckConfig",
    "CheckDetails",
    "CheckType",
    "ColumnComparisonRule",
    "IntegrityIssue",
    "NumericProfile",
    "QualityCheckResult",
    "QualityReport",
    "QualitySummary",
    "RangeRule",
    "RuleEvaluator",
    "RuleOutcome",
    "SampleFailure",
    "Severity",
    "TableProfile",
    "TableQualityResult",
    "TableSnapshot",
    "TimestampProfile",
    "TypeConformanceRule",
]
