"""
Data models for the data quality engine.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, model_validator

from dataplane.config.settings import settings
from dataplane.connectors.models import ColumnInfo
from dataplane.connectors.type_mapping import CanonicalType


class CheckType(str, Enum):
    """Quality dimensions the engine can evaluate."""
    COMPLETENESS = "completeness"
    UNIQUENESS = "uniqueness"
    VALIDITY = "validity"
    ACCURACY = "accuracy"
    CONSISTENCY = "consistency"
    TIMELINESS = "timeliness"
    BUSINESS_RULE = "business_rule"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class SampleFailure:
    reason: str
    value: Any = None
    row_id: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason, "value": self.value, "row_id": self.row_id}


@dataclass
class CheckDetails:
    total_records: int = 0
    failed_records: int = 0
    sample_failures: List[SampleFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "failed_records": self.failed_records,
            "sample_failures": [s.to_dict() for s in self.sample_failures] or None,
        }


@dataclass
class QualityCheckResult:
    """Outcome of one check on one table."""
    check_type: CheckType
    table: str
    passed: bool
    score: float
    threshold: float
    severity: Severity
    details: CheckDetails = field(default_factory=CheckDetails)
    column: Optional[str] = None
    rule_name: Optional[str] = None
    execution_time_ms: float = 0.0
    suggestions: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.score = min(1.0, max(0.0, float(self.score)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_type": self.check_type.value,
            "table": self.table,
            "column": self.column,
            "rule_name": self.rule_name,
            "passed": self.passed,
            "score": self.score,
            "threshold": self.threshold,
            "severity": self.severity.value,
            "details": self.details.to_dict(),
            "execution_time_ms": self.execution_time_ms,
            "suggestions": self.suggestions or None,
        }


@dataclass
class TableSnapshot:
    """Columns and a bounded sample of rows of one table."""
    table: str
    columns: List[ColumnInfo]
    rows: List[Dict[str, Any]]

    def column(self, name: str) -> Optional[ColumnInfo]:
        return next((c for c in self.columns if c.name == name), None)

    def values(self, name: str) -> List[Any]:
        return [row.get(name) for row in self.rows]


@dataclass
class TimestampProfile:
    """Freshness aggregates of the table's timestamp column."""
    column: str
    count: int
    fresh: int
    latest: Optional[datetime] = None


@dataclass
class NumericProfile:
    count: int
    mean: float
    stddev: float
    outlier_count: int = 0
    outlier_samples: List[float] = field(default_factory=list)


@dataclass
class TableProfile:
    """
    Whole-table aggregates scored by the column-level evaluators.

    fresh counts timestamps at or after as_of - freshness_hours.
    string_lengths maps a column to {value length: rows}.
    """
    table: str
    columns: List[ColumnInfo]
    row_count: int
    freshness_hours: float
    as_of: datetime
    null_counts: Dict[str, int] = field(default_factory=dict)
    duplicate_groups: Dict[str, int] = field(default_factory=dict)
    timestamp: Optional[TimestampProfile] = None
    numeric: Dict[str, NumericProfile] = field(default_factory=dict)
    string_lengths: Dict[str, Dict[int, int]] = field(default_factory=dict)


@dataclass
class RuleOutcome:
    """Rows checked and rows that failed one rule."""
    total: int
    failed: int
    samples: List[SampleFailure] = field(default_factory=list)


class RuleEvaluator(ABC):
    """
    A pluggable validity, accuracy or consistency rule.

    evaluate() counts rows checked and rows failing; the engine turns the
    outcomes of all rules of a dimension into one score.
    """

    name: str = "rule"

    @abstractmethod
    def evaluate(self, snapshot: TableSnapshot) -> RuleOutcome:
        ...


def _conforms(value: Any, canonical: str) -> bool:
    if canonical in (CanonicalType.NUMBER.value, CanonicalType.FLOAT.value):
        if isinstance(value, bool):
            return False
        if isinstance(value, (int, float, Decimal)):
            return canonical == CanonicalType.FLOAT.value or float(value).is_integer()
        try:
            number = Decimal(str(value).strip())
        except InvalidOperation:
            return False
        return canonical == CanonicalType.FLOAT.value or number == number.to_integral_value()
    if canonical == CanonicalType.BOOLEAN.value:
        return isinstance(value, bool) or str(value).strip().lower() in ("0", "1", "true", "false", "t", "f")
    if canonical == CanonicalType.DATETIME.value:
        if isinstance(value, (datetime, date)):
            return True
        try:
            datetime.fromisoformat(str(value))
        except ValueError:
            return False
        return True
    return True


class TypeConformanceRule(RuleEvaluator):
    """Values castable to the column's canonical type and within max_length."""

    name = "type_conformance"

    def __init__(self, columns: Optional[Sequence[str]] = None):
        self.columns = list(columns) if columns else None

    def evaluate(self, snapshot: TableSnapshot) -> RuleOutcome:
        columns = [c for c in snapshot.columns if self.columns is None or c.name in self.columns]
        outcome = RuleOutcome(total=0, failed=0)
        for column in columns:
            for index, value in enumerate(snapshot.values(column.name)):
                if value is None:
                    continue
                outcome.total += 1
                ok = _conforms(value, column.type)
                if ok and column.max_length and isinstance(value, str):
                    ok = len(value) <= column.max_length
                if not ok:
                    outcome.failed += 1
                    if len(outcome.samples) < 5:
                        outcome.samples.append(SampleFailure(
                            reason=f"{column.name} value does not conform to {column.type}",
                            value=value,
                            row_id=index,
                        ))
        return outcome


class AllowedValuesRule(RuleEvaluator):
    """Non-null values of a column must be one of an allowed set."""

    def __init__(self, column: str, allowed: Sequence[Any], name: Optional[str] = None):
        self.column = column
        self.allowed = set(allowed)
        self.name = name or f"{column}_allowed_values"

    def evaluate(self, snapshot: TableSnapshot) -> RuleOutcome:
        values = [v for v in snapshot.values(self.column) if v is not None]
        bad = [v for v in values if v not in self.allowed]
        return RuleOutcome(
            total=len(values),
            failed=len(bad),
            samples=[SampleFailure(reason=f"{self.column} not in allowed values", value=v) for v in bad[:5]],
        )


class RangeRule(RuleEvaluator):
    """Non-null values of a column must fall within [minimum, maximum]."""

    def __init__(self, column: str, minimum: Any = None, maximum: Any = None, name: Optional[str] = None):
        self.column = column
        self.minimum = minimum
        self.maximum = maximum
        self.name = name or f"{column}_range"

    def _in_range(self, value: Any) -> bool:
        if self.minimum is not None and value < self.minimum:
            return False
        if self.maximum is not None and value > self.maximum:
            return False
        return True

    def evaluate(self, snapshot: TableSnapshot) -> RuleOutcome:
        values = [v for v in snapshot.values(self.column) if v is not None]
        bad = [v for v in values if not self._in_range(v)]
        return RuleOutcome(
            total=len(values),
            failed=len(bad),
            samples=[
                SampleFailure(reason=f"{self.column} outside [{self.minimum}, {self.maximum}]", value=v)
                for v in bad[:5]
            ],
        )


class ColumnComparisonRule(RuleEvaluator):
    """
    Cross-column predicate, e.g. shipped_at >= ordered_at.

    Rows where either side is null are not checked.
    """

    OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
        "<": lambda a, b: a < b,
        "<=": lambda a, b: a <= b,
        "==": lambda a, b: a == b,
        "!=": lambda a, b: a != b,
        ">=": lambda a, b: a >= b,
        ">": lambda a, b: a > b,
    }

    def __init__(self, left: str, operator: str, right: str, name: Optional[str] = None):
        if operator not in self.OPERATORS:
            raise ValueError(f"Unsupported operator: {operator}")
        self.left = left
        self.operator = operator
        self.right = right
        self.name = name or f"{left}_{operator}_{right}"

    def evaluate(self, snapshot: TableSnapshot) -> RuleOutcome:
        compare = self.OPERATORS[self.operator]
        outcome = RuleOutcome(total=0, failed=0)
        for index, row in enumerate(snapshot.rows):
            a, b = row.get(self.left), row.get(self.right)
            if a is None or b is None:
                continue
            outcome.total += 1
            if not compare(a, b):
                outcome.failed += 1
                if len(outcome.samples) < 5:
                    outcome.samples.append(SampleFailure(
                        reason=f"{self.left} {self.operator} {self.right} does not hold",
                        value={self.left: a, self.right: b},
                        row_id=index,
                    ))
        return outcome


class BusinessRule(BaseModel):
    """
    Row-level predicate that every row must satisfy.

    Either a SQL boolean expression evaluated at the source, or a Python
    callable evaluated over the sampled rows.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    expression: Optional[str] = None
    predicate: Optional[Callable[[Dict[str, Any]], bool]] = None
    severity: Severity = Severity.ERROR

    @model_validator(mode="after")
    def _one_form(self) -> "BusinessRule":
        if (self.expression is None) == (self.predicate is None):
            raise ValueError("A business rule needs exactly one of 'expression' or 'predicate'")
        return self


DEFAULT_CHECKS = [
    CheckType.COMPLETENESS,
    CheckType.UNIQUENESS,
    CheckType.VALIDITY,
    CheckType.TIMELINESS,
]


class CheckConfig(BaseModel):
    """Which checks to run and their thresholds."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    checks: List[CheckType] = Field(default_factory=lambda: list(DEFAULT_CHECKS))
    completeness_threshold: float = Field(default_factory=lambda: settings.quality.completeness_threshold, ge=0, le=1)
    uniqueness_threshold: float = Field(default_factory=lambda: settings.quality.uniqueness_threshold, ge=0, le=1)
    validity_threshold: float = Field(default_factory=lambda: settings.quality.validity_threshold, ge=0, le=1)
    accuracy_threshold: float = Field(default_factory=lambda: settings.quality.validity_threshold, ge=0, le=1)
    consistency_threshold: float = Field(default_factory=lambda: settings.quality.validity_threshold, ge=0, le=1)
    freshness_hours: float = Field(default_factory=lambda: settings.quality.freshness_hours, gt=0)
    sample_size: int = Field(default_factory=lambda: settings.quality.sample_size, ge=1)

    validity_rules: List[RuleEvaluator] = Field(default_factory=list)
    accuracy_rules: List[RuleEvaluator] = Field(default_factory=list)
    consistency_rules: List[RuleEvaluator] = Field(default_factory=list)
    business_rules: List[BusinessRule] = Field(default_factory=list)

    check_integrity: bool = True
    detect_anomalies: bool = False

    def threshold_for(self, check_type: CheckType) -> float:
        return {
            CheckType.COMPLETENESS: self.completeness_threshold,
            CheckType.UNIQUENESS: self.uniqueness_threshold,
            CheckType.VALIDITY: self.validity_threshold,
            CheckType.ACCURACY: self.accuracy_threshold,
            CheckType.CONSISTENCY: self.consistency_threshold,
            CheckType.TIMELINESS: 0.8,
            CheckType.BUSINESS_RULE: 1.0,
        }[check_type]

    def rules_for(self, check_type: CheckType) -> List[RuleEvaluator]:
        return {
            CheckType.VALIDITY: self.validity_rules,
            CheckType.ACCURACY: self.accuracy_rules,
            CheckType.CONSISTENCY: self.consistency_rules,
        }.get(check_type, [])


@dataclass
class IntegrityIssue:
    """A referential integrity violation; reported, never raised."""
    table: str
    column: str
    referenced_table: str
    referenced_column: str
    count: int
    description: str
    issue_type: str = "referential_integrity"
    severity: Severity = Severity.ERROR
    sample_values: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "type": self.issue_type,
            "column": self.column,
            "referenced_table": self.referenced_table,
            "referenced_column": self.referenced_column,
            "count": self.count,
            "description": self.description,
            "severity": self.severity.value,
            "sample_values": self.sample_values,
        }


class AnomalyType(str, Enum):
    OUTLIER = "outlier"
    PATTERN_BREAK = "pattern_break"


@dataclass
class AnomalyFinding:
    anomaly_type: AnomalyType
    table: str
    column: str
    description: str
    confidence: float
    sample_values: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.anomaly_type.value,
            "table": self.table,
            "column": self.column,
            "description": self.description,
            "confidence": round(self.confidence, 4),
            "sample_values": self.sample_values,
        }


@dataclass
class TableQualityResult:
    table: str
    checks: List[QualityCheckResult] = field(default_factory=list)
    anomalies: List[AnomalyFinding] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    @property
    def overall_score(self) -> float:
        if not self.checks:
            return 0.0
        return sum(c.score for c in self.checks) / len(self.checks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "overall_score": self.overall_score,
            "checks": [c.to_dict() for c in self.checks],
            "anomalies": [a.to_dict() for a in self.anomalies],
            "recommendations": self.recommendations,
        }


@dataclass
class QualitySummary:
    total_tables: int = 0
    tables_checked: int = 0
    overall_score: float = 0.0
    checks_run: int = 0
    checks_passed: int = 0
    checks_failed: int = 0
    critical_issues: int = 0
    warnings: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class QualityReport:
    """Results of a quality run across a set of tables."""
    connection_id: str
    tables: List[TableQualityResult] = field(default_factory=list)
    integrity_issues: List[IntegrityIssue] = field(default_factory=list)
    summary: QualitySummary = field(default_factory=QualitySummary)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def results(self) -> List[QualityCheckResult]:
        return [check for table in self.tables for check in table.checks]

    @property
    def passed(self) -> bool:
        return self.summary.critical_issues == 0 and all(r.passed for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "passed": self.passed,
            "summary": self.summary.to_dict(),
            "tables": [t.to_dict() for t in self.tables],
            "integrity_issues": [i.to_dict() for i in self.integrity_issues],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
