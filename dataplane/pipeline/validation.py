"""
Step input and result validation.
"""

from typing import Callable, List

from sqlalchemy import func, select, text
from sqlalchemy.engine import Connection
from sqlalchemy import exc as sa_exc
from sqlalchemy import inspect

from dataplane.connectors.models import TableRef
from dataplane.connectors.query import reflect_table
from dataplane.connectors.type_mapping import CanonicalType, map_column_type
from dataplane.errors import StepExecutionError
from dataplane.pipeline import tables
from dataplane.pipeline.models import TransformationStep, ValidationCheck

CANONICAL_TYPES = frozenset(t.value for t in CanonicalType)


def validate_inputs(conn: Connection, step: TransformationStep, resolve: Callable[[str], TableRef]) -> None:
    """
    Input tables must exist and columns named in parameters["columns"]
    must exist on at least one input.
    """
    available = set()
    for name in step.input_tables:
        ref = resolve(name)
        if not tables.table_exists(conn, ref):
            raise StepExecutionError(step.id, f"input table '{name}' does not exist", retryable=False)
        available.update(tables.column_names(conn, ref))

    referenced = step.transformation.parameters.get("columns") or []
    missing = [c for c in referenced if c not in available]
    if missing and step.input_tables:
        raise StepExecutionError(
            step.id, f"columns not found in inputs: {', '.join(missing)}", retryable=False
        )


def validate_results(conn: Connection, step: TransformationStep, output: TableRef) -> List[ValidationCheck]:
    """Row count, type and business rule assertions on a staged output."""
    checks: List[ValidationCheck] = []
    validation = step.validation
    if validation is None:
        return checks

    if validation.row_count_check:
        count = tables.row_count(conn, output)
        checks.append(ValidationCheck(
            check_name="row_count",
            passed=count >= validation.min_rows,
            message=f"{count} rows (minimum {validation.min_rows})",
        ))

    if validation.data_type_check:
        unmapped = []
        for column in inspect(conn).get_columns(output.table, schema=output.schema):
            try:
                native = column["type"].compile(dialect=conn.dialect)
            except sa_exc.CompileError:
                native = type(column["type"]).__name__
            if map_column_type(native) not in CANONICAL_TYPES:
                unmapped.append(f"{column['name']} ({native})")
        checks.append(ValidationCheck(
            check_name="data_types",
            passed=not unmapped,
            message=f"unmapped column types: {', '.join(unmapped)}" if unmapped else None,
        ))

    if validation.business_rules:
        table = reflect_table(conn, output)
        for rule in validation.business_rules:
            violations = conn.execute(
                select(func.count()).select_from(table).where(text(f"NOT ({rule.rule})"))
            ).scalar_one()
            checks.append(ValidationCheck(
                check_name=rule.name,
                passed=violations == 0,
                message=f"{violations} rows violate {rule.rule}" if violations else None,
                severity=rule.severity,
            ))

    return checks
