"""
Step runners.

A runner materialises one step's output into its staging table. SQL steps
run CREATE TABLE AS over their query; Python steps call a registered
transform with the rows of their input tables.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    MetaData,
    Numeric,
    Table,
    Text,
    insert,
    select,
)
from sqlalchemy.engine import Connection

from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import TableRef
from dataplane.connectors.query import reflect_table
from dataplane.errors import StepExecutionError, UnsupportedStepError
from dataplane.pipeline import tables
from dataplane.pipeline.models import StepType, TransformationStep

logger = logging.getLogger(__name__)

TABLE_REFERENCE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
BIND_PARAMETER = re.compile(r"(?<!:):(\w+)")

Transform = Callable[..., List[Dict[str, Any]]]

TRANSFORMS: Dict[str, Transform] = {}


def register_transform(name: Optional[str] = None) -> Callable[[Transform], Transform]:
    """
    Register a Python transform for use as a python step.

    The transform is called as fn(inputs, **parameters) where inputs maps
    each input table name to its rows, and returns the output rows.
    """
    def decorator(fn: Transform) -> Transform:
        TRANSFORMS[name or fn.__name__] = fn
        return fn
    return decorator


@dataclass
class StepContext:
    connector: SQLConnector
    step: TransformationStep
    staging: TableRef
    resolve: Callable[[str], TableRef]
    execution_id: str


@dataclass
class StepOutput:
    records_processed: int = 0
    records_output: int = 0


class StepRunner(ABC):
    @abstractmethod
    async def run(self, ctx: StepContext) -> StepOutput:
        """Materialise the step output into ctx.staging."""


def render_query(conn: Connection, query: str, resolve: Callable[[str], TableRef]) -> str:
    """Replace {{ table }} references with the quoted physical or staged table."""
    return TABLE_REFERENCE.sub(lambda m: tables.quote_table(conn, resolve(m.group(1))), query)


def bind_parameters(query: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    referenced = set(BIND_PARAMETER.findall(query))
    return {k: v for k, v in parameters.items() if k in referenced}


class SQLStepRunner(StepRunner):
    async def run(self, ctx: StepContext) -> StepOutput:
        spec = ctx.step.transformation

        def _run(conn: Connection) -> StepOutput:
            query = render_query(conn, spec.query, ctx.resolve)
            tables.create_table_as(conn, ctx.staging, query, bind_parameters(query, spec.parameters))
            count = tables.row_count(conn, ctx.staging)
            return StepOutput(records_processed=count, records_output=count)

        return await ctx.connector.run_sync(_run)


def _column_type(values: List[Any]):
    sample = next((v for v in values if v is not None), None)
    if isinstance(sample, bool):
        return Boolean()
    if isinstance(sample, int):
        return Integer()
    if isinstance(sample, float):
        return Float()
    if isinstance(sample, Decimal):
        return Numeric()
    if isinstance(sample, datetime):
        return DateTime()
    if isinstance(sample, date):
        return Date()
    return Text()


class PythonStepRunner(StepRunner):
    def __init__(self, transforms: Optional[Dict[str, Transform]] = None):
        self.transforms = TRANSFORMS if transforms is None else transforms

    async def run(self, ctx: StepContext) -> StepOutput:
        step = ctx.step
        fn = self.transforms.get(step.transformation.script)
        if fn is None:
            raise StepExecutionError(
                step.id, f"no transform registered as '{step.transformation.script}'", retryable=False
            )

        def _run(conn: Connection) -> StepOutput:
            inputs: Dict[str, List[Dict[str, Any]]] = {}
            for name in step.input_tables:
                source = reflect_table(conn, ctx.resolve(name))
                inputs[name] = [dict(row._mapping) for row in conn.execute(select(source))]

            rows = list(fn(inputs, **step.transformation.parameters))
            self._write(conn, ctx, rows)
            return StepOutput(
                records_processed=sum(len(r) for r in inputs.values()),
                records_output=len(rows),
            )

        return await ctx.connector.run_sync(_run)

    @staticmethod
    def _write(conn: Connection, ctx: StepContext, rows: List[Dict[str, Any]]) -> None:
        if rows:
            names = list(dict.fromkeys(k for row in rows for k in row))
            columns = [Column(name, _column_type([row.get(name) for row in rows])) for name in names]
        elif ctx.step.input_tables:
            template = reflect_table(conn, ctx.resolve(ctx.step.input_tables[0]))
            columns = [Column(c.name, c.type) for c in template.columns]
        else:
            raise StepExecutionError(ctx.step.id, "transform returned no rows and has no input to shape the output", retryable=False)

        tables.drop_table(conn, ctx.staging)
        output = Table(ctx.staging.table, MetaData(), *columns, schema=ctx.staging.schema)
        output.create(conn)
        if rows:
            conn.execute(insert(output), [{c.name: row.get(c.name) for c in columns} for row in rows])


class UnsupportedStepRunner(StepRunner):
    async def run(self, ctx: StepContext) -> StepOutput:
        raise UnsupportedStepError(ctx.step.id, ctx.step.type.value)


RUNNERS: Dict[StepType, StepRunner] = {
    StepType.SQL: SQLStepRunner(),
    StepType.PYTHON: PythonStepRunner(),
}


def runner_for(step: TransformationStep) -> StepRunner:
    return RUNNERS.get(step.type, UnsupportedStepRunner())
