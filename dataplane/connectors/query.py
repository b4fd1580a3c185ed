"""
Dialect-neutral read helpers used by the sync, quality and pipeline engines.

SQL connectors get SQLAlchemy Core statements compiled for their dialect
(so LIMIT/TOP and quoting are right everywhere); other connectors get a
plain query string in their own query language.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import MetaData, Table, func, select, text
from sqlalchemy.engine import Connection

from dataplane.connectors.base import BaseConnector
from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import TableRef
from dataplane.errors import ConfigurationError

logger = logging.getLogger(__name__)


def reflect_table(conn: Connection, table: TableRef) -> Table:
    """Reflect a table definition on an open connection."""
    return Table(table.table, MetaData(), schema=table.schema, autoload_with=conn)


async def _column_names(connector: BaseConnector, table: TableRef) -> List[str]:
    columns = await connector.list_columns(table.table, database=table.database, schema=table.schema)
    return [c.name for c in columns]


async def fetch_after(
    connector: BaseConnector,
    table: TableRef,
    column: str,
    watermark: Any,
    limit: int,
    columns: Optional[Sequence[str]] = None,
    filters: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """Rows with column > watermark, ascending by column, at most limit."""
    filters = filters or {}
    if isinstance(connector, SQLConnector):
        def _fetch(conn: Connection) -> List[Dict[str, Any]]:
            tbl = reflect_table(conn, table)
            selected = [tbl.c[name] for name in columns] if columns else [tbl]
            stmt = select(*selected)
            if watermark is not None:
                stmt = stmt.where(tbl.c[column] > watermark)
            for name, value in filters.items():
                stmt = stmt.where(tbl.c[name] == value)
            stmt = stmt.order_by(tbl.c[column]).limit(limit)
            return [dict(row._mapping) for row in conn.execute(stmt)]

        return await connector.run_sync(_fetch)

    names = list(columns) if columns else await _column_names(connector, table)
    clauses: List[str] = []
    params: List[Any] = []
    if watermark is not None:
        params.append(watermark)
        clauses.append(f"{column} > ${len(params)}")
    for name, value in filters.items():
        params.append(value)
        clauses.append(f"{name} = ${len(params)}")
    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    query = (
        f"SELECT {', '.join(names)} FROM {table.table}{where} "
        f"ORDER BY {column} LIMIT {int(limit)}"
    )
    result = await connector.execute_query(query, params or None)
    return result.rows


async def sample_rows(connector: BaseConnector, table: TableRef, limit: int) -> List[Dict[str, Any]]:
    """Up to limit rows of a table."""
    if isinstance(connector, SQLConnector):
        def _sample(conn: Connection) -> List[Dict[str, Any]]:
            tbl = reflect_table(conn, table)
            return [dict(row._mapping) for row in conn.execute(select(tbl).limit(limit))]

        return await connector.run_sync(_sample)

    names = await _column_names(connector, table)
    result = await connector.execute_query(
        f"SELECT {', '.join(names)} FROM {table.table} LIMIT {int(limit)}"
    )
    return result.rows


async def count_violations(
    connector: BaseConnector,
    table: TableRef,
    expression: str,
    sample_limit: int = 5,
) -> Tuple[int, int, List[Dict[str, Any]]]:
    """
    Evaluate a SQL boolean expression describing a valid row.

    Returns (total rows, rows where the expression is false, sample of
    violating rows).
    """
    if not isinstance(connector, SQLConnector):
        raise ConfigurationError(
            f"SQL expression rules need a SQL source; {connector.source_type.value} is not one"
        )

    def _count(conn: Connection) -> Tuple[int, int, List[Dict[str, Any]]]:
        tbl = reflect_table(conn, table)
        condition = text(f"NOT ({expression})")
        total = conn.execute(select(func.count()).select_from(tbl)).scalar_one()
        violations = conn.execute(select(func.count()).select_from(tbl).where(condition)).scalar_one()
        samples = [
            dict(row._mapping)
            for row in conn.execute(select(tbl).where(condition).limit(sample_limit))
        ]
        return int(total), int(violations), samples

    return await connector.run_sync(_count)


async def count_orphans(
    connector: SQLConnector,
    child: TableRef,
    child_column: str,
    parent: TableRef,
    parent_column: str,
    sample_limit: int = 5,
) -> Tuple[int, List[Any]]:
    """
    Anti-join: child rows whose non-null reference has no parent row.

    Returns (orphan count, sample of orphaned reference values).
    """
    def _orphans(conn: Connection) -> Tuple[int, List[Any]]:
        child_tbl = reflect_table(conn, child)
        parent_tbl = reflect_table(conn, parent).alias("parent")
        joined = child_tbl.outerjoin(parent_tbl, child_tbl.c[child_column] == parent_tbl.c[parent_column])
        condition = (child_tbl.c[child_column].is_not(None)) & (parent_tbl.c[parent_column].is_(None))
        count = conn.execute(select(func.count()).select_from(joined).where(condition)).scalar_one()
        samples = conn.execute(
            select(child_tbl.c[child_column]).select_from(joined).where(condition).limit(sample_limit)
        ).scalars().all()
        return int(count), list(samples)

    return await connector.run_sync(_orphans)
