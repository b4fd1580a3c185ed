"""
Table operations used to stage, promote and discard step outputs.

All functions take an open SQLAlchemy connection and run inside the
caller's transaction.
"""

import hashlib
from typing import List

from sqlalchemy import MetaData, Table, func, inspect, select, text
from sqlalchemy.engine import Connection

from dataplane.connectors.models import TableRef
from dataplane.connectors.query import reflect_table


def quote_table(conn: Connection, ref: TableRef) -> str:
    return conn.dialect.identifier_preparer.format_table(Table(ref.table, MetaData(), schema=ref.schema))


def table_exists(conn: Connection, ref: TableRef) -> bool:
    return inspect(conn).has_table(ref.table, schema=ref.schema)


def column_names(conn: Connection, ref: TableRef) -> List[str]:
    return [c["name"] for c in inspect(conn).get_columns(ref.table, schema=ref.schema)]


def drop_table(conn: Connection, ref: TableRef) -> None:
    conn.execute(text(f"DROP TABLE IF EXISTS {quote_table(conn, ref)}"))


def row_count(conn: Connection, ref: TableRef) -> int:
    return int(conn.execute(select(func.count()).select_from(reflect_table(conn, ref))).scalar_one())


def create_table_as(conn: Connection, ref: TableRef, query: str, params: dict) -> None:
    target = quote_table(conn, ref)
    drop_table(conn, ref)
    if conn.dialect.name == "mssql":
        conn.execute(text(f"SELECT * INTO {target} FROM ({query}) AS step_output"), params)
    else:
        conn.execute(text(f"CREATE TABLE {target} AS {query}"), params)


def replace_table(conn: Connection, source: TableRef, target: TableRef) -> None:
    """Swap source in as target, dropping any existing target."""
    drop_table(conn, target)
    if conn.dialect.name == "mssql":
        qualified = ".".join(p for p in (source.schema, source.table) if p)
        conn.execute(text("EXEC sp_rename :source, :target"), {"source": qualified, "target": target.table})
    else:
        preparer = conn.dialect.identifier_preparer
        conn.execute(text(f"ALTER TABLE {quote_table(conn, source)} RENAME TO {preparer.quote(target.table)}"))


def fingerprint(conn: Connection, ref: TableRef) -> str:
    """Cheap change marker for a table: row count and column set."""
    columns = ",".join(sorted(column_names(conn, ref)))
    digest = hashlib.sha1(columns.encode("utf-8")).hexdigest()[:12]
    return f"{row_count(conn, ref)}:{digest}"
