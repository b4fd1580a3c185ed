"""
SQLAlchemy-backed connector.

Shared implementation for every source reachable through a SQLAlchemy
dialect (RDBMS and warehouse families). Blocking driver calls run in a
worker thread so the event loop only suspends at I/O boundaries.
"""

import asyncio
import logging
import re
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, TypeVar

from sqlalchemy import create_engine, inspect, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.engine import Connection, Engine, URL, make_url
from sqlalchemy.pool import QueuePool, StaticPool

from dataplane.connectors.base import BaseConnector, QueryParams
from dataplane.connectors.models import (
    ColumnInfo,
    DatabaseInfo,
    ForeignKeyInfo,
    ForeignKeyRef,
    QueryResult,
    SchemaInfo,
    SourceFamily,
    TableInfo,
)
from dataplane.connectors.type_mapping import map_column_type
from dataplane.errors import DataPlaneError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYSTEM_SCHEMAS = frozenset({
    "information_schema", "pg_catalog", "pg_toast", "pg_internal",
    "sys", "mysql", "performance_schema", "guest", "db_owner",
})

_POSITIONAL = re.compile(r"\$(\d+)")


def bind_params(sql: str, params: QueryParams) -> Tuple[str, Dict[str, Any]]:
    """
    Normalize query parameters to SQLAlchemy named binds.

    Positional sequences bind to $1, $2, ... placeholders.
    """
    if params is None:
        return sql, {}
    if isinstance(params, dict):
        return sql, params
    bound = {f"p{i + 1}": value for i, value in enumerate(params)}
    return _POSITIONAL.sub(lambda m: f":p{m.group(1)}", sql), bound


class SQLConnector(BaseConnector):
    """
    Connector for sources with a SQLAlchemy dialect.

    Subclasses declare the dialect and credential names; introspection goes
    through the SQLAlchemy inspector.
    """

    family = SourceFamily.RDBMS
    accepts_url = True
    features = ("schema_discovery", "sql_queries", "foreign_keys", "incremental_sync", "transactions")

    dialect: ClassVar[str] = ""
    default_port: ClassVar[Optional[int]] = None
    version_query: ClassVar[str] = "SELECT version()"
    databases_query: ClassVar[Optional[str]] = None

    def __init__(self, config):
        super().__init__(config)
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        self._ensure_connected()
        return self._engine

    @property
    def dialect_name(self) -> str:
        if self._engine is not None:
            return self._engine.dialect.name
        return self.dialect.split("+", 1)[0]

    # URL and engine construction

    def _credential(self, *names: str, default: Any = None) -> Any:
        for name in names:
            value = self.config.credentials.get(name)
            if value not in (None, ""):
                return value
        return default

    def build_url(self) -> URL:
        """Build the SQLAlchemy URL from the credential bundle."""
        raw = self._credential("url", "connection_string")
        if raw:
            return make_url(raw)
        port = self._credential("port", default=self.default_port)
        return URL.create(
            self.dialect,
            username=self._credential("user", "username"),
            password=self._credential("password"),
            host=self._credential("host"),
            port=int(port) if port else None,
            database=self._credential("database"),
            query=self.url_query(),
        )

    def url_query(self) -> Dict[str, str]:
        """Extra URL query parameters for the dialect."""
        return {}

    def engine_options(self, url: URL) -> Dict[str, Any]:
        if url.get_backend_name() == "sqlite":
            options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if url.database in (None, "", ":memory:"):
                options["poolclass"] = StaticPool
            return options
        return {
            "poolclass": QueuePool,
            "pool_size": self.config.pool_size,
            "max_overflow": self.config.max_overflow,
            "pool_timeout": self.config.connection_timeout,
            "pool_pre_ping": True,
        }

    # Lifecycle hooks

    async def _open(self) -> None:
        url = self.build_url()
        self._engine = await asyncio.to_thread(create_engine, url, **self.engine_options(url))
        await asyncio.to_thread(self._probe, self._engine)
        logger.info(f"Connected to {self.source_type.value}: {url.render_as_string(hide_password=True)}")

    def _probe(self, engine: Engine) -> None:
        with engine.connect() as conn:
            conn.execute(text(self.ping_query))

    async def _close(self) -> None:
        if self._engine is None:
            return
        engine, self._engine = self._engine, None
        await asyncio.to_thread(engine.dispose)
        logger.info(f"Disconnected from {self.source_type.value} ({self.config.id})")

    async def _execute(self, sql: str, params: QueryParams) -> QueryResult:
        statement, bound = bind_params(sql, params)
        return await asyncio.to_thread(self._run, statement, bound)

    def _run(self, sql: str, params: Dict[str, Any]) -> QueryResult:
        with self._engine.begin() as conn:
            result = conn.execute(text(sql), params)
            if not result.returns_rows:
                return QueryResult(columns=[], rows=[], row_count=max(result.rowcount, 0))
            columns = list(result.keys())
            rows = [dict(row._mapping) for row in result]
        return QueryResult(columns=columns, rows=rows, row_count=len(rows))

    async def run_sync(self, fn: Callable[[Connection], T]) -> T:
        """
        Run fn with a connection inside one transaction on a worker thread.

        The transaction commits when fn returns and rolls back if it raises.
        Driver errors are wrapped with this family's retry verdict.
        Dataplane errors raised by fn propagate unchanged.
        """
        engine = self.engine

        def _transaction() -> T:
            with engine.begin() as conn:
                return fn(conn)

        try:
            return await asyncio.to_thread(_transaction)
        except DataPlaneError:
            raise
        except Exception as e:
            error = self.wrap_error(e)
            self._record_error(error)
            raise error from e

    async def _inspect(self, fn: Callable[[Any], T]) -> T:
        engine = self.engine
        try:
            return await asyncio.to_thread(lambda: fn(inspect(engine)))
        except Exception as e:
            error = self.wrap_error(e)
            self._record_error(error)
            raise error from e

    # Introspection

    async def list_databases(self) -> List[DatabaseInfo]:
        if self.databases_query:
            result = await self.execute_query(self.databases_query)
            return [DatabaseInfo(name=str(row[result.columns[0]])) for row in result.rows]
        return [DatabaseInfo(name=self.engine.url.database or "default")]

    async def list_schemas(self, database: Optional[str] = None) -> List[SchemaInfo]:
        names = await self._inspect(lambda insp: insp.get_schema_names())
        return [
            SchemaInfo(name=name, database=database)
            for name in names
            if name.lower() not in SYSTEM_SCHEMAS
        ]

    async def list_tables(self, database: Optional[str] = None, schema: Optional[str] = None) -> List[TableInfo]:
        def _tables(insp) -> List[TableInfo]:
            tables = [
                TableInfo(name=name, schema=schema, database=database)
                for name in insp.get_table_names(schema=schema)
            ]
            tables.extend(
                TableInfo(name=name, schema=schema, database=database, table_type="view")
                for name in insp.get_view_names(schema=schema)
            )
            return tables

        return await self._inspect(_tables)

    async def list_columns(
        self, table: str, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[ColumnInfo]:
        dialect = self.engine.dialect

        def _columns(insp) -> List[ColumnInfo]:
            primary_keys = set(insp.get_pk_constraint(table, schema=schema).get("constrained_columns") or [])
            references: Dict[str, ForeignKeyRef] = {}
            for fk in insp.get_foreign_keys(table, schema=schema):
                for local, remote in zip(fk["constrained_columns"], fk["referred_columns"]):
                    references[local] = ForeignKeyRef(
                        table=fk["referred_table"], column=remote, schema=fk.get("referred_schema")
                    )

            columns = []
            for column in insp.get_columns(table, schema=schema):
                column_type = column["type"]
                try:
                    native = column_type.compile(dialect=dialect)
                except sa_exc.CompileError:
                    native = type(column_type).__name__
                columns.append(ColumnInfo(
                    name=column["name"],
                    type=map_column_type(native),
                    nullable=bool(column.get("nullable", True)),
                    primary_key=column["name"] in primary_keys,
                    foreign_key=references.get(column["name"]),
                    max_length=getattr(column_type, "length", None),
                    precision=getattr(column_type, "precision", None),
                    scale=getattr(column_type, "scale", None),
                    native_type=native,
                    default=column.get("default"),
                ))
            return columns

        return await self._inspect(_columns)

    async def list_foreign_keys(
        self, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[ForeignKeyInfo]:
        def _foreign_keys(insp) -> List[ForeignKeyInfo]:
            keys = []
            for table in insp.get_table_names(schema=schema):
                for fk in insp.get_foreign_keys(table, schema=schema):
                    for local, remote in zip(fk["constrained_columns"], fk["referred_columns"]):
                        keys.append(ForeignKeyInfo(
                            constraint_name=fk.get("name"),
                            from_table=table,
                            from_column=local,
                            to_table=fk["referred_table"],
                            to_column=remote,
                            from_schema=schema,
                            to_schema=fk.get("referred_schema") or schema,
                        ))
            return keys

        return await self._inspect(_foreign_keys)

    async def get_version(self) -> str:
        result = await self.execute_query(self.version_query)
        return str(result.scalar())
