"""
REST API Connector Base.

Shared plumbing for SaaS sources whose records are read from fixed
endpoints rather than a query language: an httpx client with the source's
auth headers, HTTP error mapping, and a static catalog that describes each
endpoint as a table.

Queries are limited to whole-endpoint reads of the form

    SELECT <columns | *> FROM <table> [LIMIT n]

which is what schema sampling and quality checks issue. Filtered reads go
through the connector's fetch methods.
"""

import logging
import re
from dataclasses import replace
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple

import httpx

from dataplane.config.settings import settings
from dataplane.connectors.base import BaseConnector, QueryParams
from dataplane.connectors.models import (
    ColumnInfo,
    ConnectionConfig,
    DatabaseInfo,
    ForeignKeyInfo,
    ForeignKeyRef,
    QueryResult,
    SchemaInfo,
    SourceFamily,
    TableInfo,
)
from dataplane.errors import AuthenticationError, ConnectorConnectionError, QueryError, RateLimitError
from dataplane.utils.retry import RetryVerdict

logger = logging.getLogger(__name__)

_READ = re.compile(
    r"^\s*select\s+(?P<fields>.+?)\s+from\s+(?P<table>[\w.]+)(?:\s+limit\s+(?P<limit>\d+))?\s*;?\s*$",
    re.IGNORECASE | re.DOTALL,
)


def parse_read(sql: str) -> Tuple[List[str], str, Optional[int]]:
    """
    Split a whole-endpoint read into (fields, table, limit).

    fields is empty for SELECT *.

    Raises:
        QueryError: for anything but SELECT ... FROM table [LIMIT n]
    """
    match = _READ.match(sql)
    if not match:
        raise QueryError(
            "Only SELECT <columns> FROM <table> [LIMIT n] is supported; use fetch() for filtered reads",
            retryable=False,
            sql=sql,
        )
    fields = [f.strip() for f in match.group("fields").split(",") if f.strip()]
    if fields == ["*"]:
        fields = []
    table = match.group("table").rsplit(".", 1)[-1]
    limit = int(match.group("limit")) if match.group("limit") else None
    return fields, table, limit


def catalog_columns(spec: Sequence[Tuple[str, str, bool]], primary_key: str) -> List[ColumnInfo]:
    """Build column metadata from (name, type, nullable) triples."""
    return [
        ColumnInfo(name=name, type=column_type, nullable=nullable, primary_key=name == primary_key)
        for name, column_type, nullable in spec
    ]


class RestAPIConnector(BaseConnector):
    """
    Base class for endpoint-per-table SaaS connectors.

    Subclasses declare the catalog (schemas, columns, foreign keys), the
    base URL and auth headers, and implement _fetch for one endpoint.
    """

    family = SourceFamily.SAAS
    features = ("schema_discovery", "endpoint_reads")

    catalog_database: ClassVar[str] = ""
    api_version: ClassVar[str] = ""
    probe_path: ClassVar[str] = ""
    schemas: ClassVar[Dict[str, Tuple[str, ...]]] = {}
    table_columns: ClassVar[Dict[str, List[ColumnInfo]]] = {}
    default_columns: ClassVar[List[ColumnInfo]] = []
    foreign_keys: ClassVar[List[ForeignKeyInfo]] = []

    def __init__(self, config: ConnectionConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # Subclass hooks

    def base_url(self) -> str:
        raise NotImplementedError

    def auth_headers(self) -> Dict[str, str]:
        raise NotImplementedError

    async def _fetch(self, table: str, limit: Optional[int], params: Dict[str, Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    # Lifecycle hooks

    async def _open(self) -> None:
        timeout = httpx.Timeout(
            self.config.query_timeout or settings.connectors.query_timeout,
            connect=float(self.config.connection_timeout),
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url(),
            headers={"Accept": "application/json", **self.auth_headers()},
            timeout=timeout,
            transport=self._transport,
        )
        await self._request("GET", self.probe_path)
        logger.info(f"Connected to {self.display_name}: {self.base_url()}")

    async def _close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.aclose()
        logger.info(f"Disconnected from {self.display_name} ({self.config.id})")

    async def ping(self) -> bool:
        if not self.is_connected:
            return False
        try:
            await self._request("GET", self.probe_path)
            return True
        except Exception as e:
            logger.debug(f"Ping failed for {self.config.id}: {e}")
            return False

    # HTTP

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise QueryError(f"{self.display_name} request timed out: {e}", retryable=True) from e
        except httpx.RequestError as e:
            raise ConnectorConnectionError(f"Network error calling {self.display_name}: {e}") from e

        if response.status_code < 400:
            return response.json() if response.content else {}

        message = self._error_message(response)
        context = {"status_code": response.status_code}
        if response.status_code in (401, 403):
            raise AuthenticationError(message, context=context)
        if response.status_code == 429:
            problem = self._rate_limit_problem(response)
            retry_after = response.headers.get("Retry-After")
            verdict = self.classifier.classify_parts([problem or "429"], "")
            raise RateLimitError(
                message,
                retry_after_ms=int(float(retry_after) * 1000) if retry_after else None,
                retryable=verdict == RetryVerdict.RETRYABLE,
                context={**context, "problem": problem},
            )
        if response.status_code >= 500:
            message = f"Server error: {response.status_code} - {message}"
        verdict = self.classifier.classify_parts([str(response.status_code)], message)
        raise QueryError(
            message,
            retryable=verdict == RetryVerdict.RETRYABLE,
            code=str(response.status_code),
            context=context,
        )

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"{self.display_name} error {response.status_code}: {response.text}"
        if isinstance(body, dict):
            for key in ("Detail", "detail", "message", "Message", "error_description", "error", "Title"):
                if isinstance(body.get(key), str):
                    return body[key]
        return f"{self.display_name} error {response.status_code}: {body}"

    @staticmethod
    def _rate_limit_problem(response: httpx.Response) -> Optional[str]:
        return None

    # Reads

    async def fetch(self, table: str, limit: Optional[int] = None, **params: Any) -> List[Dict[str, Any]]:
        """
        Records of one endpoint, optionally filtered by endpoint parameters.

        Raises:
            QueryError: if the table is not in the catalog or the API fails
        """
        self._ensure_connected()
        if table not in self.table_names():
            raise QueryError(f"Unknown {self.display_name} table: {table}", retryable=False)
        try:
            rows = await self._fetch(table, limit, {k: v for k, v in params.items() if v is not None})
        except Exception as e:
            error = self.wrap_error(e)
            self._record_error(error)
            raise error from e
        self._stats["total_rows"] += len(rows)
        return rows

    async def _execute(self, sql: str, params: QueryParams) -> QueryResult:
        fields, table, limit = parse_read(sql)
        if table not in self.table_names():
            raise QueryError(f"Unknown {self.display_name} table: {table}", retryable=False, sql=sql)
        rows = await self._fetch(table, limit, {})
        if limit is not None:
            rows = rows[:limit]
        if fields:
            rows = [{name: row.get(name) for name in fields} for row in rows]
        columns = fields or (list(rows[0].keys()) if rows else [c.name for c in self._columns_for(table)])
        return QueryResult(columns=columns, rows=rows, row_count=len(rows))

    # Introspection

    def table_names(self) -> List[str]:
        return [name for tables in self.schemas.values() for name in tables]

    def _columns_for(self, table: str) -> List[ColumnInfo]:
        references = {
            fk.from_column: ForeignKeyRef(table=fk.to_table, column=fk.to_column)
            for fk in self.foreign_keys
            if fk.from_table == table
        }
        return [
            replace(column, foreign_key=references.get(column.name))
            for column in self.table_columns.get(table, self.default_columns)
        ]

    async def list_databases(self) -> List[DatabaseInfo]:
        return [DatabaseInfo(name=self.catalog_database)]

    async def list_schemas(self, database: Optional[str] = None) -> List[SchemaInfo]:
        return [SchemaInfo(name=name, database=self.catalog_database) for name in self.schemas]

    async def list_tables(self, database: Optional[str] = None, schema: Optional[str] = None) -> List[TableInfo]:
        self._ensure_connected()
        return [
            TableInfo(name=name, schema=schema_name, database=self.catalog_database)
            for schema_name, tables in self.schemas.items()
            if schema is None or schema == schema_name
            for name in tables
        ]

    async def list_columns(
        self, table: str, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[ColumnInfo]:
        return self._columns_for(table)

    async def list_foreign_keys(
        self, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[ForeignKeyInfo]:
        return list(self.foreign_keys)

    async def get_version(self) -> str:
        self._ensure_connected()
        return self.api_version
