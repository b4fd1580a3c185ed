"""
Salesforce Connector Module.

Talks to the Salesforce REST API with httpx: SOQL queries through the query
endpoint (following nextRecordsUrl pages) and sobject describe calls for
schema introspection.
"""

import logging
import re
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from dataplane.config.settings import settings
from dataplane.connectors.base import BaseConnector, ConnectorFactory, QueryParams
from dataplane.connectors.models import (
    ColumnInfo,
    ConnectionConfig,
    DatabaseInfo,
    ForeignKeyInfo,
    ForeignKeyRef,
    QueryResult,
    SchemaInfo,
    SourceFamily,
    SourceType,
    TableInfo,
)
from dataplane.connectors.type_mapping import map_column_type
from dataplane.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectorConnectionError,
    QueryError,
    RateLimitError,
)
from dataplane.utils.retry import RetryVerdict

logger = logging.getLogger(__name__)

_POSITIONAL = re.compile(r"\$(\d+)")
_NAMED = re.compile(r"(?<![:\w]):([A-Za-z_]\w*)")
_SELECT_FIELDS = re.compile(r"^\s*select\s+(.*?)\s+from\s", re.IGNORECASE | re.DOTALL)


def escape_soql_value(value: Any) -> str:
    """Render a Python value as a SOQL literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def render_soql(soql: str, params: QueryParams) -> str:
    """Substitute $n (sequence) or :name (mapping) placeholders with escaped literals."""
    if params is None:
        return soql
    if isinstance(params, dict):
        return _NAMED.sub(
            lambda m: escape_soql_value(params[m.group(1)]) if m.group(1) in params else m.group(0),
            soql,
        )
    values = list(params)
    return _POSITIONAL.sub(lambda m: escape_soql_value(values[int(m.group(1)) - 1]), soql)


class SalesforceConnector(BaseConnector):
    """
    Salesforce CRM connector.

    Objects are exposed as tables in a single "default" schema. Reference
    fields are reported as foreign keys to the referenced object's Id.
    """

    family = SourceFamily.SAAS
    source_type = SourceType.SALESFORCE
    display_name = "Salesforce"
    description = "CRM platform via the REST API"
    features = ("schema_discovery", "soql_queries", "incremental_sync", "streaming")
    ping_query = "SELECT Id FROM Organization LIMIT 1"

    def __init__(self, config: ConnectionConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._instance_url: Optional[str] = None
        self._api_version = config.credentials.get("api_version") or settings.connectors.salesforce_api_version

    @classmethod
    def validate_config(cls, config: ConnectionConfig) -> None:
        super().validate_config(config)
        credentials = config.credentials
        has_token = bool(credentials.get("access_token") and credentials.get("instance_url"))
        has_password = bool(credentials.get("username") and credentials.get("password"))
        if not (has_token or has_password):
            raise ConfigurationError(
                "Salesforce requires username and password, or access_token and instance_url",
                context={"missing": ["username", "password"]},
            )

    @property
    def data_path(self) -> str:
        return f"/services/data/{self._api_version}"

    # Lifecycle hooks

    async def _open(self) -> None:
        timeout = httpx.Timeout(
            self.config.query_timeout or settings.connectors.query_timeout,
            connect=float(self.config.connection_timeout),
        )
        self._client = httpx.AsyncClient(timeout=timeout, transport=self._transport)
        access_token, self._instance_url = await self._authenticate()
        self._client.base_url = self._instance_url
        self._client.headers["Authorization"] = f"Bearer {access_token}"
        await self._request("GET", f"{self.data_path}/")
        logger.info(f"Connected to Salesforce: {self._instance_url}")

    async def _authenticate(self) -> Tuple[str, str]:
        credentials = self.config.credentials
        if credentials.get("access_token") and credentials.get("instance_url"):
            return credentials["access_token"], credentials["instance_url"].rstrip("/")

        login_url = (credentials.get("login_url") or settings.connectors.salesforce_login_url).rstrip("/")
        data = {
            "grant_type": "password",
            "username": credentials["username"],
            "password": f"{credentials['password']}{credentials.get('security_token', '')}",
        }
        if credentials.get("client_id"):
            data["client_id"] = credentials["client_id"]
        if credentials.get("client_secret"):
            data["client_secret"] = credentials["client_secret"]

        try:
            response = await self._client.post(f"{login_url}/services/oauth2/token", data=data)
        except httpx.RequestError as e:
            raise ConnectorConnectionError(f"Network error authenticating with Salesforce: {e}") from e

        if response.status_code in (400, 401):
            body = response.json() if response.content else {}
            raise AuthenticationError(
                body.get("error_description") or "Salesforce rejected the credentials",
                context={"error": body.get("error")},
            )
        if response.status_code != 200:
            raise ConnectorConnectionError(
                f"Salesforce login failed: {response.status_code} - {response.text}",
                retryable=response.status_code >= 500,
            )
        token = response.json()
        return token["access_token"], token["instance_url"].rstrip("/")

    async def _close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        await client.aclose()
        logger.info(f"Disconnected from Salesforce ({self.config.id})")

    # HTTP

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise QueryError(f"Salesforce request timed out: {e}", retryable=True) from e
        except httpx.RequestError as e:
            raise ConnectorConnectionError(f"Network error calling Salesforce: {e}") from e

        if response.status_code < 400:
            return response.json() if response.content else {}

        error_code, message = self._parse_error(response)
        context = {"status_code": response.status_code, "error_code": error_code}
        if response.status_code == 401 or error_code == "INVALID_SESSION_ID":
            raise AuthenticationError(message, context=context)
        if response.status_code == 429 or error_code == "REQUEST_LIMIT_EXCEEDED":
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                message,
                retry_after_ms=int(float(retry_after) * 1000) if retry_after else None,
                context=context,
            )
        verdict = self.classifier.classify_parts(
            [error_code or "", str(response.status_code)], message
        )
        raise QueryError(
            message,
            retryable=verdict == RetryVerdict.RETRYABLE,
            code=error_code,
            context=context,
        )

    @staticmethod
    def _parse_error(response: httpx.Response) -> Tuple[Optional[str], str]:
        try:
            body = response.json()
        except ValueError:
            return None, f"Salesforce error {response.status_code}: {response.text}"
        if isinstance(body, list) and body:
            body = body[0]
        if isinstance(body, dict):
            return body.get("errorCode"), body.get("message") or str(body)
        return None, str(body)

    # Queries

    async def _execute(self, sql: str, params: QueryParams) -> QueryResult:
        soql = render_soql(sql, params)
        rows: List[Dict[str, Any]] = []
        async for page in self._pages(soql):
            rows.extend(page)
        return QueryResult(columns=self._columns(soql, rows), rows=rows, row_count=len(rows))

    async def _pages(self, soql: str) -> AsyncIterator[List[Dict[str, Any]]]:
        body = await self._request("GET", f"{self.data_path}/query", params={"q": soql})
        while True:
            yield [self._strip_attributes(r) for r in body.get("records", [])]
            next_url = body.get("nextRecordsUrl")
            if body.get("done", True) or not next_url:
                return
            body = await self._request("GET", next_url)

    async def execute_streaming_query(
        self,
        sql: str,
        params: QueryParams = None,
        chunk_size: Optional[int] = None,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """Yield one chunk per Salesforce result page."""
        self._ensure_connected()
        try:
            async for page in self._pages(render_soql(sql, params)):
                self._stats["total_rows"] += len(page)
                yield page
        except Exception as e:
            error = self.wrap_error(e, sql=sql)
            self._record_error(error)
            raise error from e
        self._stats["total_queries"] += 1

    @classmethod
    def _strip_attributes(cls, record: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: cls._strip_attributes(value) if isinstance(value, dict) else value
            for key, value in record.items()
            if key != "attributes"
        }

    @staticmethod
    def _columns(soql: str, rows: List[Dict[str, Any]]) -> List[str]:
        if rows:
            return list(rows[0].keys())
        match = _SELECT_FIELDS.match(soql)
        if not match:
            return []
        return [f.strip() for f in match.group(1).split(",") if f.strip()]

    # Introspection

    async def list_databases(self) -> List[DatabaseInfo]:
        self._ensure_connected()
        return [DatabaseInfo(name=self._instance_url or "salesforce")]

    async def list_schemas(self, database: Optional[str] = None) -> List[SchemaInfo]:
        self._ensure_connected()
        return [SchemaInfo(name="default", database=database)]

    async def list_tables(self, database: Optional[str] = None, schema: Optional[str] = None) -> List[TableInfo]:
        self._ensure_connected()
        body = await self._call("GET", f"{self.data_path}/sobjects")
        return [
            TableInfo(
                name=sobject["name"],
                schema=schema or "default",
                database=database,
                table_type="custom" if sobject.get("custom") else "standard",
            )
            for sobject in body.get("sobjects", [])
            if sobject.get("queryable", True)
        ]

    async def list_columns(
        self, table: str, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[ColumnInfo]:
        self._ensure_connected()
        body = await self._call("GET", f"{self.data_path}/sobjects/{table}/describe")
        columns = []
        for sf_field in body.get("fields", []):
            references = sf_field.get("referenceTo") or []
            foreign_key = None
            if sf_field.get("type") == "reference" and references:
                foreign_key = ForeignKeyRef(table=references[0], column="Id")
            columns.append(ColumnInfo(
                name=sf_field["name"],
                type=map_column_type(sf_field.get("type", "")),
                nullable=bool(sf_field.get("nillable", True)),
                primary_key=sf_field["name"] == "Id",
                foreign_key=foreign_key,
                max_length=sf_field.get("length") or None,
                precision=sf_field.get("precision") or None,
                scale=sf_field.get("scale") or None,
                native_type=sf_field.get("type"),
                default=sf_field.get("defaultValue"),
            ))
        return columns

    async def list_foreign_keys(
        self, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[ForeignKeyInfo]:
        """
        Reference fields of the objects listed in credentials["objects"].

        Describing every sobject costs one request each, so only the
        configured objects are inspected.
        """
        keys = []
        for sobject in self.config.credentials.get("objects") or []:
            for column in await self.list_columns(sobject):
                if column.foreign_key is None:
                    continue
                keys.append(ForeignKeyInfo(
                    constraint_name=f"{sobject}.{column.name}",
                    from_table=sobject,
                    from_column=column.name,
                    to_table=column.foreign_key.table,
                    to_column=column.foreign_key.column,
                ))
        return keys

    async def get_version(self) -> str:
        self._ensure_connected()
        versions = await self._call("GET", "/services/data/")
        if isinstance(versions, list) and versions:
            return str(versions[-1].get("version"))
        return self._api_version.lstrip("v")

    async def _call(self, method: str, url: str, **kwargs) -> Any:
        try:
            return await self._request(method, url, **kwargs)
        except Exception as e:
            error = self.wrap_error(e)
            self._record_error(error)
            raise error from e


# Register connector
ConnectorFactory.register(SourceType.SALESFORCE, SalesforceConnector)
