"""
Base Connector Module.

Provides the connector contract every data source adapter implements, and
the factory that maps a source type to its adapter.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncIterator, ClassVar, Dict, List, Optional, Sequence, Tuple, Type, Union

from dataplane.config.logging import sanitize_for_logging
from dataplane.config.settings import settings
from dataplane.connectors.models import (
    ColumnInfo,
    ConnectionConfig,
    ConnectionStatus,
    ConnectionTestResult,
    DatabaseInfo,
    ForeignKeyInfo,
    QueryResult,
    SchemaInfo,
    SourceFamily,
    SourceType,
    TableInfo,
)
from dataplane.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectorConnectionError,
    ConnectorError,
    OperationTimeoutError,
    QueryError,
)
from dataplane.utils.retry import RetryClassifier, is_authentication_error

logger = logging.getLogger(__name__)

# A required credential is either a field name or a tuple of alternatives
CredentialRequirement = Union[str, Tuple[str, ...]]
QueryParams = Optional[Union[Dict[str, Any], Sequence[Any]]]


class BaseConnector(ABC):
    """
    Abstract base class for data source connectors.

    Subclasses implement the _open/_close/_execute hooks and the
    introspection calls; connection state, timeouts, error wrapping and
    statistics live here.
    """

    source_type: ClassVar[SourceType]
    family: ClassVar[SourceFamily]
    display_name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    features: ClassVar[Tuple[str, ...]] = ()
    required_credentials: ClassVar[Tuple[CredentialRequirement, ...]] = ()
    accepts_url: ClassVar[bool] = False

    def __init__(self, config: ConnectionConfig):
        """
        Initialize connector.

        Args:
            config: Connection configuration
        """
        self.config = config
        self.classifier = RetryClassifier.for_family(self.family)
        self._status = ConnectionStatus.DISCONNECTED
        self._last_error: Optional[Exception] = None
        self._connected_at: Optional[datetime] = None
        self._stats = {
            "total_queries": 0,
            "total_rows": 0,
            "total_errors": 0,
        }

    @property
    def status(self) -> ConnectionStatus:
        """Get current connection status."""
        return self._status

    @property
    def is_connected(self) -> bool:
        """Check if connector is connected."""
        return self._status == ConnectionStatus.CONNECTED

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    @property
    def stats(self) -> Dict[str, Any]:
        """Get connector statistics."""
        return {
            **self._stats,
            "status": self._status.value,
            "connected_at": self._connected_at,
            "uptime_seconds": (
                (datetime.utcnow() - self._connected_at).total_seconds()
                if self._connected_at else 0
            ),
        }

    # Lifecycle

    async def connect(self, config: Optional[ConnectionConfig] = None) -> None:
        """
        Establish a session with the source.

        Raises:
            ConnectorConnectionError: if already connected or the source is unreachable
            AuthenticationError: if credentials are rejected
            ConfigurationError: if required credentials are missing
        """
        if self.is_connected:
            raise ConnectorConnectionError(
                f"Connector {self.config.id} is already connected; call disconnect() first",
                retryable=False,
            )
        if config is not None:
            self.config = config
        self.validate_config(self.config)

        self._set_status(ConnectionStatus.CONNECTING)
        logger.info(
            f"Connecting {self.source_type.value} connector {self.config.id} "
            f"with {sanitize_for_logging(self.config.credentials)}"
        )
        try:
            await asyncio.wait_for(self._open(), timeout=self.config.connection_timeout)
        except asyncio.CancelledError:
            await self._release_after_failure()
            self._set_status(ConnectionStatus.DISCONNECTED)
            raise
        except Exception as e:
            error = self._wrap_connect_error(e)
            self._record_error(error)
            await self._release_after_failure()
            self._set_status(ConnectionStatus.ERROR)
            raise error from e

        self._connected_at = datetime.utcnow()
        self._set_status(ConnectionStatus.CONNECTED)

    async def disconnect(self) -> None:
        """Release every underlying resource; safe on a closed instance."""
        try:
            await self._close()
        finally:
            self._connected_at = None
            self._set_status(ConnectionStatus.DISCONNECTED)

    async def test_connection(self, config: Optional[ConnectionConfig] = None) -> ConnectionTestResult:
        """
        Open, probe and close a session.

        Returns a result instead of raising; the connector is always
        disconnected afterwards.
        """
        start = time.perf_counter()
        try:
            await self.connect(config)
            version = await self.get_version()
            latency_ms = (time.perf_counter() - start) * 1000
            return ConnectionTestResult(
                success=True,
                message=f"Connected to {self.display_name or self.source_type.value}",
                latency_ms=round(latency_ms, 2),
                version=version,
            )
        except ConnectorError as e:
            latency_ms = (time.perf_counter() - start) * 1000
            return ConnectionTestResult(
                success=False,
                message=e.message,
                latency_ms=round(latency_ms, 2),
                details={"code": e.code, "retryable": e.retryable},
            )
        finally:
            await self.disconnect()

    async def ping(self) -> bool:
        """Lightweight liveness probe."""
        if not self.is_connected:
            return False
        try:
            await self.execute_query(self.ping_query)
            return True
        except ConnectorError as e:
            logger.debug(f"Ping failed for {self.config.id}: {e}")
            return False

    ping_query: ClassVar[str] = "SELECT 1"

    # Queries

    async def execute_query(
        self,
        sql: str,
        params: QueryParams = None,
        timeout: Optional[float] = None,
    ) -> QueryResult:
        """
        Run a query and return its full result.

        Raises:
            ConnectorConnectionError: if the connector is not connected
            OperationTimeoutError: if the query exceeds its timeout
            QueryError: for any source failure, with the retry verdict attached
        """
        self._ensure_connected()
        timeout = timeout or self.config.query_timeout or settings.connectors.query_timeout
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(self._execute(sql, params), timeout=timeout)
        except asyncio.TimeoutError as e:
            error = OperationTimeoutError(
                f"Query exceeded {timeout}s on {self.config.id}",
                context={"sql": sql[:200]},
            )
            self._record_error(error)
            raise error from e
        except Exception as e:
            error = self.wrap_error(e, sql=sql)
            self._record_error(error)
            raise error from e

        result.execution_time_ms = round((time.perf_counter() - start) * 1000, 2)
        self._stats["total_queries"] += 1
        self._stats["total_rows"] += result.row_count
        return result

    async def execute_streaming_query(
        self,
        sql: str,
        params: QueryParams = None,
        chunk_size: Optional[int] = None,
    ) -> AsyncIterator[List[Dict[str, Any]]]:
        """
        Yield result rows in chunks.

        Connectors without native streaming fall back to chunking a full
        result set.
        """
        chunk_size = chunk_size or settings.connectors.streaming_chunk_size
        result = await self.execute_query(sql, params)
        for offset in range(0, len(result.rows), chunk_size):
            yield result.rows[offset:offset + chunk_size]

    # Errors

    def wrap_error(self, error: BaseException, sql: Optional[str] = None) -> ConnectorError:
        """Wrap a driver error with this family's retry verdict."""
        if isinstance(error, ConnectorError):
            return error
        context = {
            "source_type": self.source_type.value,
            "error_type": type(error).__name__,
        }
        if is_authentication_error(error):
            return AuthenticationError(str(error), context=context)
        return QueryError(
            str(error),
            retryable=self.classifier.is_retryable(error),
            context=context,
            sql=sql,
        )

    def _wrap_connect_error(self, error: BaseException) -> ConnectorError:
        if isinstance(error, ConnectorError):
            return error
        context = {"source_type": self.source_type.value, "error_type": type(error).__name__}
        if is_authentication_error(error):
            return AuthenticationError(str(error) or "Authentication failed", context=context)
        if isinstance(error, asyncio.TimeoutError):
            return OperationTimeoutError(
                f"Connecting to {self.config.id} exceeded {self.config.connection_timeout}s",
                context=context,
            )
        return ConnectorConnectionError(
            str(error) or "Connection failed",
            retryable=self.classifier.is_retryable(error),
            context=context,
        )

    async def _release_after_failure(self) -> None:
        try:
            await self._close()
        except Exception as close_error:
            logger.warning(f"Cleanup after failed connect of {self.config.id} raised: {close_error}")

    def _ensure_connected(self) -> None:
        if not self.is_connected:
            raise ConnectorConnectionError(f"Connector {self.config.id} is not connected")

    def _set_status(self, status: ConnectionStatus) -> None:
        """Set connection status."""
        old_status = self._status
        self._status = status
        if old_status != status:
            logger.debug(f"Connector {self.config.id} status: {old_status.value} -> {status.value}")

    def _record_error(self, error: Exception) -> None:
        """Record an error."""
        self._last_error = error
        self._stats["total_errors"] += 1
        logger.error(f"Connector {self.config.id} error: {error}")

    # Configuration

    @classmethod
    def validate_config(cls, config: ConnectionConfig) -> None:
        """
        Check the credential bundle carries every required field.

        Raises:
            ConfigurationError: naming the missing fields
        """
        if config.source_type != cls.source_type and cls.source_type not in _ALIASES.get(config.source_type, ()):
            raise ConfigurationError(
                f"Connection {config.id} is {config.source_type.value}, not {cls.source_type.value}"
            )
        credentials = config.credentials
        if cls.accepts_url and (credentials.get("url") or credentials.get("connection_string")):
            return
        missing = []
        for requirement in cls.required_credentials:
            names = (requirement,) if isinstance(requirement, str) else requirement
            if not any(credentials.get(name) not in (None, "") for name in names):
                missing.append(" or ".join(names))
        if missing:
            raise ConfigurationError(
                f"Missing required {cls.source_type.value} credentials: {', '.join(missing)}",
                context={"missing": missing},
            )

    @classmethod
    def describe(cls) -> Dict[str, Any]:
        """Static metadata about this connector type."""
        return {
            "type": cls.source_type.value,
            "family": cls.family.value,
            "name": cls.display_name,
            "description": cls.description,
            "features": list(cls.features),
            "required_credentials": [
                r if isinstance(r, str) else list(r) for r in cls.required_credentials
            ],
        }

    # Subclass hooks

    @abstractmethod
    async def _open(self) -> None:
        """Open the underlying session."""

    @abstractmethod
    async def _close(self) -> None:
        """Release the underlying session; must tolerate a never-opened state."""

    @abstractmethod
    async def _execute(self, sql: str, params: QueryParams) -> QueryResult:
        """Run a query on the open session."""

    @abstractmethod
    async def list_databases(self) -> List[DatabaseInfo]:
        pass

    @abstractmethod
    async def list_schemas(self, database: Optional[str] = None) -> List[SchemaInfo]:
        pass

    @abstractmethod
    async def list_tables(self, database: Optional[str] = None, schema: Optional[str] = None) -> List[TableInfo]:
        pass

    @abstractmethod
    async def list_columns(
        self, table: str, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[ColumnInfo]:
        pass

    @abstractmethod
    async def list_foreign_keys(
        self, database: Optional[str] = None, schema: Optional[str] = None
    ) -> List[ForeignKeyInfo]:
        pass

    @abstractmethod
    async def get_version(self) -> str:
        pass

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.disconnect()


# Source types served by another type's connector class
_ALIASES: Dict[SourceType, Tuple[SourceType, ...]] = {
    SourceType.AZURE_SQL: (SourceType.MSSQL,),
}


class ConnectorFactory:
    """Registry mapping a source type to its connector class."""

    _connectors: Dict[SourceType, Type[BaseConnector]] = {}

    @classmethod
    def register(cls, source_type: SourceType, connector_class: Type[BaseConnector]) -> None:
        """Register a connector type."""
        cls._connectors[source_type] = connector_class
        logger.debug(f"Registered connector type: {source_type.value}")

    @classmethod
    def get(cls, source_type: Union[SourceType, str]) -> Type[BaseConnector]:
        try:
            source_type = SourceType(source_type)
        except ValueError:
            raise ConfigurationError(f"Unknown source type: {source_type}") from None
        if source_type not in cls._connectors:
            raise ConfigurationError(f"No connector registered for source type: {source_type.value}")
        return cls._connectors[source_type]

    @classmethod
    def create(cls, config: ConnectionConfig) -> BaseConnector:
        """Create a connector instance for a connection config."""
        return cls.get(config.source_type)(config)

    @classmethod
    def list_types(cls) -> List[SourceType]:
        """List registered connector types."""
        return list(cls._connectors.keys())

    @classmethod
    def describe(cls) -> List[Dict[str, Any]]:
        described = []
        for source_type, connector_class in cls._connectors.items():
            info = connector_class.describe()
            info["type"] = source_type.value
            described.append(info)
        return described
