"""
Connection Registry.

Owns the connect/disconnect lifecycle of live connector sessions, keyed by
logical connection id. A session is handed to at most one in-flight task
at a time; concurrent tasks on the same connection each borrow their own
session, up to max_concurrency.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Protocol, Union

from dataplane.config.settings import settings
from dataplane.connectors.base import BaseConnector, ConnectorFactory
from dataplane.connectors.models import ConnectionConfig, ConnectionTestResult, SourceType
from dataplane.errors import ConfigurationError, ConnectorConnectionError, ConnectorError

logger = logging.getLogger(__name__)

ConnectorBuilder = Callable[[ConnectionConfig], BaseConnector]


class ConfigStore(Protocol):
    """External source of connection configurations."""

    async def get(self, connection_id: str) -> Optional[ConnectionConfig]:
        ...


class StaticConfigStore:
    """In-process config store backed by a dict."""

    def __init__(self, configs: Iterable[ConnectionConfig] = ()):
        self._configs: Dict[str, ConnectionConfig] = {c.id: c for c in configs}

    def add(self, config: ConnectionConfig) -> None:
        self._configs[config.id] = config

    async def get(self, connection_id: str) -> Optional[ConnectionConfig]:
        return self._configs.get(connection_id)


class SessionPool:
    """
    Sessions for one logical connection.

    The resident session returned by warm() stays with its holder and is
    never lent out; borrowed sessions come from the idle list.
    """

    def __init__(self, config: ConnectionConfig, build: ConnectorBuilder, size: int):
        self.config = config
        self._build = build
        self._size = size
        self._sessions: List[BaseConnector] = []
        self._idle: List[BaseConnector] = []
        self._resident: Optional[BaseConnector] = None
        self._semaphore = asyncio.Semaphore(size)
        self._lock = asyncio.Lock()

    @property
    def size(self) -> int:
        return len(self._sessions)

    @property
    def idle(self) -> int:
        return len(self._idle)

    async def _open(self) -> BaseConnector:
        connector = self._build(self.config)
        await connector.connect()
        self._sessions.append(connector)
        logger.debug(f"Opened session {len(self._sessions)} for {self.config.id}")
        return connector

    async def warm(self) -> BaseConnector:
        """Open the resident session on first use and return it."""
        async with self._lock:
            if self._resident is None or not self._resident.is_connected:
                if self._resident is not None:
                    self._discard(self._resident)
                    self._resident = None
                self._resident = await self._open()
            return self._resident

    async def acquire(self) -> BaseConnector:
        await self._semaphore.acquire()
        try:
            async with self._lock:
                while self._idle:
                    connector = self._idle.pop()
                    if connector.is_connected:
                        return connector
                    self._discard(connector)
                return await self._open()
        except BaseException:
            self._semaphore.release()
            raise

    def release(self, connector: BaseConnector) -> None:
        if connector.is_connected:
            self._idle.append(connector)
        else:
            self._discard(connector)
        self._semaphore.release()

    def _discard(self, connector: BaseConnector) -> None:
        if connector in self._sessions:
            self._sessions.remove(connector)

    async def close(self) -> None:
        sessions, self._sessions, self._idle = self._sessions, [], []
        self._resident = None
        errors = []
        for connector in sessions:
            try:
                await connector.disconnect()
            except Exception as e:
                errors.append(e)
                logger.error(f"Failed to disconnect session for {self.config.id}: {e}")
        if errors:
            raise ConnectorConnectionError(
                f"{len(errors)} session(s) of {self.config.id} failed to disconnect",
                retryable=False,
            ) from errors[0]


class ConnectionRegistry:
    """
    Keyed store of live connector sessions.

    Usage:
        async with ConnectionRegistry(store) as registry:
            async with registry.session("warehouse") as connector:
                await connector.execute_query("SELECT 1")
    """

    def __init__(
        self,
        config_store: ConfigStore,
        max_concurrency: Optional[int] = None,
        connector_factory: ConnectorBuilder = ConnectorFactory.create,
    ):
        self.config_store = config_store
        self.max_concurrency = max_concurrency or settings.sync.max_concurrency
        self._build = connector_factory
        self._pools: Dict[str, SessionPool] = {}
        self._lock = asyncio.Lock()

    async def _load_config(self, connection_id: str) -> ConnectionConfig:
        config = await self.config_store.get(connection_id)
        if config is None:
            raise ConfigurationError(f"Unknown connection: {connection_id}")
        if not config.enabled:
            raise ConnectorConnectionError(f"Connection {connection_id} is disabled", retryable=False)
        return config

    async def _pool(self, connection_id: str, credentials: Optional[Dict[str, Any]] = None) -> SessionPool:
        async with self._lock:
            pool = self._pools.get(connection_id)
            if pool is None:
                config = await self._load_config(connection_id)
                if credentials:
                    config = config.with_credentials(credentials)
                pool = SessionPool(config, self._build, self.max_concurrency)
                self._pools[connection_id] = pool
            return pool

    async def resolve(self, connection_id: str, credentials: Optional[Dict[str, Any]] = None) -> BaseConnector:
        """
        Open the connection on first use and reuse it thereafter.

        Returns the connection's resident session, which session() never
        lends to a borrower. Tasks that may run concurrently must borrow
        through session() instead.
        """
        pool = await self._pool(connection_id, credentials)
        try:
            return await pool.warm()
        except ConnectorError:
            await self._drop_if_empty(connection_id, pool)
            raise

    @asynccontextmanager
    async def session(self, connection_id: str) -> AsyncIterator[BaseConnector]:
        """Borrow a session exclusively for the duration of the block."""
        pool = await self._pool(connection_id)
        try:
            connector = await pool.acquire()
        except ConnectorError:
            await self._drop_if_empty(connection_id, pool)
            raise
        try:
            yield connector
        finally:
            pool.release(connector)

    async def _drop_if_empty(self, connection_id: str, pool: SessionPool) -> None:
        async with self._lock:
            if pool.size == 0 and self._pools.get(connection_id) is pool:
                del self._pools[connection_id]

    async def release(self, connection_id: str) -> None:
        """Disconnect every session of a connection and forget it."""
        async with self._lock:
            pool = self._pools.pop(connection_id, None)
        if pool is not None:
            await pool.close()
            logger.info(f"Released connection {connection_id}")

    async def close(self) -> None:
        """Release every connection."""
        for connection_id in list(self._pools):
            await self.release(connection_id)

    def is_open(self, connection_id: str) -> bool:
        pool = self._pools.get(connection_id)
        return pool is not None and pool.size > 0

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            connection_id: {
                "source_type": pool.config.source_type.value,
                "sessions": pool.size,
                "idle": pool.idle,
            }
            for connection_id, pool in self._pools.items()
        }

    async def test_connection(
        self,
        source_type: Union[SourceType, str],
        credentials: Dict[str, Any],
        **options: Any,
    ) -> ConnectionTestResult:
        """Probe a configuration with an ephemeral connector; never touches the registry."""
        try:
            config = ConnectionConfig(
                id=f"test-{uuid.uuid4().hex[:8]}",
                source_type=SourceType(source_type),
                credentials=credentials,
                **options,
            )
        except ValueError as e:
            return ConnectionTestResult(success=False, message=f"Invalid configuration: {e}")
        try:
            connector = self._build(config)
        except ConfigurationError as e:
            return ConnectionTestResult(success=False, message=e.message, details={"code": e.code})
        return await connector.test_connection()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
