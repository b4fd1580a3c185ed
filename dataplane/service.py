"""
Dataplane service facade.

Single entry point for the collaborators that trigger work (schedulers,
API handlers): connection lifecycle, incremental sync, quality checks and
transformation pipelines over one shared connection registry.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from dataplane.connectors.base import BaseConnector
from dataplane.connectors.models import ConnectionTestResult, SourceType
from dataplane.connectors.registry import ConfigStore, ConnectionRegistry
from dataplane.errors import ConnectorError
from dataplane.notifications import EventType, NotificationDispatcher, Notifier
from dataplane.pipeline.executor import PipelineExecutor
from dataplane.pipeline.models import ExecutionConfig, Pipeline, PipelineExecutionState
from dataplane.pipeline.state import MemoryPipelineStateStore, PipelineStateStore
from dataplane.quality.engine import QualityEngine
from dataplane.quality.models import CheckConfig, QualityReport
from dataplane.sync.checkpoint import CheckpointStore, MemoryCheckpointStore
from dataplane.sync.engine import IncrementalSyncEngine
from dataplane.sync.models import IncrementalConfig, IncrementalSyncResult, SyncConfig
from dataplane.sync.sink import ChangeSink, MemorySink

logger = logging.getLogger(__name__)


class DataPlane:
    """
    Facade over the registry and the sync, quality and pipeline engines.

    Usage:
        async with DataPlane(StaticConfigStore([config])) as dp:
            await dp.connect("warehouse")
            report = await dp.run_quality_checks("warehouse", ["public.orders"])
    """

    def __init__(
        self,
        config_store: ConfigStore,
        checkpoint_store: Optional[CheckpointStore] = None,
        sink: Optional[ChangeSink] = None,
        state_store: Optional[PipelineStateStore] = None,
        notifier: Optional[Notifier] = None,
        max_concurrency: Optional[int] = None,
    ):
        self.registry = ConnectionRegistry(config_store, max_concurrency=max_concurrency)
        self.checkpoint_store = checkpoint_store or MemoryCheckpointStore()
        self.sink = sink or MemorySink()
        self.state_store = state_store or MemoryPipelineStateStore()
        self.dispatcher = NotificationDispatcher(notifier)

        self.sync_engine = IncrementalSyncEngine(self.registry, self.checkpoint_store, self.sink, notifier)
        self.quality_engine = QualityEngine(self.registry, notifier)
        self.pipeline_executor = PipelineExecutor(self.registry, self.state_store, notifier)

    async def connect(self, connection_id: str, auth_config: Optional[Dict[str, Any]] = None) -> BaseConnector:
        """
        Open a connection, reusing it if already open.

        auth_config is merged over the stored credential bundle on first
        open only.
        """
        try:
            connector = await self.registry.resolve(connection_id, auth_config)
        except ConnectorError as e:
            logger.error(f"Failed to connect {connection_id}: {e.message}")
            self.dispatcher.emit(EventType.CONNECTION_FAILED, connection_id, e.to_dict())
            raise
        logger.info(f"Connection {connection_id} ready ({connector.source_type.value})")
        return connector

    async def disconnect(self, connection_id: str) -> None:
        await self.registry.release(connection_id)

    async def test_connection(
        self,
        source_type: Union[SourceType, str],
        auth_config: Dict[str, Any],
    ) -> ConnectionTestResult:
        return await self.registry.test_connection(source_type, auth_config)

    async def run_incremental_sync(
        self,
        connection_id: str,
        tables: List[str],
        incremental_config: IncrementalConfig,
        sync_config: Optional[SyncConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IncrementalSyncResult:
        return await self.sync_engine.run(connection_id, tables, incremental_config, sync_config, cancel_event)

    async def run_quality_checks(
        self,
        connection_id: str,
        tables: List[str],
        check_config: Optional[CheckConfig] = None,
    ) -> QualityReport:
        return await self.quality_engine.run(connection_id, tables, check_config)

    async def run_transformation_pipeline(
        self,
        connection_id: str,
        pipeline: Pipeline,
        execution_config: Optional[ExecutionConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PipelineExecutionState:
        return await self.pipeline_executor.execute(connection_id, pipeline, execution_config, cancel_event)

    async def drain_notifications(self) -> None:
        """Wait for every pending notification delivery."""
        for dispatcher in (
            self.dispatcher,
            self.sync_engine.dispatcher,
            self.quality_engine.dispatcher,
            self.pipeline_executor.dispatcher,
        ):
            await dispatcher.drain()

    async def close(self) -> None:
        await self.drain_notifications()
        await self.registry.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
