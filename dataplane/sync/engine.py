"""
Incremental Sync Engine.

Moves changes from a source connection into a sink in watermark order:

    idle -> fetching_changes -> processing_batch -> checkpointing
         -> (loop | completed | failed)

A checkpoint is written only after its batch is applied, so a run
interrupted between the two re-applies that batch on resume; sinks apply
batches idempotently, which makes the replay harmless.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, List, Optional

from dataplane.connectors.base import BaseConnector
from dataplane.connectors.models import TableRef
from dataplane.connectors.registry import ConnectionRegistry
from dataplane.errors import (
    CheckpointClaimedError,
    ConnectorError,
    OperationTimeoutError,
)
from dataplane.notifications import EventType, NotificationDispatcher, Notifier
from dataplane.sync.change_feed import ChangeFeed, create_change_feed
from dataplane.sync.checkpoint import CheckpointStore
from dataplane.sync.models import (
    ChangeRecord,
    IncrementalConfig,
    IncrementalSyncResult,
    SyncCheckpoint,
    SyncConfig,
    SyncState,
    TableSyncResult,
)
from dataplane.sync.sink import ChangeSink
from dataplane.utils.retry import RetryConfig, RetryExecutor

logger = logging.getLogger(__name__)


class IncrementalSyncEngine:
    """
    Runs incremental syncs for one or more tables of a connection.

    Tables run concurrently up to SyncConfig.max_concurrency, each on its
    own session borrowed from the registry. A failing table never stops
    the others.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        checkpoint_store: CheckpointStore,
        sink: ChangeSink,
        notifier: Optional[Notifier] = None,
    ):
        self.registry = registry
        self.checkpoint_store = checkpoint_store
        self.sink = sink
        self.dispatcher = NotificationDispatcher(notifier)

    async def run(
        self,
        connection_id: str,
        tables: List[str],
        incremental: IncrementalConfig,
        sync: Optional[SyncConfig] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IncrementalSyncResult:
        """
        Sync each table from its last checkpoint.

        Raises:
            ConfigurationError: if the incremental strategy has no change feed
        """
        sync = sync or SyncConfig()
        feed = create_change_feed(incremental)
        sync_id = uuid.uuid4().hex
        result = IncrementalSyncResult(connection_id=connection_id, sync_id=sync_id)
        semaphore = asyncio.Semaphore(sync.max_concurrency)

        logger.info(f"Starting incremental sync {sync_id} of {len(tables)} table(s) on {connection_id}")

        async def _bounded(index: int, table: str) -> TableSyncResult:
            # Each table task claims under its own owner so a table listed twice runs once
            async with semaphore:
                return await self._sync_table(
                    connection_id, TableRef.parse(table), feed, incremental, sync, f"{sync_id}:{index}", cancel_event
                )

        result.tables = list(await asyncio.gather(*(_bounded(i, t) for i, t in enumerate(tables))))

        if sync.retention_days:
            result.checkpoints_purged = await self.purge_checkpoints(connection_id, sync.retention_days)

        result.completed_at = datetime.utcnow()
        if result.success:
            logger.info(
                f"Incremental sync {sync_id} completed: {result.total_changes} changes "
                f"({result.changes_per_second:.1f}/s)"
            )
            self.dispatcher.emit(EventType.INCREMENTAL_SYNC_COMPLETED, connection_id, result.to_dict())
        else:
            logger.error(f"Incremental sync {sync_id} failed for tables: {', '.join(result.failed_tables)}")
            self.dispatcher.emit(EventType.INCREMENTAL_SYNC_FAILED, connection_id, result.to_dict())
        return result

    async def purge_checkpoints(self, connection_id: str, retention_days: int) -> int:
        """Delete checkpoints of a connection older than retention_days."""
        purged = await self.checkpoint_store.delete_older_than(connection_id, retention_days)
        if purged:
            logger.info(f"Purged {purged} checkpoint(s) older than {retention_days} days for {connection_id}")
        return purged

    async def _sync_table(
        self,
        connection_id: str,
        table: TableRef,
        feed: ChangeFeed,
        incremental: IncrementalConfig,
        sync: SyncConfig,
        owner: str,
        cancel_event: Optional[asyncio.Event],
    ) -> TableSyncResult:
        result = TableSyncResult(table=table.key)

        if not await self.checkpoint_store.claim(connection_id, table.key, owner):
            error = CheckpointClaimedError(connection_id, table.key)
            logger.warning(str(error))
            result.state = SyncState.FAILED
            result.error = str(error)
            result.completed_at = datetime.utcnow()
            return result

        connector: Optional[BaseConnector] = None
        try:
            async with self.registry.session(connection_id) as connector:
                await self._run_batches(connector, connection_id, table, feed, incremental, sync, result, cancel_event)
            result.state = SyncState.COMPLETED
        except Exception as e:
            result.state = SyncState.FAILED
            result.error = str(e)
            result.retryable = self._is_retryable(e, connector)
            logger.error(f"Sync of {table} on {connection_id} failed after {result.batches} batch(es): {e}")
        finally:
            await self.checkpoint_store.release_claim(connection_id, table.key, owner)
            result.completed_at = datetime.utcnow()
        return result

    async def _run_batches(
        self,
        connector: BaseConnector,
        connection_id: str,
        table: TableRef,
        feed: ChangeFeed,
        incremental: IncrementalConfig,
        sync: SyncConfig,
        result: TableSyncResult,
        cancel_event: Optional[asyncio.Event],
    ) -> None:
        checkpoint = await self.checkpoint_store.get(connection_id, table.key)
        watermark = checkpoint.watermark if checkpoint else incremental.initial_watermark
        processed = checkpoint.changes_processed if checkpoint else 0
        result.watermark = watermark

        batch_size = min(incremental.batch_size, sync.max_batch_size or incremental.batch_size)
        executor = RetryExecutor(
            RetryConfig(max_attempts=sync.max_batch_attempts, base_delay=sync.retry_base_delay),
            classifier=connector.classifier,
        )

        def _count_retry(attempt: int, error: BaseException) -> None:
            result.retries += 1

        while result.batches < sync.max_batches_per_run:
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.info(f"Sync of {table} cancelled after {result.batches} batch(es)")
                break

            result.state = SyncState.FETCHING_CHANGES
            records: List[ChangeRecord] = await executor.async_execute(
                lambda: self._with_timeout(feed.fetch(connector, table, watermark, batch_size), sync.batch_timeout),
                on_retry=_count_retry,
            )
            if not records:
                break

            result.state = SyncState.PROCESSING_BATCH
            await executor.async_execute(
                lambda: self._with_timeout(self.sink.apply(table, records), sync.batch_timeout),
                on_retry=_count_retry,
            )

            result.state = SyncState.CHECKPOINTING
            watermark = max(record.watermark_value for record in records)
            processed += len(records)
            await self.checkpoint_store.put(
                connection_id,
                table.key,
                SyncCheckpoint(
                    connection_id=connection_id,
                    table=table.key,
                    watermark=watermark,
                    changes_processed=processed,
                ),
            )
            result.batches += 1
            result.changes_processed += len(records)
            result.watermark = watermark
            logger.debug(f"Checkpointed {table} at {watermark!r} after batch {result.batches}")

            if len(records) < batch_size:
                break

    @staticmethod
    async def _with_timeout(awaitable: Any, timeout: float) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(f"Batch exceeded {timeout}s") from e

    @staticmethod
    def _is_retryable(error: BaseException, connector: Optional[BaseConnector]) -> bool:
        if connector is not None:
            return connector.classifier.is_retryable(error)
        if isinstance(error, ConnectorError):
            return error.retryable
        return False
