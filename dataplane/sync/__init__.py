"""
Incremental sync: change feeds, sinks, checkpoints and the sync engine.
"""

from dataplane.sync.change_feed import ChangeFeed, ChangeLogFeed, ColumnChangeFeed, create_change_feed
from dataplane.sync.checkpoint import CheckpointStore, MemoryCheckpointStore, SQLCheckpointStore
from dataplane.sync.engine import IncrementalSyncEngine
from dataplane.sync.models import (
    ChangeOperation,
    ChangeRecord,
    IncrementalConfig,
    IncrementalStrategy,
    IncrementalSyncResult,
    SyncCheckpoint,
    SyncConfig,
    SyncFrequency,
    SyncState,
    TableSyncResult,
)
from dataplane.sync.sink import ChangeSink, MemorySink, SQLTableSink

__all__ = [
    "ChangeFeed",
    "ChangeLogFeed",
    "ColumnChangeFeed",
    "create_change_feed",
    "CheckpointStore",
    "MemoryCheckpointStore",
    "SQLCheckpointStore",
    "IncrementalSyncEngine",
    "ChangeOperation",
    "ChangeRecord",
    "IncrementalConfig",
    "IncrementalStrategy",
    "IncrementalSyncResult",
    "SyncCheckpoint",
    "SyncConfig",
    "SyncFrequency",
    "SyncState",
    "TableSyncResult",
    "ChangeSink",
    "MemorySink",
    "SQLTableSink",
]
