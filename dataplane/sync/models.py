"""
Data models for incremental sync.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from dataplane.config.settings import settings


class ChangeOperation(str, Enum):
    """Change record operation."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class IncrementalStrategy(str, Enum):
    """How changes are detected at the source."""
    TIMESTAMP = "timestamp"
    AUTO_INCREMENT = "auto_increment"
    CHANGE_LOG = "change_log"
    BINARY_LOG = "binary_log"


class SyncFrequency(str, Enum):
    REALTIME = "realtime"
    MINUTE = "minute"
    HOURLY = "hourly"
    DAILY = "daily"


class SyncState(str, Enum):
    """Per-table sync state machine."""
    IDLE = "idle"
    FETCHING_CHANGES = "fetching_changes"
    PROCESSING_BATCH = "processing_batch"
    CHECKPOINTING = "checkpointing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ChangeRecord:
    """A single change captured from the source."""
    operation: ChangeOperation
    table: str
    primary_key: Dict[str, Any]
    watermark_value: Any
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "table": self.table,
            "primary_key": self.primary_key,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "watermark_value": self.watermark_value,
        }


@dataclass
class SyncCheckpoint:
    """Last committed watermark and cumulative progress for a (connection, table)."""
    connection_id: str
    table: str
    watermark: Any
    changes_processed: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "table": self.table,
            "watermark": self.watermark,
            "changes_processed": self.changes_processed,
            "timestamp": self.timestamp.isoformat(),
        }


class IncrementalConfig(BaseModel):
    """How to detect changes for the tables of one sync request."""
    column: Optional[str] = None
    strategy: IncrementalStrategy = IncrementalStrategy.TIMESTAMP
    batch_size: int = Field(default_factory=lambda: settings.sync.batch_size, ge=1)
    frequency: SyncFrequency = SyncFrequency.HOURLY
    primary_key: List[str] = Field(default_factory=lambda: ["id"], min_length=1)
    initial_watermark: Optional[Any] = None
    columns: Optional[List[str]] = None
    soft_delete_column: Optional[str] = None

    # change_log strategy
    change_log_table: Optional[str] = None
    change_log_position_column: str = "change_id"
    change_log_table_column: Optional[str] = "table_name"
    change_log_operation_column: str = "operation"
    change_log_data_column: Optional[str] = "data"

    @model_validator(mode="after")
    def _check_strategy_fields(self) -> "IncrementalConfig":
        if self.strategy in (IncrementalStrategy.TIMESTAMP, IncrementalStrategy.AUTO_INCREMENT) and not self.column:
            raise ValueError(f"'column' is required for the {self.strategy.value} strategy")
        if self.strategy == IncrementalStrategy.CHANGE_LOG and not self.change_log_table:
            raise ValueError("'change_log_table' is required for the change_log strategy")
        return self


class SyncConfig(BaseModel):
    """Execution limits for one sync request."""
    max_batch_size: Optional[int] = Field(default=None, ge=1)
    max_batches_per_run: int = Field(default_factory=lambda: settings.sync.max_batches_per_run, ge=1)
    max_concurrency: int = Field(default_factory=lambda: settings.sync.max_concurrency, ge=1)
    max_batch_attempts: int = Field(default_factory=lambda: settings.sync.max_batch_attempts, ge=1)
    retry_base_delay: float = Field(default_factory=lambda: settings.sync.retry_base_delay, ge=0)
    batch_timeout: float = Field(default_factory=lambda: settings.sync.batch_timeout, gt=0)
    retention_days: Optional[int] = Field(default_factory=lambda: settings.sync.retention_days, ge=1)


@dataclass
class TableSyncResult:
    """Outcome of syncing one table in a run."""
    table: str
    state: SyncState = SyncState.IDLE
    batches: int = 0
    changes_processed: int = 0
    watermark: Any = None
    retries: int = 0
    cancelled: bool = False
    error: Optional[str] = None
    retryable: bool = False
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.state == SyncState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "state": self.state.value,
            "batches": self.batches,
            "changes_processed": self.changes_processed,
            "watermark": self.watermark,
            "retries": self.retries,
            "cancelled": self.cancelled,
            "error": self.error,
            "retryable": self.retryable,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class IncrementalSyncResult:
    """Outcome of one incremental sync request across tables."""
    connection_id: str
    sync_id: str
    tables: List[TableSyncResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    checkpoints_purged: int = 0

    @property
    def success(self) -> bool:
        return all(t.success for t in self.tables)

    @property
    def total_changes(self) -> int:
        return sum(t.changes_processed for t in self.tables)

    @property
    def failed_tables(self) -> List[str]:
        return [t.table for t in self.tables if not t.success]

    @property
    def changes_per_second(self) -> float:
        if not self.completed_at:
            return 0.0
        elapsed = (self.completed_at - self.started_at).total_seconds()
        return self.total_changes / elapsed if elapsed > 0 else float(self.total_changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "sync_id": self.sync_id,
            "success": self.success,
            "total_changes": self.total_changes,
            "failed_tables": self.failed_tables,
            "changes_per_second": round(self.changes_per_second, 2),
            "checkpoints_purged": self.checkpoints_purged,
            "tables": [t.to_dict() for t in self.tables],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
