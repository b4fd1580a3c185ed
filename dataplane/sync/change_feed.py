"""
Change feeds.

A change feed turns source rows into ChangeRecords ordered ascending by
watermark. Column feeds poll a monotonically increasing column; the change
log feed reads an audit table written by triggers or the application.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from dataplane.connectors.base import BaseConnector
from dataplane.connectors.models import TableRef
from dataplane.connectors.query import fetch_after
from dataplane.errors import ConfigurationError
from dataplane.sync.models import (
    ChangeOperation,
    ChangeRecord,
    IncrementalConfig,
    IncrementalStrategy,
)

logger = logging.getLogger(__name__)

OPERATION_ALIASES = {
    "i": ChangeOperation.INSERT,
    "c": ChangeOperation.INSERT,
    "insert": ChangeOperation.INSERT,
    "create": ChangeOperation.INSERT,
    "u": ChangeOperation.UPDATE,
    "update": ChangeOperation.UPDATE,
    "upsert": ChangeOperation.UPDATE,
    "d": ChangeOperation.DELETE,
    "delete": ChangeOperation.DELETE,
    "remove": ChangeOperation.DELETE,
}


class ChangeFeed(ABC):
    """Source of ordered ChangeRecords for one table."""

    def __init__(self, config: IncrementalConfig):
        self.config = config

    @abstractmethod
    async def fetch(
        self,
        connector: BaseConnector,
        table: TableRef,
        watermark: Any,
        limit: int,
    ) -> List[ChangeRecord]:
        """Up to limit records with watermark_value > watermark, ascending."""

    def _primary_key(self, row: Dict[str, Any], table: TableRef) -> Dict[str, Any]:
        missing = [k for k in self.config.primary_key if k not in row]
        if missing:
            raise ConfigurationError(
                f"Primary key column(s) {', '.join(missing)} not found in changes for {table}"
            )
        return {k: row[k] for k in self.config.primary_key}


class ColumnChangeFeed(ChangeFeed):
    """
    Polls rows whose watermark column exceeds the last watermark.

    Polling cannot see hard deletes; a soft delete column marks rows that
    should be removed from the sink.
    """

    async def fetch(
        self,
        connector: BaseConnector,
        table: TableRef,
        watermark: Any,
        limit: int,
    ) -> List[ChangeRecord]:
        columns = self.config.columns
        if columns:
            required = set(self.config.primary_key) | {self.config.column}
            if self.config.soft_delete_column:
                required.add(self.config.soft_delete_column)
            columns = list(columns) + sorted(required - set(columns))

        rows = await fetch_after(connector, table, self.config.column, watermark, limit, columns=columns)
        return [self._to_record(row, table) for row in rows]

    def _to_record(self, row: Dict[str, Any], table: TableRef) -> ChangeRecord:
        value = row[self.config.column]
        if self.config.soft_delete_column and row.get(self.config.soft_delete_column):
            operation = ChangeOperation.DELETE
        elif self.config.strategy == IncrementalStrategy.AUTO_INCREMENT:
            operation = ChangeOperation.INSERT
        else:
            operation = ChangeOperation.UPDATE

        return ChangeRecord(
            operation=operation,
            table=table.key,
            primary_key=self._primary_key(row, table),
            watermark_value=value,
            data=None if operation == ChangeOperation.DELETE else dict(row),
            timestamp=value if isinstance(value, datetime) else datetime.utcnow(),
        )


class ChangeLogFeed(ChangeFeed):
    """
    Reads an append-only change log table.

    Each log row carries a position (the watermark), an operation, the
    primary key columns and optionally the changed row as JSON.
    """

    async def fetch(
        self,
        connector: BaseConnector,
        table: TableRef,
        watermark: Any,
        limit: int,
    ) -> List[ChangeRecord]:
        log_table = TableRef.parse(self.config.change_log_table)
        if log_table.schema is None and table.schema:
            log_table = TableRef(table=log_table.table, schema=table.schema, database=table.database)
        filters = {}
        if self.config.change_log_table_column:
            filters[self.config.change_log_table_column] = table.table

        rows = await fetch_after(
            connector,
            log_table,
            self.config.change_log_position_column,
            watermark,
            limit,
            filters=filters,
        )
        return [self._to_record(row, table) for row in rows]

    def _to_record(self, row: Dict[str, Any], table: TableRef) -> ChangeRecord:
        raw_operation = str(row.get(self.config.change_log_operation_column, "")).strip().lower()
        operation = OPERATION_ALIASES.get(raw_operation)
        if operation is None:
            raise ConfigurationError(f"Unknown change log operation '{raw_operation}' for {table}")

        data = self._decode(row.get(self.config.change_log_data_column)) if self.config.change_log_data_column else None
        key_source = {**row, **(data or {})}
        return ChangeRecord(
            operation=operation,
            table=table.key,
            primary_key=self._primary_key(key_source, table),
            watermark_value=row[self.config.change_log_position_column],
            data=None if operation == ChangeOperation.DELETE else data,
            timestamp=row.get("changed_at") if isinstance(row.get("changed_at"), datetime) else datetime.utcnow(),
        )

    @staticmethod
    def _decode(value: Any) -> Optional[Dict[str, Any]]:
        if value is None or isinstance(value, dict):
            return value
        return json.loads(value)


def create_change_feed(config: IncrementalConfig) -> ChangeFeed:
    """
    Create the change feed for an incremental config.

    Raises:
        ConfigurationError: for strategies without a feed
    """
    if config.strategy in (IncrementalStrategy.TIMESTAMP, IncrementalStrategy.AUTO_INCREMENT):
        return ColumnChangeFeed(config)
    if config.strategy == IncrementalStrategy.CHANGE_LOG:
        return ChangeLogFeed(config)
    raise ConfigurationError(
        f"Incremental strategy '{config.strategy.value}' is not supported; "
        "use timestamp, auto_increment or change_log"
    )
