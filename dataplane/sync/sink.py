"""
Change sinks.

A sink applies one batch of ChangeRecords atomically. Upserts are keyed by
primary key and deletes of absent keys are no-ops, so re-applying a batch
leaves the sink unchanged.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, insert, update
from sqlalchemy.engine import Connection

from dataplane.connectors.database.sql import SQLConnector
from dataplane.connectors.models import TableRef
from dataplane.connectors.query import reflect_table
from dataplane.sync.models import ChangeOperation, ChangeRecord

logger = logging.getLogger(__name__)

RowKey = Tuple[Tuple[str, Any], ...]


@dataclass
class ApplyStats:
    upserted: int = 0
    deleted: int = 0


def row_key(primary_key: Dict[str, Any]) -> RowKey:
    return tuple(sorted(primary_key.items()))


class ChangeSink(ABC):
    """Target that change batches are applied to."""

    @abstractmethod
    async def apply(self, table: TableRef, records: List[ChangeRecord]) -> ApplyStats:
        """Apply a batch in one transaction."""


class MemorySink(ChangeSink):
    """Dict-backed sink; each batch is applied to a copy and swapped in."""

    def __init__(self):
        self.tables: Dict[str, Dict[RowKey, Dict[str, Any]]] = {}
        self.batches_applied = 0

    async def apply(self, table: TableRef, records: List[ChangeRecord]) -> ApplyStats:
        stats = ApplyStats()
        staged = dict(self.tables.get(table.key, {}))
        for record in records:
            key = row_key(record.primary_key)
            if record.operation == ChangeOperation.DELETE:
                if staged.pop(key, None) is not None:
                    stats.deleted += 1
            else:
                # Only the changed columns are written; the rest of the row is kept
                staged[key] = {**staged.get(key, {}), **copy.deepcopy(record.data or {}), **record.primary_key}
                stats.upserted += 1
        self.tables[table.key] = staged
        self.batches_applied += 1
        return stats

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return list(self.tables.get(table, {}).values())

    def snapshot(self) -> Dict[str, Dict[RowKey, Dict[str, Any]]]:
        return copy.deepcopy(self.tables)


class SQLTableSink(ChangeSink):
    """
    Applies changes to tables on a SQL target.

    Upsert is UPDATE by primary key, then INSERT when no row matched; both
    run in the batch's single transaction. Only columns present on the
    target table are written. Calls are serialized on the target session.
    """

    def __init__(self, connector: SQLConnector, target_schema: Optional[str] = None, table_map: Optional[Dict[str, str]] = None):
        self.connector = connector
        self.target_schema = target_schema
        self.table_map = table_map or {}
        self._lock = asyncio.Lock()

    def target_for(self, table: TableRef) -> TableRef:
        name = self.table_map.get(table.key, self.table_map.get(table.table, table.table))
        return TableRef(table=name, schema=self.target_schema)

    async def apply(self, table: TableRef, records: List[ChangeRecord]) -> ApplyStats:
        target = self.target_for(table)

        def _apply(conn: Connection) -> ApplyStats:
            stats = ApplyStats()
            tbl = reflect_table(conn, target)
            for record in records:
                match = and_(*(tbl.c[k] == v for k, v in record.primary_key.items()))
                if record.operation == ChangeOperation.DELETE:
                    stats.deleted += conn.execute(delete(tbl).where(match)).rowcount or 0
                    continue
                values = {k: v for k, v in (record.data or {}).items() if k in tbl.c}
                values.update(record.primary_key)
                changes = {k: v for k, v in values.items() if k not in record.primary_key}
                matched = 0
                if changes:
                    matched = conn.execute(update(tbl).where(match).values(**changes)).rowcount
                else:
                    matched = conn.execute(tbl.select().where(match)).first() is not None
                if not matched:
                    conn.execute(insert(tbl).values(**values))
                stats.upserted += 1
            return stats

        async with self._lock:
            stats = await self.connector.run_sync(_apply)
        logger.debug(
            f"Applied {len(records)} changes to {target}: "
            f"{stats.upserted} upserted, {stats.deleted} deleted"
        )
        return stats
