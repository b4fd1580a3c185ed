"""
Checkpoint storage for incremental sync.

A checkpoint is written only after its batch has been applied to the sink,
so the stored watermark never runs ahead of the sink. Claims give one run
exclusive ownership of a (connection, table) checkpoint.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, Set, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError as SQLIntegrityError

from dataplane.database.connection import DatabaseManager
from dataplane.database.models import CheckpointClaimModel, SyncCheckpointModel
from dataplane.sync.models import SyncCheckpoint

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """Durable checkpoint storage."""

    async def get(self, connection_id: str, table: str) -> Optional[SyncCheckpoint]:
        ...

    async def put(self, connection_id: str, table: str, checkpoint: SyncCheckpoint) -> None:
        ...

    async def delete_older_than(self, connection_id: str, retention_days: int) -> int:
        ...

    async def claim(self, connection_id: str, table: str, owner: str) -> bool:
        ...

    async def release_claim(self, connection_id: str, table: str, owner: str) -> None:
        ...


def encode_watermark(value: Any) -> Optional[Dict[str, Any]]:
    """Tag a watermark with its type so it survives a JSON round trip."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return {"type": "datetime", "value": value.isoformat()}
    if isinstance(value, date):
        return {"type": "date", "value": value.isoformat()}
    if isinstance(value, Decimal):
        return {"type": "decimal", "value": str(value)}
    if isinstance(value, bool):
        raise TypeError("Boolean watermarks are not comparable progress markers")
    if isinstance(value, int):
        return {"type": "int", "value": value}
    if isinstance(value, float):
        return {"type": "float", "value": value}
    if isinstance(value, str):
        return {"type": "str", "value": value}
    raise TypeError(f"Unsupported watermark type: {type(value).__name__}")


def decode_watermark(encoded: Optional[Dict[str, Any]]) -> Any:
    if encoded is None:
        return None
    kind, value = encoded["type"], encoded["value"]
    if kind == "datetime":
        return datetime.fromisoformat(value)
    if kind == "date":
        return date.fromisoformat(value)
    if kind == "decimal":
        return Decimal(value)
    return value


class MemoryCheckpointStore:
    """In-process checkpoint store."""

    def __init__(self):
        self._checkpoints: Dict[Tuple[str, str], SyncCheckpoint] = {}
        self._claims: Dict[Tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def get(self, connection_id: str, table: str) -> Optional[SyncCheckpoint]:
        return self._checkpoints.get((connection_id, table))

    async def put(self, connection_id: str, table: str, checkpoint: SyncCheckpoint) -> None:
        self._checkpoints[(connection_id, table)] = checkpoint

    async def delete_older_than(self, connection_id: str, retention_days: int) -> int:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        stale = [
            key for key, checkpoint in self._checkpoints.items()
            if key[0] == connection_id and checkpoint.timestamp < cutoff
        ]
        for key in stale:
            del self._checkpoints[key]
        return len(stale)

    async def claim(self, connection_id: str, table: str, owner: str) -> bool:
        async with self._lock:
            holder = self._claims.get((connection_id, table))
            if holder is not None and holder != owner:
                return False
            self._claims[(connection_id, table)] = owner
            return True

    async def release_claim(self, connection_id: str, table: str, owner: str) -> None:
        async with self._lock:
            if self._claims.get((connection_id, table)) == owner:
                del self._claims[(connection_id, table)]

    @property
    def claimed(self) -> Set[Tuple[str, str]]:
        return set(self._claims)


class SQLCheckpointStore:
    """
    Checkpoint store on the state database.

    Claims are rows in sync_checkpoint_claims; a claim older than
    claim_ttl is treated as abandoned by a crashed run and taken over.
    """

    def __init__(self, db: Optional[DatabaseManager] = None, claim_ttl: timedelta = timedelta(hours=6)):
        self.db = db or DatabaseManager()
        self.claim_ttl = claim_ttl

    async def get(self, connection_id: str, table: str) -> Optional[SyncCheckpoint]:
        return await asyncio.to_thread(self._get, connection_id, table)

    def _get(self, connection_id: str, table: str) -> Optional[SyncCheckpoint]:
        with self.db.get_session() as session:
            row = session.get(SyncCheckpointModel, (connection_id, table))
            if row is None:
                return None
            return SyncCheckpoint(
                connection_id=row.connection_id,
                table=row.table_name,
                watermark=decode_watermark(row.watermark),
                changes_processed=row.changes_processed,
                timestamp=row.updated_at,
            )

    async def put(self, connection_id: str, table: str, checkpoint: SyncCheckpoint) -> None:
        await asyncio.to_thread(self._put, connection_id, table, checkpoint)

    def _put(self, connection_id: str, table: str, checkpoint: SyncCheckpoint) -> None:
        with self.db.get_session() as session:
            row = session.get(SyncCheckpointModel, (connection_id, table))
            if row is None:
                row = SyncCheckpointModel(connection_id=connection_id, table_name=table)
                session.add(row)
            row.watermark = encode_watermark(checkpoint.watermark)
            row.changes_processed = checkpoint.changes_processed
            row.updated_at = checkpoint.timestamp

    async def delete_older_than(self, connection_id: str, retention_days: int) -> int:
        return await asyncio.to_thread(self._delete_older_than, connection_id, retention_days)

    def _delete_older_than(self, connection_id: str, retention_days: int) -> int:
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        with self.db.get_session() as session:
            result = session.execute(
                delete(SyncCheckpointModel)
                .where(SyncCheckpointModel.connection_id == connection_id)
                .where(SyncCheckpointModel.updated_at < cutoff)
            )
            return result.rowcount or 0

    async def claim(self, connection_id: str, table: str, owner: str) -> bool:
        return await asyncio.to_thread(self._claim, connection_id, table, owner)

    def _claim(self, connection_id: str, table: str, owner: str) -> bool:
        now = datetime.utcnow()
        with self.db.get_session() as session:
            # Take over abandoned claims
            session.execute(
                delete(CheckpointClaimModel)
                .where(CheckpointClaimModel.connection_id == connection_id)
                .where(CheckpointClaimModel.table_name == table)
                .where(CheckpointClaimModel.claimed_at < now - self.claim_ttl)
            )
        try:
            with self.db.get_session() as session:
                session.add(CheckpointClaimModel(
                    connection_id=connection_id, table_name=table, owner=owner, claimed_at=now
                ))
        except SQLIntegrityError:
            with self.db.get_session() as session:
                holder = session.execute(
                    select(CheckpointClaimModel.owner)
                    .where(CheckpointClaimModel.connection_id == connection_id)
                    .where(CheckpointClaimModel.table_name == table)
                ).scalar_one_or_none()
            return holder == owner
        return True

    async def release_claim(self, connection_id: str, table: str, owner: str) -> None:
        await asyncio.to_thread(self._release_claim, connection_id, table, owner)

    def _release_claim(self, connection_id: str, table: str, owner: str) -> None:
        with self.db.get_session() as session:
            session.execute(
                delete(CheckpointClaimModel)
                .where(CheckpointClaimModel.connection_id == connection_id)
                .where(CheckpointClaimModel.table_name == table)
                .where(CheckpointClaimModel.owner == owner)
            )
