"""
Notification collaborator interface.

The core reports completion, failure and quality-report events through a
Notifier. Delivery runs in the background: a slow or failing notifier
never blocks or fails a sync, quality run or pipeline.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Set

import httpx

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Events reported to the notification collaborator."""
    INCREMENTAL_SYNC_COMPLETED = "incremental_sync_completed"
    INCREMENTAL_SYNC_FAILED = "incremental_sync_failed"
    QUALITY_REPORT = "quality_report"
    QUALITY_CHECK_FAILED = "quality_check_failed"
    PIPELINE_COMPLETED = "pipeline_completed"
    PIPELINE_FAILED = "pipeline_failed"
    PIPELINE_ROLLED_BACK = "pipeline_rolled_back"
    CONNECTION_FAILED = "connection_failed"


@dataclass
class Notification:
    event_type: EventType
    connection_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "connection_id": self.connection_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class Notifier(Protocol):
    async def notify(self, event_type: EventType, connection_id: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotifier:
    """Writes notifications to the log."""

    async def notify(self, event_type: EventType, connection_id: str, payload: Dict[str, Any]) -> None:
        logger.info(f"[{event_type.value}] {connection_id}: {payload}")


class RecordingNotifier:
    """Keeps notifications in memory."""

    def __init__(self):
        self.notifications: List[Notification] = []

    async def notify(self, event_type: EventType, connection_id: str, payload: Dict[str, Any]) -> None:
        self.notifications.append(Notification(event_type, connection_id, payload))

    def of_type(self, event_type: EventType) -> List[Notification]:
        return [n for n in self.notifications if n.event_type == event_type]


class WebhookNotifier:
    """Posts notifications as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport

    async def notify(self, event_type: EventType, connection_id: str, payload: Dict[str, Any]) -> None:
        notification = Notification(event_type, connection_id, payload)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                self.url,
                content=json.dumps(notification.to_dict(), default=str),
                headers={"Content-Type": "application/json", **self.headers},
            )
            response.raise_for_status()


class NotificationDispatcher:
    """
    Fire-and-forget delivery to a Notifier.

    emit() schedules delivery and returns immediately; delivery errors are
    logged. drain() waits for pending deliveries.
    """

    def __init__(self, notifier: Optional[Notifier] = None):
        self.notifier = notifier or LoggingNotifier()
        self._pending: Set[asyncio.Task] = set()

    def emit(self, event_type: EventType, connection_id: str, payload: Dict[str, Any]) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(event_type, connection_id, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, event_type: EventType, connection_id: str, payload: Dict[str, Any]) -> None:
        try:
            await self.notifier.notify(event_type, connection_id, payload)
        except Exception as e:
            logger.error(f"Failed to deliver {event_type.value} notification for {connection_id}: {e}")

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))
