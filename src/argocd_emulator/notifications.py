# ABOUTME: Notification dispatcher matching engine events against channel triggers
# ABOUTME: Records every dispatch attempt and hands delivery to a pluggable transport

"""
Notification dispatch.

A channel fires for an event when it is enabled and one of its triggers names
that event and, if the trigger has a condition, the condition holds for the
event context. There are no implicit subscriptions: a channel without a
matching trigger never fires.

Every firing produces a DispatchRecord that starts ``pending`` and becomes
``delivered`` or ``failed`` once the transport reports back. Retrying is the
transport's business; the dispatcher only records the outcome.

Event context passed to conditions:

    {"event": "on-sync-failed",
     "app": {...application fields...},
     "operation": {...sync operation fields...} or None}
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Protocol

import structlog

from argocd_emulator.conditions import parse_condition

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from argocd_emulator.models import NotificationChannel
    from argocd_emulator.utils.clock import Clock

logger = structlog.get_logger(__name__)

DispatchStatus = Literal["pending", "delivered", "failed"]


class DeliveryError(Exception):
    """The transport could not deliver a notification."""


class NotificationTransport(Protocol):
    async def deliver(self, channel: NotificationChannel, payload: dict[str, Any]) -> None: ...


@dataclass
class DispatchRecord:
    id: str
    channel: str
    channel_type: str
    event: str
    payload: dict[str, Any]
    created_at: datetime
    status: DispatchStatus = "pending"
    finished_at: datetime | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "channel": self.channel,
            "channelType": self.channel_type,
            "event": self.event,
            "payload": dict(self.payload),
            "createdAt": self.created_at.isoformat(),
            "status": self.status,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


@dataclass
class InMemoryTransport:
    """Default transport: delivery is recorded, nothing leaves the process."""

    sent: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    failing: dict[str, str] = field(default_factory=dict)

    def fail(self, channel_name: str, reason: str = "transport unavailable") -> None:
        self.failing[channel_name] = reason

    async def deliver(self, channel: NotificationChannel, payload: dict[str, Any]) -> None:
        if channel.name in self.failing:
            raise DeliveryError(self.failing[channel.name])
        self.sent.append((channel.name, payload))


def build_payload(event: str, context: Mapping[str, Any]) -> dict[str, Any]:
    """Flat message body shared by all channel types."""
    app = context.get("app") or {}
    operation = context.get("operation") or {}
    payload: dict[str, Any] = {
        "event": event,
        "application": app.get("name"),
        "project": app.get("project"),
        "status": app.get("status"),
        "health": app.get("health"),
        "revision": app.get("revision"),
    }
    if operation:
        payload["operation"] = operation.get("id")
        if operation.get("error"):
            payload["error"] = operation["error"]
    payload["message"] = _summary(event, payload)
    return payload


def _summary(event: str, payload: Mapping[str, Any]) -> str:
    name = payload.get("application") or "application"
    texts = {
        "on-created": f"Application {name} has been created.",
        "on-deleted": f"Application {name} has been deleted.",
        "on-sync-running": f"The sync operation of application {name} has started.",
        "on-sync-succeeded": f"Application {name} has been successfully synced at {payload.get('revision')}.",
        "on-sync-failed": f"The sync operation of application {name} has failed: {payload.get('error')}",
        "on-health-degraded": f"Application {name} has degraded.",
        "on-deployed": f"Application {name} is now running new version {payload.get('revision')}.",
        "on-sync-status-unknown": f"Application {name} sync status is unknown.",
    }
    return texts.get(event, f"{event}: {name}")


class NotificationDispatcher:
    """Matches events to channels and tracks dispatch records."""

    def __init__(self, transport: NotificationTransport, clock: Clock, retention: int = 1000) -> None:
        self._transport = transport
        self._clock = clock
        self._records: deque[DispatchRecord] = deque(maxlen=retention)

    @property
    def records(self) -> list[DispatchRecord]:
        return list(self._records)

    def matching_channels(
        self,
        channels: Iterable[NotificationChannel],
        event: str,
        context: Mapping[str, Any],
    ) -> list[NotificationChannel]:
        """Channels that should receive ``event``; pure, no records."""
        matched = []
        for channel in channels:
            if not channel.enabled:
                continue
            for trigger in channel.triggers:
                if trigger.event != event:
                    continue
                if trigger.condition is None or parse_condition(trigger.condition).evaluate(context):
                    matched.append(channel)
                    break
        return matched

    def dispatch(
        self,
        channels: Iterable[NotificationChannel],
        event: str,
        context: Mapping[str, Any],
    ) -> list[DispatchRecord]:
        """Create a pending record for each channel that fires."""
        payload = build_payload(event, context)
        records = []
        for channel in self.matching_channels(channels, event, context):
            record = DispatchRecord(
                id=uuid.uuid4().hex[:12],
                channel=channel.name,
                channel_type=channel.type,
                event=event,
                payload=payload,
                created_at=self._clock.now(),
            )
            self._records.append(record)
            records.append(record)
            logger.info("notification_dispatched", channel=channel.name, event_name=event)
        return records

    async def deliver(self, record: DispatchRecord, channel: NotificationChannel) -> DispatchRecord:
        """Hand one record to the transport and record the outcome."""
        try:
            await self._transport.deliver(channel, record.payload)
        except DeliveryError as e:
            record.status = "failed"
            record.error = str(e)
            logger.warning("notification_failed", channel=channel.name, event_name=record.event, error=str(e))
        else:
            record.status = "delivered"
        record.finished_at = self._clock.now()
        return record
