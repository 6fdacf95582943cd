"""Notification service pushing appointment events over WebSocket channels."""

import asyncio
from datetime import UTC, datetime
from typing import Any

import structlog

from app.core.connection_registry import ConnectionRegistry
from app.core.metrics import notifications_sent
from app.schemas.notifications import AppointmentNotification, NotificationEnvelope

logger = structlog.get_logger(__name__)


class NotificationService:
    """Best-effort, at-most-once delivery to connected clients.

    Nothing is persisted: a client that is offline when an event fires never
    sees it. The appointment record stays the source of truth.
    """

    def __init__(self, registry: ConnectionRegistry):
        """Initialize service with the connection registry."""
        self.registry = registry

    async def send(self, identity: str | int, data: dict[str, Any]) -> bool:
        """
        Send a notification to a single user.

        Args:
            identity: User ID to notify
            data: Notification payload

        Returns:
            True if a live channel accepted the message
        """
        identity = str(identity)
        connection = self.registry.get(identity)

        if connection is None:
            logger.info("notification_recipient_offline", identity=identity)
            notifications_sent.labels(result="offline").inc()
            return False

        envelope = NotificationEnvelope(data=data).model_dump(mode="json")
        try:
            await connection.channel.send_json(envelope)
        except Exception as e:
            # Dead channel: drop it so the next registration starts clean
            logger.warning("notification_send_failed", identity=identity, error=str(e))
            self.registry.unregister(identity, connection.channel)
            notifications_sent.labels(result="failed").inc()
            return False

        logger.info("notification_sent", identity=identity)
        notifications_sent.labels(result="delivered").inc()
        return True

    async def send_to_many(self, identities: list[str | int], data: dict[str, Any]) -> int:
        """Send the same notification to several users, returning the delivered count."""
        sent = 0
        for identity in identities:
            if await self.send(identity, data):
                sent += 1

        logger.info("notification_fanout", recipients=len(identities), delivered=sent)
        return sent

    async def broadcast(self, data: dict[str, Any]) -> int:
        """Send a notification to every connected user."""
        identities = [c.identity for c in self.registry.connections()]
        sent = await self.send_to_many(identities, data)
        logger.info("notification_broadcast", delivered=sent)
        return sent

    async def on_transition(
        self,
        appointment_id: int,
        patient_id: int,
        old_status: str,
        new_status: str,
        context: dict[str, Any],
    ) -> bool:
        """
        Tell the patient that their appointment changed state.

        Args:
            appointment_id: Appointment ID
            patient_id: Owning patient
            old_status: Status before the transition
            new_status: Status after the transition
            context: Transition details; ``reason`` becomes the message

        Returns:
            True if the patient was connected and received the event
        """
        extra = {k: v for k, v in context.items() if k not in ("reason", "payment_status")}
        notification = AppointmentNotification(
            appointment_id=appointment_id,
            message=context.get(
                "reason",
                f"Your appointment status has changed from {old_status} to {new_status}.",
            ),
            old_status=old_status,
            new_status=new_status,
            payment_status=context.get("payment_status"),
            timestamp=datetime.now(UTC),
            context=extra,
        )
        return await self.send(patient_id, notification.model_dump(mode="json"))

    async def ping_all(self) -> int:
        """Send a heartbeat probe on every open channel."""
        probed = 0
        for connection in self.registry.connections():
            try:
                await connection.channel.send_json({"type": "ping"})
                probed += 1
            except Exception as e:
                logger.info("websocket_ping_failed", identity=connection.identity, error=str(e))
                self.registry.unregister(connection.identity, connection.channel)
        return probed


async def run_heartbeat(
    service: NotificationService,
    interval: float,
    stale_after: float,
) -> None:
    """Probe channels every ``interval`` seconds and prune silent ones until cancelled."""
    logger.info("websocket_heartbeat_started", interval=interval, stale_after=stale_after)
    while True:
        await asyncio.sleep(interval)
        await service.registry.prune(stale_after)
        await service.ping_all()
