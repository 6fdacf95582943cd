"""Registry of live notification channels keyed by user identity."""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)

# Application close codes (4000-4999 range is reserved for applications)
CLOSE_REPLACED = 4000
CLOSE_STALE = 4001


class Channel(Protocol):
    """Duplex channel the registry can push JSON to and close."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


@dataclass
class ClientConnection:
    """A registered channel and the last time its client was heard from."""

    identity: str
    channel: Channel
    last_seen: float


class ConnectionRegistry:
    """One channel per identity; a newer registration closes the older one."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        """Initialize an empty registry."""
        self._clock = clock
        self._connections: dict[str, ClientConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, identity: object) -> bool:
        return identity in self._connections

    async def register(self, identity: str, channel: Channel) -> ClientConnection:
        """
        Register a channel for an identity.

        Args:
            identity: Recipient identity (user id)
            channel: Channel to deliver notifications on

        Returns:
            The new connection record
        """
        previous = self._connections.get(identity)
        connection = ClientConnection(identity=identity, channel=channel, last_seen=self._clock())
        self._connections[identity] = connection

        if previous is not None and previous.channel is not channel:
            logger.info("websocket_client_replaced", identity=identity)
            await _close_quietly(previous.channel, CLOSE_REPLACED)

        logger.info("websocket_client_registered", identity=identity, connections=len(self))
        return connection

    def unregister(self, identity: str, channel: Channel) -> bool:
        """Remove an identity's channel, unless it has already been replaced."""
        current = self._connections.get(identity)
        if current is None or current.channel is not channel:
            return False

        del self._connections[identity]
        logger.info("websocket_client_unregistered", identity=identity, connections=len(self))
        return True

    def get(self, identity: str) -> ClientConnection | None:
        """Return the live connection for an identity, if any."""
        return self._connections.get(identity)

    def connections(self) -> list[ClientConnection]:
        """Snapshot of all live connections."""
        return list(self._connections.values())

    def mark_alive(self, identity: str, channel: Channel) -> None:
        """Record that the client behind a channel answered."""
        current = self._connections.get(identity)
        if current is not None and current.channel is channel:
            current.last_seen = self._clock()

    async def prune(self, stale_after: float) -> list[str]:
        """
        Close and drop connections not heard from within ``stale_after`` seconds.

        Returns:
            Identities that were pruned
        """
        now = self._clock()
        stale = [c for c in self._connections.values() if now - c.last_seen > stale_after]

        for connection in stale:
            self.unregister(connection.identity, connection.channel)
            await _close_quietly(connection.channel, CLOSE_STALE)

        if stale:
            logger.info("websocket_clients_pruned", count=len(stale))
        return [c.identity for c in stale]

    async def close_all(self) -> None:
        """Close every channel, used on shutdown."""
        connections = self.connections()
        self._connections.clear()
        for connection in connections:
            await _close_quietly(connection.channel, 1001)


async def _close_quietly(channel: Channel, code: int) -> None:
    try:
        await channel.close(code=code)
    except Exception as e:
        # Channel is already gone; nothing left to release
        logger.debug("websocket_close_failed", error=str(e))
