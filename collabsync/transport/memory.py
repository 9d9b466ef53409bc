"""In-process transport.

All InMemoryTransport instances attached to one InMemoryHub share channels,
which makes a single process (or a test) behave like several participants
connected to the same realtime service. Messages are round-tripped through
JSON so payloads look exactly like they would on a real wire.
"""

import json
import logging
from typing import Callable, Dict, List, Optional, Tuple

from collabsync.errors import TransportError
from collabsync.protocols import MessageHandler, StatusCallback
from collabsync.types import TransportMessage

logger = logging.getLogger(__name__)


class InMemoryHub:
    """Shared channel registry.

    ``online`` simulates the service being reachable; ``accepting`` controls
    whether new connections succeed.
    """

    def __init__(self):
        self.online = True
        self.accepting = True
        self.history: List[Tuple[str, TransportMessage]] = []
        self._subscribers: Dict[str, List[Tuple["InMemoryTransport", MessageHandler]]] = {}
        self._transports: List["InMemoryTransport"] = []

    def attach(self, transport: "InMemoryTransport") -> None:
        if transport not in self._transports:
            self._transports.append(transport)

    def detach(self, transport: "InMemoryTransport") -> None:
        if transport in self._transports:
            self._transports.remove(transport)
        for channel in list(self._subscribers):
            self.remove_subscriber(channel, transport)

    def add_subscriber(self, channel: str, transport: "InMemoryTransport", handler: MessageHandler) -> None:
        self.remove_subscriber(channel, transport)
        self._subscribers.setdefault(channel, []).append((transport, handler))

    def remove_subscriber(self, channel: str, transport: "InMemoryTransport") -> None:
        subscribers = self._subscribers.get(channel)
        if not subscribers:
            return
        self._subscribers[channel] = [(t, h) for t, h in subscribers if t is not transport]
        if not self._subscribers[channel]:
            del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, []))

    async def set_online(self, online: bool, error: Optional[str] = None) -> None:
        """Flip service reachability and notify every attached transport."""
        self.online = online
        for transport in list(self._transports):
            await transport._notify_status(online, error)

    async def deliver(self, channel: str, message: TransportMessage) -> None:
        self.history.append((channel, message))
        wire = json.dumps(message.to_dict())
        for transport, handler in list(self._subscribers.get(channel, [])):
            if not transport.echo and transport.user_id == message.sender_id:
                continue
            try:
                await handler(TransportMessage.from_dict(json.loads(wire)))
            except Exception:
                logger.exception(f"Subscriber on {channel} failed handling {message.event.value}")


class InMemoryTransport:
    """Transport bound to an InMemoryHub.

    Args:
        hub: The shared hub.
        echo: Deliver this transport's own messages back to it, as a raw
            socket broadcast would.
    """

    def __init__(self, hub: InMemoryHub, echo: bool = True):
        self.hub = hub
        self.echo = echo
        self.user_id: Optional[str] = None
        self.connected = False
        self._status_callbacks: List[StatusCallback] = []

    async def connect(self, user_id: str) -> None:
        if not self.hub.accepting or not self.hub.online:
            raise TransportError("Realtime service refused the connection")
        self.user_id = user_id
        self.connected = True
        self.hub.attach(self)
        await self._notify_status(True, None)

    def _require_connected(self) -> None:
        if not self.connected or not self.hub.online:
            raise TransportError("Not connected to realtime service")

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        self._require_connected()
        self.hub.add_subscriber(channel, self, handler)

    async def unsubscribe(self, channel: str) -> None:
        self.hub.remove_subscriber(channel, self)

    async def publish(self, channel: str, message: TransportMessage) -> None:
        self._require_connected()
        await self.hub.deliver(channel, message)

    def on_status(self, callback: StatusCallback) -> Callable[[], None]:
        self._status_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._status_callbacks:
                self._status_callbacks.remove(callback)

        return unsubscribe

    async def _notify_status(self, connected: bool, error: Optional[str]) -> None:
        for callback in list(self._status_callbacks):
            await callback(connected, error)

    async def close(self) -> None:
        if self.connected:
            self.hub.detach(self)
            self.connected = False
            await self._notify_status(False, "Transport closed")
        self._status_callbacks = []
