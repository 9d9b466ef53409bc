"""Supabase Realtime transport.

Each collabsync channel maps to one Supabase broadcast channel. Incoming
broadcasts are pushed onto a per-channel asyncio.Queue and handed to the
subscriber by a single consumer task, which keeps delivery FIFO per channel
even though the realtime client invokes callbacks synchronously.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from collabsync.config import Settings
from collabsync.errors import TransportError
from collabsync.protocols import MessageHandler, StatusCallback
from collabsync.types import TransportMessage

logger = logging.getLogger(__name__)

# Every collabsync message is sent under this broadcast event name
BROADCAST_EVENT = "collab"
HEARTBEAT_CHANNEL = "collab:presence"

_FAILED_STATES = frozenset({"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"})


class SupabaseRealtimeTransport:
    """Transport over Supabase Realtime broadcast channels.

    Args:
        client: A supabase ``AsyncClient``.
        connect_timeout: Seconds to wait for a channel subscription to be acknowledged.
        broadcast_self: Ask the service to echo our own broadcasts back.
    """

    def __init__(self, client: Any, connect_timeout: float = 10.0, broadcast_self: bool = False):
        self._client = client
        self.connect_timeout = connect_timeout
        self.broadcast_self = broadcast_self
        self.user_id: Optional[str] = None
        self._channels: Dict[str, Any] = {}
        self._consumers: Dict[str, asyncio.Task] = {}
        self._status_callbacks: List[StatusCallback] = []
        self._status_tasks: Set[asyncio.Task] = set()

    @classmethod
    async def from_settings(cls, settings: Settings) -> "SupabaseRealtimeTransport":
        if not settings.supabase_url or not settings.supabase_key:
            raise TransportError("Supabase URL and key must be configured for realtime collaboration")

        from supabase import acreate_client

        client = await acreate_client(settings.supabase_url, settings.supabase_key)
        return cls(client, connect_timeout=settings.realtime_connect_timeout)

    # === Transport protocol ===

    async def connect(self, user_id: str) -> None:
        self.user_id = user_id
        if HEARTBEAT_CHANNEL not in self._channels:
            self._channels[HEARTBEAT_CHANNEL] = await self._open_channel(HEARTBEAT_CHANNEL)

    async def subscribe(self, channel: str, handler: MessageHandler) -> None:
        if channel in self._consumers or channel in self._channels:
            await self.unsubscribe(channel)

        queue: asyncio.Queue = asyncio.Queue()
        realtime_channel = await self._open_channel(channel, queue)
        self._channels[channel] = realtime_channel
        self._consumers[channel] = asyncio.get_running_loop().create_task(
            self._consume(channel, queue, handler)
        )

    async def unsubscribe(self, channel: str) -> None:
        consumer = self._consumers.pop(channel, None)
        if consumer is not None:
            consumer.cancel()
        realtime_channel = self._channels.pop(channel, None)
        if realtime_channel is not None:
            try:
                await self._client.remove_channel(realtime_channel)
            except Exception as e:
                raise TransportError(f"Could not leave channel {channel}: {e}") from e

    async def publish(self, channel: str, message: TransportMessage) -> None:
        if self.user_id is None:
            raise TransportError("Not connected to Supabase Realtime")

        realtime_channel = self._channels.get(channel)
        if realtime_channel is None:
            realtime_channel = await self._open_channel(channel)
            self._channels[channel] = realtime_channel

        try:
            await realtime_channel.send_broadcast(BROADCAST_EVENT, message.to_dict())
        except Exception as e:
            raise TransportError(f"Broadcast on {channel} failed: {e}") from e

    def on_status(self, callback: StatusCallback) -> Callable[[], None]:
        self._status_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._status_callbacks:
                self._status_callbacks.remove(callback)

        return unsubscribe

    async def close(self) -> None:
        for channel in list(self._channels):
            try:
                await self.unsubscribe(channel)
            except TransportError as e:
                logger.warning(str(e))
        if self.user_id is not None:
            self.user_id = None
            await self._notify_status(False, "Transport closed")
        self._status_callbacks = []

    # === Internals ===

    async def _open_channel(self, name: str, queue: Optional[asyncio.Queue] = None) -> Any:
        """Create and subscribe a broadcast channel, waiting for the acknowledgement."""
        realtime_channel = self._client.channel(
            name, {"config": {"broadcast": {"self": self.broadcast_self}}}
        )
        if queue is not None:
            realtime_channel.on_broadcast(BROADCAST_EVENT, queue.put_nowait)

        acknowledged = asyncio.Event()
        failures: List[str] = []

        def on_subscribe(status: Any, error: Optional[Exception] = None) -> None:
            state = str(getattr(status, "value", status))
            if state == "SUBSCRIBED":
                acknowledged.set()
                self._schedule_status(True, None)
            elif state in _FAILED_STATES:
                reason = f"{name}: {error or state}"
                if not acknowledged.is_set():
                    failures.append(reason)
                    acknowledged.set()
                self._schedule_status(False, reason)

        try:
            await realtime_channel.subscribe(on_subscribe)
            await asyncio.wait_for(acknowledged.wait(), timeout=self.connect_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timed out subscribing to {name}") from e
        except TransportError:
            raise
        except Exception as e:
            raise TransportError(f"Could not subscribe to {name}: {e}") from e

        if failures:
            raise TransportError(f"Subscription failed: {failures[0]}")
        logger.debug(f"Subscribed to realtime channel {name}")
        return realtime_channel

    async def _consume(self, channel: str, queue: asyncio.Queue, handler: MessageHandler) -> None:
        while True:
            raw = await queue.get()
            try:
                message = TransportMessage.from_dict(_unwrap_broadcast(raw))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Dropping malformed broadcast on {channel}: {e}")
                continue
            try:
                await handler(message)
            except Exception:
                logger.exception(f"Handler for {channel} failed on {message.event.value}")

    def _schedule_status(self, connected: bool, error: Optional[str]) -> None:
        task = asyncio.get_running_loop().create_task(self._notify_status(connected, error))
        self._status_tasks.add(task)
        task.add_done_callback(self._status_tasks.discard)

    async def _notify_status(self, connected: bool, error: Optional[str]) -> None:
        for callback in list(self._status_callbacks):
            await callback(connected, error)


def _unwrap_broadcast(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Realtime may hand us the full broadcast envelope or just its payload."""
    if "sender_id" in raw:
        return raw
    return raw["payload"]
