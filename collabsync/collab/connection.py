"""Connection state tracking for the collaboration transport."""

import logging
from typing import Optional

from collabsync.collab.events import EventBus
from collabsync.types import ConnectionChange, ConnectionState, EventKind

logger = logging.getLogger(__name__)

DEFAULT_DISCONNECT_ERROR = "Connection lost"


class ConnectionStateTracker:
    """Mirrors transport connectivity: disconnected -> connected -> disconnected.

    Transitions are driven by the transport only. Reconnecting is the
    transport's job; the tracker just records the error and reports it.
    """

    def __init__(self, bus: EventBus):
        self._bus = bus
        self.state = ConnectionState.DISCONNECTED
        self.last_error: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @property
    def status_message(self) -> str:
        if self.is_connected:
            return "Connected"
        if self.last_error:
            return f"Reconnecting: {self.last_error}"
        return "Not connected"

    async def update(self, connected: bool, error: Optional[str] = None) -> bool:
        """Apply a transport status report. Returns True if the state changed."""
        new_state = ConnectionState.CONNECTED if connected else ConnectionState.DISCONNECTED
        if new_state == self.state:
            if not connected and error:
                self.last_error = error
            return False

        self.state = new_state
        if connected:
            self.last_error = None
            logger.info("Collaboration transport connected")
        else:
            self.last_error = error or DEFAULT_DISCONNECT_ERROR
            logger.warning(f"Collaboration transport disconnected: {self.last_error}")

        await self._bus.emit(EventKind.CONNECTION, ConnectionChange(self.state, self.last_error))
        return True
