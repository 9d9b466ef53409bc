"""Typed in-process event bus for the collaboration layer."""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from collabsync.types import (
    CollaborationOperation,
    CollaborationSession,
    ConnectionChange,
    EditConflict,
    EventKind,
    SessionDeleted,
    SessionLeft,
)

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Union[None, Awaitable[None]]]

# Each event kind carries exactly one payload type
PAYLOAD_TYPES: Dict[EventKind, type] = {
    EventKind.CONNECTION: ConnectionChange,
    EventKind.OPERATION: CollaborationOperation,
    EventKind.SESSION_CREATED: CollaborationSession,
    EventKind.SESSION_JOINED: CollaborationSession,
    EventKind.SESSION_UPDATED: CollaborationSession,
    EventKind.SESSION_LEFT: SessionLeft,
    EventKind.SESSION_DELETED: SessionDeleted,
    EventKind.CONFLICT_DETECTED: EditConflict,
}


class EventBus:
    """Publish/subscribe keyed by ``EventKind``.

    Listeners may be plain callables or coroutine functions; they run in
    registration order. A failing listener is logged and does not prevent
    the others from running.
    """

    def __init__(self):
        self._listeners: Dict[EventKind, List[Listener]] = {}

    def on(self, kind: EventKind, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a callable that removes it."""
        self._listeners.setdefault(kind, []).append(listener)

        def unsubscribe() -> None:
            self.off(kind, listener)

        return unsubscribe

    def off(self, kind: EventKind, listener: Listener) -> None:
        listeners = self._listeners.get(kind)
        if listeners and listener in listeners:
            listeners.remove(listener)

    def listener_count(self, kind: Optional[EventKind] = None) -> int:
        if kind is not None:
            return len(self._listeners.get(kind, []))
        return sum(len(v) for v in self._listeners.values())

    async def emit(self, kind: EventKind, payload: Any) -> None:
        expected = PAYLOAD_TYPES[kind]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{kind.value} expects {expected.__name__}, got {type(payload).__name__}"
            )

        # Copy so listeners can unsubscribe while being notified
        for listener in list(self._listeners.get(kind, [])):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Listener for {kind.value} failed")

    def clear(self) -> None:
        self._listeners.clear()
