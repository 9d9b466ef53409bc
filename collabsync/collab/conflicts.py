"""Detection of overlapping concurrent edits.

Detection only: edits are still applied in arrival order. A conflict tells
the UI that two users touched the same text at nearly the same time so a
human can check the result.
"""

import logging
import uuid
from collections import deque
from datetime import timedelta
from typing import Deque, Dict, Iterable, List, Optional

from collabsync.config import Settings
from collabsync.types import CollaborationOperation, ConflictSeverity, EditConflict

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 20
DEFAULT_TIME_WINDOW_SECONDS = 10.0


def text_difference(a: str, b: str) -> float:
    """Character-wise difference score between two strings, 0 (same) to 1."""
    if a == b:
        return 0.0
    if not a or not b:
        return 1.0
    max_length = max(len(a), len(b))
    differences = sum(1 for i in range(max_length) if i >= len(a) or i >= len(b) or a[i] != b[i])
    return differences / max_length


def conflict_severity(operations: List[CollaborationOperation], start: int, end: int) -> ConflictSeverity:
    """Grade a conflict by the size of the contested span and how different the edits are."""
    size = end - start
    pairs = 0
    total = 0.0
    for i in range(len(operations)):
        for j in range(i + 1, len(operations)):
            total += text_difference(operations[i].text, operations[j].text)
            pairs += 1
    avg_diff = total / pairs if pairs else 0.0

    if size > 100 and avg_diff > 0.7:
        return ConflictSeverity.HIGH
    if size > 50 or avg_diff > 0.4:
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.LOW


def ranges_touch(a: CollaborationOperation, b: CollaborationOperation) -> bool:
    """True when the two edit ranges overlap or are adjacent."""
    return a.position <= b.end and b.position <= a.end


class ConflictDetector:
    """Keeps a bounded window of recent operations per session.

    Args:
        window_size: Operations remembered per session.
        time_window_seconds: Max timestamp distance for two edits to conflict.
    """

    def __init__(
        self,
        window_size: int = DEFAULT_WINDOW_SIZE,
        time_window_seconds: float = DEFAULT_TIME_WINDOW_SECONDS,
    ):
        self.window_size = window_size
        self.time_window = timedelta(seconds=time_window_seconds)
        self._recent: Dict[str, Deque[CollaborationOperation]] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConflictDetector":
        return cls(
            window_size=settings.recent_operations_window,
            time_window_seconds=settings.conflict_time_window_seconds,
        )

    def recent(self, session_id: str) -> List[CollaborationOperation]:
        return list(self._recent.get(session_id, ()))

    def remember(self, operation: CollaborationOperation) -> None:
        window = self._recent.setdefault(operation.session_id, deque(maxlen=self.window_size))
        window.append(operation)

    def check(
        self, operation: CollaborationOperation, file_id: Optional[str] = None
    ) -> Optional[EditConflict]:
        """Compare ``operation`` with the window, then remember it."""
        rivals = list(self._rivals(operation, self._recent.get(operation.session_id, ())))
        self.remember(operation)
        if not rivals:
            return None

        involved = rivals + [operation]
        start = min(op.position for op in involved)
        end = max(op.end for op in involved)
        conflict = EditConflict(
            id=str(uuid.uuid4()),
            session_id=operation.session_id,
            file_id=file_id,
            start=start,
            end=end,
            operations=involved,
            severity=conflict_severity(involved, start, end),
        )
        logger.info(
            f"Edit conflict in session {operation.session_id} between "
            f"{', '.join(conflict.user_ids)} ({conflict.severity.value})"
        )
        return conflict

    def _rivals(
        self, operation: CollaborationOperation, window: Iterable[CollaborationOperation]
    ) -> Iterable[CollaborationOperation]:
        for other in window:
            if other.user_id == operation.user_id:
                continue
            if abs(operation.timestamp - other.timestamp) > self.time_window:
                continue
            if ranges_touch(operation, other):
                yield other

    def forget(self, session_id: str) -> None:
        self._recent.pop(session_id, None)

    def clear(self) -> None:
        self._recent.clear()
