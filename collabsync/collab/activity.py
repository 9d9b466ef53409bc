"""Records collaboration activity as memories in the remote memory API."""

import logging

from collabsync.storage.mem0 import Mem0Client

logger = logging.getLogger(__name__)


class MemoryActivityRecorder:
    """ActivityRecorder that stores each activity as a short conversation.

    Args:
        client: Remote memory client.
        scope: Value stored as ``ai_family_member_id`` metadata.
    """

    def __init__(self, client: Mem0Client, scope: str = "file_manager"):
        self._client = client
        self.scope = scope

    async def record(self, user_id: str, activity: str, detail: str) -> None:
        messages = [
            {"role": "system", "content": f"Collaboration {activity}"},
            {"role": "user", "content": detail},
        ]
        metadata = {"ai_family_member_id": self.scope, "type": "collaboration", "activity": activity}
        await self._client.add_messages(messages, user_id, metadata)
        logger.debug(f"Recorded collaboration activity '{activity}' for {user_id}")
