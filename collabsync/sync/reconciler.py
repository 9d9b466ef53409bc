"""Reconciliation of a local memory store with the remote memory API.

One pass:

1. Probe the remote. When it is unreachable nothing is transferred and the
   local records are classified from their stored links.
2. List both sides and pair records (see ``classify``).
3. Push local-only records and link them to the id the remote assigned.
4. Pull remote-only records into the local store.
5. Report conflicts without resolving them, persist the sync time and
   notify listeners.

Per-record failures are collected into the result; they never abort the
pass and successful transfers are never rolled back.
"""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Union

from collabsync.errors import SyncRecordError
from collabsync.protocols import LocalMemoryStore, RemoteMemoryStore
from collabsync.sync.classify import Classification, classify_offline, classify_records
from collabsync.types import SyncResult, SyncStats, parse_datetime, utc_now

logger = logging.getLogger(__name__)

SyncListener = Callable[[SyncStats], Union[None, Awaitable[None]]]

SYNC_IN_PROGRESS = "Sync already in progress"


def last_sync_key(user_id: str, scope: str) -> str:
    return f"last_sync:{user_id}:{scope}"


class MemorySyncReconciler:
    """Keeps a local memory store and the remote memory API in step.

    Args:
        local: Local store (always available).
        remote: Remote store (may be unreachable).
        default_user_id: User used by auto-sync when none is given.
        default_scope: Scope used by auto-sync when none is given.
    """

    def __init__(
        self,
        local: LocalMemoryStore,
        remote: RemoteMemoryStore,
        default_user_id: str = "default_user",
        default_scope: str = "file_manager",
    ):
        self.local = local
        self.remote = remote
        self.default_user_id = default_user_id
        self.default_scope = default_scope
        self.auto_sync_interval: Optional[float] = None
        self._stats = SyncStats()
        self._listeners: List[SyncListener] = []
        self._auto_sync_task: Optional[asyncio.Task] = None
        self._in_progress = False

    # === Status ===

    def get_sync_stats(self) -> SyncStats:
        """Snapshot of the current stats; later passes do not change it."""
        return self._stats.copy()

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def add_sync_listener(self, listener: SyncListener) -> Callable[[], None]:
        """Register for stats updates. Returns a callable that removes the listener."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def check_api_connection(self) -> bool:
        """True when the remote answers. Never raises."""
        try:
            return bool(await self.remote.check_connection())
        except Exception as e:
            logger.warning(f"Remote memory API check failed: {e}")
            return False

    async def load_last_synced_at(self, user_id: Optional[str] = None, scope: Optional[str] = None) -> Optional[datetime]:
        """Restore the persisted time of the last successful pass."""
        user_id = user_id or self.default_user_id
        scope = scope or self.default_scope
        value = await self.local.get_sync_meta(last_sync_key(user_id, scope))
        last_synced = parse_datetime(value)
        if last_synced is not None:
            self._stats.last_synced_at = last_synced
        return last_synced

    # === Reconciliation ===

    async def synchronize_memories(
        self, user_id: Optional[str] = None, scope: Optional[str] = None
    ) -> SyncResult:
        """Run one reconciliation pass for ``(user_id, scope)``.

        Never raises for remote or per-record problems; they are reported in
        ``SyncResult.errors``.
        """
        user_id = user_id or self.default_user_id
        scope = scope or self.default_scope

        if self._in_progress:
            logger.debug("Sync requested while another pass is running")
            return SyncResult(success=False, stats=self.get_sync_stats(), errors=[SYNC_IN_PROGRESS])

        self._in_progress = True
        self._stats.in_progress = True
        await self._notify()
        try:
            result = await self._run_pass(user_id, scope)
        finally:
            self._in_progress = False
            self._stats.in_progress = False
            await self._notify()
        result.stats = self.get_sync_stats()
        return result

    async def _run_pass(self, user_id: str, scope: str) -> SyncResult:
        if not await self.check_api_connection():
            return await self._offline_pass(user_id, scope)

        try:
            local_records = await self.local.list_memories(user_id, scope)
            remote_records = await self.remote.list_memories(user_id, scope)
        except Exception as e:
            logger.error(f"Failed to fetch memories for sync: {e}", exc_info=True)
            return SyncResult(
                success=False, stats=self.get_sync_stats(), errors=[f"Failed to fetch memories: {e}"]
            )

        classification = classify_records(local_records, remote_records)
        self._apply_counts(classification)
        await self._notify()

        errors: List[str] = []

        for record in classification.local_only:
            try:
                remote_id = await self.remote.add_memory(record, user_id, scope)
                if remote_id:
                    await self.local.link_remote(record.id, remote_id)
            except Exception as e:
                self._record_failure(errors, SyncRecordError(record.id, "push", e))
                continue
            self._stats.local_only -= 1
            self._stats.synced += 1
            self._stats.pending -= 1

        for record in classification.remote_only:
            try:
                await self.local.insert_memory(record, user_id, scope)
            except Exception as e:
                self._record_failure(errors, SyncRecordError(record.id, "pull", e))
                continue
            self._stats.remote_only -= 1
            self._stats.synced += 1
            self._stats.pending -= 1

        if classification.conflicts:
            logger.info(f"{len(classification.conflicts)} memories differ between local and remote")

        now = utc_now()
        self._stats.last_synced_at = now
        try:
            await self.local.set_sync_meta(last_sync_key(user_id, scope), now.isoformat())
        except Exception as e:
            logger.warning(f"Could not persist last sync time: {e}")

        logger.info(
            f"Sync complete: total={self._stats.total}, synced={self._stats.synced}, "
            f"conflicts={self._stats.conflicts}, failed={self._stats.failed}"
        )
        return SyncResult(
            success=self._stats.failed == 0,
            stats=self.get_sync_stats(),
            errors=errors,
            conflicts=list(classification.conflicts),
        )

    async def _offline_pass(self, user_id: str, scope: str) -> SyncResult:
        logger.info("Remote memory API unreachable, sync skipped")
        try:
            local_records = await self.local.list_memories(user_id, scope)
        except Exception as e:
            logger.error(f"Failed to read local memories: {e}", exc_info=True)
            return SyncResult(
                success=False,
                stats=self.get_sync_stats(),
                errors=[f"Failed to read local memories: {e}"],
                remote_available=False,
            )

        self._apply_counts(classify_offline(local_records))
        return SyncResult(success=True, stats=self.get_sync_stats(), remote_available=False)

    def _apply_counts(self, classification: Classification) -> None:
        stats = self._stats
        stats.total = classification.total
        stats.synced = len(classification.synced)
        stats.local_only = len(classification.local_only)
        stats.remote_only = len(classification.remote_only)
        stats.conflicts = len(classification.conflicts)
        stats.failed = 0
        stats.pending = stats.local_only + stats.remote_only

    def _record_failure(self, errors: List[str], error: SyncRecordError) -> None:
        logger.error(str(error))
        errors.append(str(error))
        self._stats.failed += 1

    async def _notify(self) -> None:
        snapshot = self.get_sync_stats()
        for listener in list(self._listeners):
            try:
                result: Any = listener(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Sync listener failed")

    # === Auto-sync ===

    @property
    def auto_sync_running(self) -> bool:
        return self._auto_sync_task is not None and not self._auto_sync_task.done()

    def start_auto_sync(
        self, interval_minutes: float = 5.0, user_id: Optional[str] = None, scope: Optional[str] = None
    ) -> None:
        """Sync every ``interval_minutes``. Replaces any running timer.

        Must be called from a running event loop.
        """
        if interval_minutes <= 0:
            raise ValueError(f"Auto-sync interval must be positive, got {interval_minutes}")

        self.stop_auto_sync()
        loop = asyncio.get_running_loop()
        self.auto_sync_interval = interval_minutes
        self._auto_sync_task = loop.create_task(
            self._auto_sync_loop(interval_minutes * 60, user_id, scope)
        )
        logger.info(f"Auto-sync started every {interval_minutes} minutes")

    def stop_auto_sync(self) -> None:
        """Cancel the timer. A pass that is already running completes."""
        task, self._auto_sync_task = self._auto_sync_task, None
        self.auto_sync_interval = None
        if task is not None and not task.done():
            task.cancel()
            logger.info("Auto-sync stopped")

    async def _auto_sync_loop(self, interval_seconds: float, user_id: Optional[str], scope: Optional[str]) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            if self._in_progress:
                logger.debug("Auto-sync tick skipped, a pass is still running")
                continue
            try:
                # Shielded so stopping the timer does not abort a running pass
                await asyncio.shield(self.synchronize_memories(user_id, scope))
            except Exception:
                logger.exception("Auto-sync pass failed")

    async def cleanup(self) -> None:
        """Stop auto-sync and drop listeners."""
        self.stop_auto_sync()
        self._listeners = []
