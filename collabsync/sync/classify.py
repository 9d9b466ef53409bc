"""Pairing of local and remote memory records.

A local record and a remote record are the same memory when the remote one
remembers the local id, when the local one remembers the remote id, or when
both carry the same id. Paired copies with equal (whitespace-normalized)
content are in sync; differing content is a conflict. Timestamps are not
compared because the remote assigns its own.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from collabsync.types import MemoryRecord, SyncConflict, SyncState


@dataclass
class Classification:
    """Outcome of pairing one local listing with one remote listing."""

    synced: List[Tuple[MemoryRecord, MemoryRecord]] = field(default_factory=list)
    local_only: List[MemoryRecord] = field(default_factory=list)
    remote_only: List[MemoryRecord] = field(default_factory=list)
    conflicts: List[SyncConflict] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.synced) + len(self.local_only) + len(self.remote_only) + len(self.conflicts)

    def states(self) -> Dict[str, SyncState]:
        """State per record id (local ids for paired records)."""
        result: Dict[str, SyncState] = {}
        for local, _remote in self.synced:
            result[local.id] = SyncState.SYNCED
        for record in self.local_only:
            result[record.id] = SyncState.LOCAL_ONLY
        for record in self.remote_only:
            result[record.id] = SyncState.REMOTE_ONLY
        for conflict in self.conflicts:
            result[conflict.local.id] = SyncState.CONFLICT
        return result


def _find_partner(
    local: MemoryRecord,
    by_id: Dict[str, MemoryRecord],
    by_local_id: Dict[str, MemoryRecord],
) -> Optional[MemoryRecord]:
    if local.id in by_local_id:
        return by_local_id[local.id]
    if local.remote_id and local.remote_id in by_id:
        return by_id[local.remote_id]
    return by_id.get(local.id)


def classify_records(local: List[MemoryRecord], remote: List[MemoryRecord]) -> Classification:
    """Pair records by identity and classify each pair or leftover."""
    by_id: Dict[str, MemoryRecord] = {r.id: r for r in remote}
    by_local_id: Dict[str, MemoryRecord] = {r.local_id: r for r in remote if r.local_id}
    matched: set = set()
    result = Classification()

    for record in local:
        partner = _find_partner(record, by_id, by_local_id)
        if partner is None or partner.id in matched:
            result.local_only.append(record)
            continue
        matched.add(partner.id)
        if record.content_key == partner.content_key:
            result.synced.append((record, partner))
        else:
            result.conflicts.append(SyncConflict(local=record, remote=partner))

    for record in remote:
        if record.id not in matched:
            result.remote_only.append(record)

    return result


def classify_offline(local: List[MemoryRecord]) -> Classification:
    """Classification from local knowledge only: linked records count as synced."""
    result = Classification()
    for record in local:
        if record.remote_id:
            placeholder = MemoryRecord(id=record.remote_id, memory=record.memory, local_id=record.id)
            result.synced.append((record, placeholder))
        else:
            result.local_only.append(record)
    return result
