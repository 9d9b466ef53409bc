"""
collabsync - Collaborative editing sessions and memory synchronization.

Session lifecycle and operation broadcasting over a realtime transport, plus
reconciliation of a local memory store with a remote memory API.
"""

from .collab.operations import OperationBroadcaster
from .collab.sessions import SessionManager
from .sync.reconciler import MemorySyncReconciler

try:
    from importlib.metadata import version

    __version__ = version("collabsync")
except Exception:
    __version__ = "0.0.0"

__all__ = ["SessionManager", "OperationBroadcaster", "MemorySyncReconciler"]
