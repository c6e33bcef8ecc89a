"""Caption session: owned state, audio capture, snapshots and the orchestrator."""

from .orchestrator import SessionOrchestrator, SessionStatus
from .persistence import FileSnapshotStore, MemorySnapshotStore, SessionSnapshot, ThrottledSnapshotWriter
from .state import SessionState

__all__ = [
    "FileSnapshotStore",
    "MemorySnapshotStore",
    "SessionOrchestrator",
    "SessionSnapshot",
    "SessionState",
    "SessionStatus",
    "ThrottledSnapshotWriter",
]
