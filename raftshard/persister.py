"""Thread-safe holder of a peer's persisted Raft state and snapshot."""

from __future__ import annotations

import threading
from typing import Optional


class Persister:
    """Stores Raft state and a service snapshot as immutable byte strings."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._raft_state = b""
        self._snapshot = b""

    def copy(self) -> "Persister":
        """Return a new persister holding the same contents."""
        with self._lock:
            other = Persister()
            other._raft_state = self._raft_state
            other._snapshot = self._snapshot
            return other

    def read_raft_state(self) -> bytes:
        with self._lock:
            return self._raft_state

    def raft_state_size(self) -> int:
        with self._lock:
            return len(self._raft_state)

    def save(self, raft_state: Optional[bytes], snapshot: Optional[bytes]) -> None:
        """Save both Raft state and snapshot as one atomic action."""
        with self._lock:
            self._raft_state = bytes(raft_state or b"")
            self._snapshot = bytes(snapshot or b"")

    def read_snapshot(self) -> bytes:
        with self._lock:
            return self._snapshot

    def snapshot_size(self) -> int:
        with self._lock:
            return len(self._snapshot)