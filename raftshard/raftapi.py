"""The interface a Raft peer offers and the messages it delivers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple, runtime_checkable


@dataclass
class ApplyMsg:
    """A committed command or a snapshot delivered to the service."""

    command_valid: bool = False
    command: Any = None
    command_index: int = 0

    snapshot_valid: bool = False
    snapshot: Optional[bytes] = None
    snapshot_term: int = 0
    snapshot_index: int = 0

    @classmethod
    def command_msg(cls, command: Any, index: int) -> "ApplyMsg":
        """A message carrying a newly committed log entry."""
        return cls(command_valid=True, command=command, command_index=index)

    @classmethod
    def snapshot_msg(cls, snapshot: Optional[bytes], term: int, index: int) -> "ApplyMsg":
        """A message carrying a snapshot to install."""
        return cls(
            snapshot_valid=True,
            snapshot=snapshot,
            snapshot_term=term,
            snapshot_index=index,
        )


@runtime_checkable
class RaftPeer(Protocol):
    """What a service and the test harness expect of a Raft peer."""

    def start(self, command: Any) -> Tuple[int, int, bool]:
        """Start agreement; return (index, term, is_leader)."""

    def get_state(self) -> Tuple[int, bool]:
        """Return (current term, whether this peer believes it is leader)."""

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Hand the peer a snapshot covering the log through index."""

    def persist_bytes(self) -> int:
        """Return the size of the persisted Raft state."""

    def kill(self) -> None:
        """Stop the peer's background work."""