"""A Raft consensus peer: leader election, log replication and persistence."""

from __future__ import annotations

import enum
import logging
import pickle
import queue
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from .persister import Persister
from .raftapi import ApplyMsg

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 0.1
TICK_INTERVAL = 0.01
ELECTION_TIMEOUT_MIN_MS = 150
ELECTION_TIMEOUT_SPREAD_MS = 150


class _PeerEnd(Protocol):
    def call(self, method: str, args: Any) -> Optional[Any]:
        """Invoke method on the remote peer; None if the call failed."""


class _ApplySink(Protocol):
    def put(self, item: ApplyMsg) -> None:
        """Deliver an ApplyMsg to the service."""


class Role(enum.Enum):
    LEADER = 0
    FOLLOWER = 1
    CANDIDATE = 2

    def __str__(self) -> str:
        return self.name.title()


@dataclass(frozen=True)
class LogEntry:
    """One log entry: the leader's term when it was received, and the command."""

    term: int
    command: Any = None


@dataclass
class RequestVoteArgs:
    term: int
    candidate_id: int
    last_log_index: int
    last_log_term: int


@dataclass
class RequestVoteReply:
    term: int = 0
    vote_granted: bool = False


@dataclass
class AppendEntriesArgs:
    term: int
    leader_id: int
    prev_log_index: int
    prev_log_term: int
    entries: List[LogEntry] = field(default_factory=list)
    leader_commit: int = 0


@dataclass
class AppendEntriesReply:
    success: bool = False
    term: int = 0
    x_term: int = 0
    x_index: int = 0
    x_len: int = 0


def _spawn(target: Callable[..., Any], *args: Any) -> None:
    threading.Thread(target=target, args=args, daemon=True).start()


class Raft:
    """A single Raft peer.

    ``peers`` holds one end point per peer (this one included); each end
    offers ``call(method, args)`` returning the reply or None on failure.
    Committed commands are delivered to ``apply_queue`` as ApplyMsg values.
    """

    def __init__(
        self,
        peers: Sequence[_PeerEnd],
        me: int,
        persister: Persister,
        apply_queue: _ApplySink,
    ) -> None:
        self._lock = threading.Lock()
        self._apply_lock = threading.Lock()
        self._dead = threading.Event()
        self._peers = list(peers)
        self._persister = persister
        self._apply_queue = apply_queue
        self.me = me

        self.current_term = 0
        self.voted_for = -1
        self.log: List[LogEntry] = [LogEntry(term=0)]

        self.commit_index = 0
        self.last_applied = 0
        self.role = Role.FOLLOWER
        self._last_heartbeat = time.monotonic()

        self._read_persist(persister.read_raft_state())

        if self.last_applied > 0:
            apply_queue.put(
                ApplyMsg.snapshot_msg(
                    None, self.log[self.last_applied].term, self.last_applied
                )
            )

        self._next_index = [len(self.log)] * len(self._peers)
        self._match_index = [0] * len(self._peers)

        with self._lock:
            self._persist()
        logger.debug(
            "node %d (term %d, %s) initialised, log length %d",
            self.me, self.current_term, self.role, len(self.log),
        )

    # ----------------------------------------------------------------- state

    def get_state(self) -> Tuple[int, bool]:
        """Return the current term and whether this peer believes it leads."""
        with self._lock:
            return self.current_term, self.role is Role.LEADER

    def _persist(self) -> None:
        """Save term, vote and log. Caller holds the lock."""
        state = pickle.dumps(
            (self.current_term, self.voted_for, [(e.term, e.command) for e in self.log])
        )
        self._persister.save(state, None)
        logger.debug(
            "node %d (term %d, %s) persisted, log length %d",
            self.me, self.current_term, self.role, len(self.log),
        )

    def _read_persist(self, data: bytes) -> None:
        if not data:
            return
        try:
            term, voted_for, entries = pickle.loads(data)
            log = [LogEntry(int(t), c) for t, c in entries]
            term = int(term)
            voted_for = int(voted_for)
        except (
            pickle.UnpicklingError, EOFError, ValueError, TypeError,
            AttributeError, ImportError, IndexError,
        ) as exc:
            logger.debug("node %d failed to read persisted state: %s", self.me, exc)
            return
        if not log:
            logger.debug("node %d persisted log is empty; ignored", self.me)
            return
        self.current_term = term
        self.voted_for = voted_for
        self.log = log
        self.last_applied = 0

    def persist_bytes(self) -> int:
        """Return the size of the persisted Raft state."""
        with self._lock:
            return self._persister.raft_state_size()

    def snapshot(self, index: int, snapshot: bytes) -> None:
        """Accept a service snapshot through index; the full log is retained."""
        with self._lock:
            if not 0 <= index < len(self.log):
                raise IndexError(f"snapshot index {index} outside log of length {len(self.log)}")
        logger.debug("node %d keeps full log; snapshot at %d not compacted", self.me, index)

    # ------------------------------------------------------------- lifecycle

    def start(self, command: Any) -> Tuple[int, int, bool]:
        """Append a command if leader; return (index, term, is_leader)."""
        with self._lock:
            if self.role is not Role.LEADER:
                return -1, -1, False
            self.log.append(LogEntry(self.current_term, command))
            index = len(self.log) - 1
            term = self.current_term
            self._match_index[self.me] = index
            self._next_index[self.me] = index + 1
            self._persist()
            logger.debug("leader %d (term %d) got %r at %d", self.me, term, command, index)
        _spawn(self._broadcast_append_entries)
        return index, term, True

    def kill(self) -> None:
        """Stop this peer's background loop."""
        self._dead.set()
        logger.debug("node %d killed", self.me)

    def killed(self) -> bool:
        return self._dead.is_set()

    # ------------------------------------------------------------------ RPCs

    def request_vote(self, args: RequestVoteArgs) -> RequestVoteReply:
        """Handle a RequestVote RPC."""
        reply = RequestVoteReply()
        with self._lock:
            try:
                if args.term < self.current_term:
                    reply.term = self.current_term
                    reply.vote_granted = False
                    return reply

                if args.term > self.current_term:
                    self.current_term = args.term
                    self.voted_for = -1
                    self.role = Role.FOLLOWER

                last_index = len(self.log) - 1
                last_term = self.log[last_index].term
                up_to_date = args.last_log_term > last_term or (
                    args.last_log_term == last_term and args.last_log_index >= last_index
                )

                if self.voted_for in (-1, args.candidate_id) and up_to_date:
                    self.voted_for = args.candidate_id
                    self._last_heartbeat = time.monotonic()
                    reply.vote_granted = True
                else:
                    reply.vote_granted = False
                logger.debug(
                    "node %d (term %d) vote for %d: %s",
                    self.me, self.current_term, args.candidate_id, reply.vote_granted,
                )
                reply.term = self.current_term
                return reply
            finally:
                self._persist()

    def append_entries(self, args: AppendEntriesArgs) -> AppendEntriesReply:
        """Handle an AppendEntries RPC."""
        reply = AppendEntriesReply()
        with self._lock:
            try:
                return self._append_entries_locked(args, reply)
            finally:
                self._persist()

    def _append_entries_locked(
        self, args: AppendEntriesArgs, reply: AppendEntriesReply
    ) -> AppendEntriesReply:
        if args.term < self.current_term:
            reply.term = self.current_term
            reply.success = False
            reply.x_term = -1
            reply.x_index = -1
            reply.x_len = len(self.log)
            return reply

        if args.term > self.current_term or self.role is not Role.FOLLOWER:
            self.current_term = args.term
            self.voted_for = -1
            self.role = Role.FOLLOWER

        self._last_heartbeat = time.monotonic()

        if args.prev_log_index >= len(self.log):
            reply.term = self.current_term
            reply.success = False
            reply.x_len = len(self.log)
            reply.x_term = -1
            reply.x_index = -1
            return reply

        if self.log[args.prev_log_index].term != args.prev_log_term:
            reply.term = self.current_term
            reply.success = False
            reply.x_term = self.log[args.prev_log_index].term
            reply.x_index = next(
                (i for i, e in enumerate(self.log) if e.term == reply.x_term), 0
            )
            reply.x_len = len(self.log)
            return reply

        for offset, entry in enumerate(args.entries):
            index = args.prev_log_index + 1 + offset
            if index < len(self.log):
                if self.log[index].term != entry.term:
                    del self.log[index:]
                    self.log.append(entry)
            else:
                self.log.append(entry)

        if self.commit_index >= len(self.log):
            self.commit_index = max(len(self.log) - 1, 0)
        if self.last_applied >= len(self.log):
            self.last_applied = max(len(self.log) - 1, 0)

        if args.leader_commit > self.commit_index:
            self.commit_index = min(args.leader_commit, len(self.log) - 1)
            _spawn(self._apply_entries)

        reply.term = self.current_term
        reply.success = True
        return reply

    # -------------------------------------------------------------- applying

    def _apply_entries(self) -> None:
        with self._apply_lock:
            while True:
                with self._lock:
                    if self.last_applied >= self.commit_index:
                        return
                    nxt = self.last_applied + 1
                    if nxt >= len(self.log):
                        logger.debug(
                            "node %d: index %d beyond log length %d", self.me, nxt, len(self.log)
                        )
                        return
                    msg = ApplyMsg.command_msg(self.log[nxt].command, nxt)
                self._apply_queue.put(msg)
                with self._lock:
                    self.last_applied = nxt

    # ------------------------------------------------------------- elections

    def _call(self, server: int, method: str, args: Any) -> Optional[Any]:
        return self._peers[server].call(method, args)

    def run(self) -> None:
        """The background loop: start elections on timeout, send heartbeats as leader."""
        while not self.killed():
            timeout = (
                ELECTION_TIMEOUT_MIN_MS + random.randrange(ELECTION_TIMEOUT_SPREAD_MS)
            ) / 1000.0
            with self._lock:
                role = self.role
                last = self._last_heartbeat
            if role is Role.LEADER:
                time.sleep(HEARTBEAT_INTERVAL)
                _spawn(self._broadcast_append_entries)
            elif time.monotonic() - last >= timeout:
                _spawn(self._start_election, timeout)
            time.sleep(TICK_INTERVAL)

    def _become_follower(self, term: int) -> None:
        """Adopt a newer term as follower. Caller holds the lock."""
        self.current_term = term
        self.voted_for = -1
        self.role = Role.FOLLOWER
        self._persist()

    def _start_election(self, timeout: float) -> None:
        with self._lock:
            self.role = Role.CANDIDATE
            self.current_term += 1
            self.voted_for = self.me
            term_started = self.current_term
            last_index = len(self.log) - 1
            last_term = self.log[last_index].term
            self._last_heartbeat = time.monotonic()
            self._persist()

        events: "queue.Queue[Tuple[str, int]]" = queue.Queue()
        args = RequestVoteArgs(term_started, self.me, last_index, last_term)
        for server in range(len(self._peers)):
            if server != self.me:
                _spawn(self._solicit_vote, server, args, events)

        total = len(self._peers)
        votes = 1
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            try:
                kind, value = events.get(timeout=remaining)
            except queue.Empty:
                return
            if kind == "vote":
                votes += 1
                if votes > total // 2:
                    self._maybe_become_leader(term_started)
                    return
            else:
                with self._lock:
                    if value > self.current_term:
                        self._become_follower(value)
                return

    def _solicit_vote(
        self, server: int, args: RequestVoteArgs, events: "queue.Queue[Tuple[str, int]]"
    ) -> None:
        reply = self._call(server, "request_vote", args)
        if reply is None:
            return
        with self._lock:
            if reply.term > self.current_term:
                self._become_follower(reply.term)
                events.put(("term", reply.term))
                return
            if (
                self.role is Role.CANDIDATE
                and self.current_term == args.term
                and reply.vote_granted
            ):
                events.put(("vote", server))

    def _maybe_become_leader(self, term_started: int) -> None:
        with self._lock:
            if self.current_term != term_started or self.role is not Role.CANDIDATE:
                return
            self.role = Role.LEADER
            self._last_heartbeat = time.monotonic()
            last_index = len(self.log) - 1
            self._next_index = [last_index + 1] * len(self._peers)
            self._match_index = [0] * len(self._peers)
            self._match_index[self.me] = last_index
            logger.debug("node %d became leader in term %d", self.me, self.current_term)
        _spawn(self._broadcast_append_entries)

    # ----------------------------------------------------------- replication

    def _broadcast_append_entries(self) -> None:
        with self._lock:
            if self.role is not Role.LEADER:
                return
            term = self.current_term
            leader_commit = self.commit_index

        for server in range(len(self._peers)):
            if server == self.me:
                continue
            with self._lock:
                nxt = self._next_index[server]
                prev_index = nxt - 1
                prev_term = 0
                if prev_index < 0:
                    prev_index = 0
                    prev_term = self.log[0].term
                elif prev_index >= len(self.log):
                    logger.debug(
                        "leader %d: prev index %d beyond log for %d", self.me, prev_index, server
                    )
                else:
                    prev_term = self.log[prev_index].term
                entries = list(self.log[nxt:]) if nxt < len(self.log) else []
                args = AppendEntriesArgs(
                    term, self.me, prev_index, prev_term, entries, leader_commit
                )
            _spawn(self._replicate, server, args)

    def _replicate(self, server: int, args: AppendEntriesArgs) -> None:
        reply = self._call(server, "append_entries", args)
        if reply is None:
            return
        with self._lock:
            if reply.term > self.current_term:
                self._become_follower(reply.term)
                return
            if self.role is not Role.LEADER or args.term != self.current_term:
                return
            if reply.success:
                self._on_replicated(server, args)
            else:
                self._back_off(server, reply)

    def _on_replicated(self, server: int, args: AppendEntriesArgs) -> None:
        """Advance match/next index and the commit index. Caller holds the lock."""
        new_match = args.prev_log_index + len(args.entries)
        if new_match > self._match_index[server]:
            self._match_index[server] = new_match
            self._next_index[server] = new_match + 1

        for n in range(len(self.log) - 1, self.commit_index, -1):
            if self.log[n].term != self.current_term:
                continue
            count = 1 + sum(
                1
                for j, match in enumerate(self._match_index)
                if j != self.me and match >= n
            )
            if count > len(self._peers) // 2:
                self.commit_index = n
                _spawn(self._apply_entries)
                break

    def _back_off(self, server: int, reply: AppendEntriesReply) -> None:
        """Move next index back using the follower's hints. Caller holds the lock."""
        if reply.x_term != -1:
            last_with_term = next(
                (i for i in range(len(self.log) - 1, -1, -1) if self.log[i].term == reply.x_term),
                -1,
            )
            if last_with_term != -1:
                self._next_index[server] = last_with_term + 1
            elif reply.x_index != -1 and reply.x_index < len(self.log):
                self._next_index[server] = reply.x_index
            else:
                self._next_index[server] = reply.x_len
        else:
            self._next_index[server] = reply.x_len
        if self._next_index[server] < 1:
            self._next_index[server] = 1


def make(
    peers: Sequence[_PeerEnd],
    me: int,
    persister: Persister,
    apply_queue: _ApplySink,
) -> Raft:
    """Create a Raft peer, restore its persisted state and start its loop."""
    rf = Raft(peers, me, persister, apply_queue)
    _spawn(rf.run)
    return rf