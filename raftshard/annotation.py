"""Timeline annotations recorded while a test runs: checks, faults and notes."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

COLOR_INFO = "#FAFAFA"
COLOR_NEUTRAL = "#FFECB3"
COLOR_SUCCESS = "#C8E6C9"
COLOR_FAILURE = "#FFCDD2"
COLOR_FAULT = "#B3E5FC"
COLOR_USER = "#FFF176"

TAG_CHECKER = "$ Checker"
TAG_PARTITION = "$ Failure"
TAG_INFO = "$ Test Info"

# Gap kept between the end of one continuous annotation and the start of the
# next, and the width given to the closing annotation, so they do not overlap.
_GAP = 1000


def timestamp() -> int:
    """Nanoseconds since the Unix epoch."""
    return time.time_ns()


def _format_ints(values: Sequence[int]) -> str:
    return "[" + " ".join(str(v) for v in values) + "]"


@dataclass
class Annotation:
    """A single annotation on the timeline; end is 0 for a point in time."""

    tag: str
    start: int
    description: str
    details: str
    background_color: str
    end: int = 0


@dataclass
class _Continuous:
    start: int
    description: str
    details: str
    color: str

    def closed(self, tag: str, end: int) -> Annotation:
        return Annotation(
            tag=tag,
            start=self.start,
            end=end,
            description=self.description,
            details=self.details,
            background_color=self.color,
        )


class AnnotationLog:
    """A thread-safe collection of point, interval and continuous annotations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._annotations: List[Annotation] = []
        self._continuous: Dict[str, _Continuous] = {}
        self._finalized = False

    def point(
        self, tag: str, description: str, details: str, color: str = COLOR_USER
    ) -> None:
        """Record a point-in-time annotation."""
        with self._lock:
            self._annotations.append(
                Annotation(tag, timestamp(), description, details, color)
            )

    def interval(
        self,
        tag: str,
        start: int,
        description: str,
        details: str,
        color: str = COLOR_USER,
    ) -> None:
        """Record an annotation spanning from start until now."""
        with self._lock:
            self._annotations.append(
                Annotation(tag, start, description, details, color, end=timestamp())
            )

    def continuous(
        self, tag: str, description: str, details: str, color: str = COLOR_USER
    ) -> None:
        """Open a continuous annotation for tag, closing any one already open."""
        with self._lock:
            previous = self._continuous.get(tag)
            if previous is None:
                self._continuous[tag] = _Continuous(timestamp(), description, details, color)
                return
            t = timestamp()
            self._annotations.append(previous.closed(tag, t))
            self._continuous[tag] = _Continuous(t + _GAP, description, details, color)

    def continuous_end(self, tag: str) -> None:
        """Close the continuous annotation for tag, if one is open."""
        with self._lock:
            previous = self._continuous.pop(tag, None)
            if previous is None:
                return
            self._annotations.append(previous.closed(tag, timestamp()))

    def finalize(self, end: str) -> List[Annotation]:
        """Close open continuous annotations, mark finalized, and return all with a closing note."""
        with self._lock:
            result = list(self._annotations)
            t = timestamp()
            result.extend(cont.closed(tag, t) for tag, cont in self._continuous.items())
            self._finalized = True
        t = timestamp()
        result.append(Annotation(TAG_INFO, t, end, end, COLOR_INFO, end=t + _GAP))
        return result

    def clear(self) -> None:
        """Drop every annotation and reset the finalized flag."""
        with self._lock:
            self._annotations = []
            self._continuous = {}
            self._finalized = False

    def is_finalized(self) -> bool:
        with self._lock:
            return self._finalized

    def set_finalized(self) -> None:
        with self._lock:
            self._finalized = True

    @property
    def annotations(self) -> List[Annotation]:
        """A copy of the closed annotations recorded so far."""
        with self._lock:
            return list(self._annotations)


class FrameworkInfo:
    """Connection and crash state of a test's servers, and the pending checker."""

    def __init__(self, nservers: int, log: Optional[AnnotationLog] = None) -> None:
        self._lock = threading.Lock()
        self.log = log if log is not None else AnnotationLog()
        self.nservers = nservers
        self._connected = [True] * nservers
        self._crashed = [False] * nservers
        self._checker_start = 0
        self._checker_details = ""

    @property
    def connected(self) -> List[bool]:
        with self._lock:
            return list(self._connected)

    @property
    def crashed(self) -> List[bool]:
        with self._lock:
            return list(self._crashed)

    def info(self, description: str, details: str) -> None:
        self.log.point(TAG_INFO, description, details, COLOR_INFO)

    # -------------------------------------------------------------- checkers

    def checker_begin(self, details: str) -> None:
        """Note that a check starts now."""
        with self._lock:
            self._checker_start = timestamp()
            self._checker_details = details

    def checker_end(self, description: str, details: str, color: str) -> None:
        """Record the outcome of the pending check, as an interval if one began."""
        with self._lock:
            if self._checker_start == 0:
                self.log.point(TAG_CHECKER, description, details, color)
                return
            text = f"{self._checker_details}: {details}"
            self.log.interval(TAG_CHECKER, self._checker_start, description, text, color)
            self._checker_start = 0

    def checker_success(self, description: str, details: str) -> None:
        self.checker_end(description, details, COLOR_SUCCESS)

    def checker_failure(self, description: str, details: str) -> None:
        self.checker_end(description, details, COLOR_FAILURE)

    def checker_neutral(self, description: str, details: str) -> None:
        self.checker_end(description, details, COLOR_NEUTRAL)

    # ---------------------------------------------------------------- faults

    def connection(self, connected: Sequence[bool]) -> None:
        """Record a change in which servers are connected."""
        with self._lock:
            if list(connected) == self._connected:
                return
            n = min(len(connected), len(self._connected))
            self._connected[:n] = list(connected[:n])
            self._annotate_fault()

    def _annotate_fault(self) -> None:
        """Describe the current partitions and crashes. Caller holds the lock."""
        if all(self._connected) and not any(self._crashed):
            self.log.continuous_end(TAG_PARTITION)
            return
        text = "partition = "
        conn: List[int] = []
        crashes: List[int] = []
        for sid, is_connected in enumerate(self._connected):
            if self._crashed[sid]:
                crashes.append(sid)
            elif is_connected:
                conn.append(sid)
            else:
                text += f"[{sid}] "
        if conn:
            text += _format_ints(conn)
        if crashes:
            text += f" / crash = {_format_ints(crashes)}"
        self.log.continuous(TAG_PARTITION, text, text, COLOR_FAULT)

    def two_partitions(self, p1: Sequence[int], p2: Sequence[int]) -> None:
        """Record a split of the servers into two partitions."""
        text = f"partition = {_format_ints(p1)} {_format_ints(p2)}"
        self.log.continuous(TAG_PARTITION, text, text, COLOR_FAULT)

    def clear_failure(self) -> None:
        """Mark every server connected and running."""
        with self._lock:
            self._crashed = [False] * len(self._crashed)
            self._connected = [True] * len(self._connected)
            self.log.continuous_end(TAG_PARTITION)

    def _set_crashed(self, servers: Sequence[int], crashed: bool) -> None:
        with self._lock:
            changed = False
            for sid in servers:
                if self._crashed[sid] != crashed:
                    changed = True
                self._crashed[sid] = crashed
            if changed:
                self._annotate_fault()

    def shutdown(self, servers: Sequence[int]) -> None:
        """Record that the given servers crashed."""
        self._set_crashed(servers, True)

    def shutdown_all(self) -> None:
        with self._lock:
            n = self.nservers
        self.shutdown(range(n))

    def restart(self, servers: Sequence[int]) -> None:
        """Record that the given servers restarted."""
        self._set_crashed(servers, False)

    def restart_all(self) -> None:
        with self._lock:
            n = self.nservers
        self.restart(range(n))