"""Shard configurations: which replica group serves which shard."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

NSHARDS = 12
NUM_FIRST = 1
GID1 = 1

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193


class ConfigError(Exception):
    """Raised when a configuration is malformed or an operation on it is invalid."""


def key_to_shard(key: str) -> int:
    """Return the shard a key belongs to (FNV-1a 32-bit hash modulo NSHARDS)."""
    h = _FNV32_OFFSET
    for byte in key.encode("utf-8"):
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h % NSHARDS


@dataclass
class ShardConfig:
    """An assignment of shards to groups, plus the servers of each group."""

    num: int = 0
    shards: List[int] = field(default_factory=lambda: [0] * NSHARDS)
    groups: Dict[int, List[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.shards) != NSHARDS:
            raise ConfigError(f"expected {NSHARDS} shards, got {len(self.shards)}")

    def __str__(self) -> str:
        return self.to_string()

    def to_string(self) -> str:
        """Serialise to compact JSON with map keys sorted as strings."""
        groups = {str(gid): list(srvs) for gid, srvs in self.groups.items()}
        ordered = dict(sorted(groups.items()))
        doc = {"Num": self.num, "Shards": list(self.shards), "Groups": ordered}
        return json.dumps(doc, separators=(",", ":"))

    @classmethod
    def from_string(cls, text: str) -> "ShardConfig":
        """Parse a configuration produced by to_string."""
        try:
            doc = json.loads(text)
            if not isinstance(doc, dict):
                raise ValueError("configuration is not a JSON object")
            num = int(doc.get("Num", 0))
            shards = [int(g) for g in doc.get("Shards") or [0] * NSHARDS]
            raw_groups = doc.get("Groups") or {}
            groups = {int(gid): [str(s) for s in srvs] for gid, srvs in raw_groups.items()}
        except (ValueError, TypeError, AttributeError) as exc:
            raise ConfigError(f"unmarshal error: {exc}") from exc
        return cls(num=num, shards=shards, groups=groups)

    def copy(self) -> "ShardConfig":
        """Return a deep copy."""
        return ShardConfig(
            num=self.num,
            shards=list(self.shards),
            groups={gid: list(srvs) for gid, srvs in self.groups.items()},
        )

    def _analyze(self) -> Tuple[int, int, int, int]:
        """Return (most-loaded gid, its count, least-loaded gid, its count)."""
        counts: Dict[int, int] = {}
        for g in self.shards:
            counts[g] = counts.get(g, 0) + 1
        most_n, most_g = -1, -1
        least_n, least_g = 257, -1
        for g in sorted(self.groups):
            n = counts.get(g, 0)
            if n < least_n:
                least_n, least_g = n, g
            if n > most_n:
                most_n, most_g = n, g
        return most_g, most_n, least_g, least_n

    def rebalance(self) -> None:
        """Balance the assignment of shards to groups in place."""
        if not self.groups:
            self.shards = [0] * NSHARDS
            return

        for s, g in enumerate(self.shards):
            if g not in self.groups:
                self.shards[s] = self._analyze()[2]

        while True:
            most_g, most_n, least_g, least_n = self._analyze()
            if most_n < least_n + 2:
                break
            self.shards[self.shards.index(most_g)] = least_g

    def join(self, servers: Mapping[int, List[str]]) -> bool:
        """Add new groups; return False if one of them is already present."""
        changed = False
        for gid, srvs in servers.items():
            if gid in self.groups:
                logger.info("re-Join %s", gid)
                return False
            for xgid, xservers in self.groups.items():
                for s in xservers:
                    if s in srvs:
                        raise ConfigError(
                            f"Join({gid}) puts server {s} in groups {xgid} and {gid}"
                        )
            self.groups[gid] = list(srvs)
            changed = True
        if not changed:
            raise ConfigError("Join but no change")
        self.num += 1
        return True

    def leave(self, gids: Iterable[int]) -> bool:
        """Remove groups; return False if one of them is not present."""
        changed = False
        for gid in gids:
            if gid not in self.groups:
                logger.info("Leave(%s) but not in config", gid)
                return False
            del self.groups[gid]
            changed = True
        if not changed:
            raise ConfigError("Leave but no change")
        self.num += 1
        return True

    def join_balance(self, servers: Mapping[int, List[str]]) -> bool:
        """Join the groups and rebalance."""
        if not self.join(servers):
            return False
        self.rebalance()
        return True

    def leave_balance(self, gids: Iterable[int]) -> bool:
        """Remove the groups and rebalance."""
        if not self.leave(gids):
            return False
        self.rebalance()
        return True

    def gid_servers(self, shard: int) -> Tuple[int, Optional[List[str]]]:
        """Return the group serving a shard and its servers (None if unknown)."""
        gid = self.shards[shard]
        return gid, self.groups.get(gid)

    def is_member(self, gid: int) -> bool:
        """True if the group serves at least one shard."""
        return gid in self.shards

    def check_config(self, groups: Iterable[int]) -> None:
        """Raise ConfigError unless the config holds exactly these groups, balanced."""
        groups = list(groups)
        if len(self.groups) != len(groups):
            raise ConfigError(f"wanted {len(groups)} groups, got {len(self.groups)}")
        for g in groups:
            if g not in self.groups:
                raise ConfigError(f"missing group {g}")
        if groups:
            for s, g in enumerate(self.shards):
                if g not in self.groups:
                    raise ConfigError(f"shard {s} -> invalid group {g}")
        counts: Dict[int, int] = {}
        for g in self.shards:
            counts[g] = counts.get(g, 0) + 1
        low, high = 257, 0
        for g in self.groups:
            n = counts.get(g, 0)
            high = max(high, n)
            low = min(low, n)
        if high > low + 1:
            raise ConfigError(f"max {high} too much larger than min {low}")