"""Argument and reply records for shard movement between groups."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class FreezeShardArgs:
    """Ask a group to stop serving a shard as of configuration num."""

    shard: int = 0
    num: int = 0


@dataclass
class FreezeShardReply:
    """The frozen shard's state, the config number and an error string."""

    state: bytes = b""
    num: int = 0
    err: str = ""


@dataclass
class InstallShardArgs:
    """Ask a group to install state for a shard as of configuration num."""

    shard: int = 0
    state: bytes = b""
    num: int = 0


@dataclass
class InstallShardReply:
    err: str = ""


@dataclass
class DeleteShardArgs:
    """Ask a group to delete a shard as of configuration num."""

    shard: int = 0
    num: int = 0


@dataclass
class DeleteShardReply:
    err: str = ""