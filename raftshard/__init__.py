"""Raft peers, shard configurations, persistence and test-run annotations for sharded key/value services."""

__version__ = "0.1.0"
__all__ = ["annotation", "persister", "raft", "raftapi", "shardcfg", "shardrpc"]