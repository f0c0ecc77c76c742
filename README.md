# raftshard

Building blocks for a replicated, sharded key/value service:

- `raftshard.raft`: a Raft peer (`Raft`, created with `make`) that elects
  leaders, replicates a log and delivers committed commands as `ApplyMsg`
  values to a queue.
- `raftshard.raftapi`: the `RaftPeer` protocol and the `ApplyMsg` record
  that peers hand to the service above them.
- `raftshard.persister`: `Persister`, which keeps a peer's Raft state and
  snapshot together so the two are always saved in one step.
- `raftshard.shardcfg`: `ShardConfig`, an assignment of shards to replica
  groups, together with `key_to_shard` and join/leave rebalancing.
- `raftshard.shardrpc`: argument and reply records for freezing,
  installing and deleting shards.
- `raftshard.annotation`: `AnnotationLog` and `FrameworkInfo`, which record
  timestamped events, checker results and network faults during a test run.

The package has no dependencies outside the standard library.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Shard configurations

```python
from raftshard.shardcfg import ShardConfig, key_to_shard

cfg = ShardConfig()
cfg.join_balance({1: ["x", "y", "z"]})
cfg.join_balance({2: ["a", "b", "c"]})
cfg.check_config([1, 2])           # raises ConfigError if not as expected

gid, servers = cfg.gid_servers(key_to_shard("some-key"))  # servers is None for an unknown group

text = cfg.to_string()
same = ShardConfig.from_string(text)

cfg.leave_balance([1])
assert not cfg.is_member(1)
```

There are 12 shards, and `key_to_shard` picks one with a 32-bit FNV-1a hash
of the key. `join` and `join_balance` return `False` when a group is already
present, and raise `ConfigError` if a server would belong to two groups;
`leave` and `leave_balance` return `False` when a group is absent. A
successful join or leave increments `num`. Rebalancing first gives every
unassigned shard to the least-loaded group, then moves shards one at a time
from the most-loaded to the least-loaded group until every group is within
one shard of every other. With no groups left, every shard goes back to
group 0. `from_string` raises `ConfigError` on malformed text.

## Persisting Raft state

```python
from raftshard.persister import Persister

p = Persister()
p.save(b"raft-state", b"snapshot")
assert p.read_raft_state() == b"raft-state"
assert p.snapshot_size() == 8
fresh = p.copy()
```

## Raft peers

`make(peers, me, persister, apply_queue)` builds a peer, restores any term,
vote and log held by the persister, and starts its background loop in a
daemon thread. `peers` is a list of endpoints, one per server, each with a
`call(method, args)` that invokes `request_vote` or `append_entries` on the
peer at the other end and returns the reply, or `None` when the request was
lost. `apply_queue` is anything with a `put` method, such as `queue.Queue`;
committed commands arrive there as `ApplyMsg` values.

```python
index, term, is_leader = peer.start("command")
term, is_leader = peer.get_state()
peer.kill()
```

A call to `start` on a peer that is not the leader returns `(-1, -1, False)`.

## Annotations

```python
from raftshard.annotation import FrameworkInfo, COLOR_INFO

info = FrameworkInfo(3)
info.checker_begin("checking for a single leader")
info.checker_success("leader found", "leader = 0")
info.shutdown([1])
info.restart_all()
annotations = info.log.finalize("test passed")
```

`finalize` closes any open continuous annotations and returns every
annotation, followed by a closing note.

## What the package does not do

- It has no network: the endpoints given to `make` must be supplied by the
  caller, and there is no simulated network with dropped or delayed
  messages, and no test harness that starts, partitions or restarts peers.
- `Raft.snapshot` only checks that the index lies within the log; the log is
  never compacted and no snapshot is sent to lagging peers.
- There is no key/value server, clerk or shard controller; `shardrpc` holds
  only the records such components would exchange.
- Annotations are kept in memory; nothing is written to a visualisation file.