"""
Deterministic shard routing for hot cache keys.

Per-user and per-bundle entries are spread over N logical shards so a single
popular entity does not funnel every request onto one key, and so bulk
invalidation can run one SCAN per shard in parallel.

The shard of an entity is ``fnv1a_32(entity_id) % shard_count``. FNV-1a is
fixed here (rather than Python's ``hash()``, which is salted per process) so
every process and every restart routes the same id to the same shard.
Changing a keyspace's shard count orphans its existing entries: run
``ExamCache.invalidate_keyspace`` across the old shard count first.
"""
from dataclasses import dataclass
from typing import Iterator, Union

FNV32_OFFSET_BASIS = 0x811C9DC5
FNV32_PRIME = 0x01000193

EntityId = Union[str, int]


def fnv1a_32(data: bytes) -> int:
    h = FNV32_OFFSET_BASIS
    for byte in data:
        h ^= byte
        h = (h * FNV32_PRIME) & 0xFFFFFFFF
    return h


def shard_for(entity_id: EntityId, shard_count: int) -> int:
    """Map an entity id onto ``[0, shard_count)``."""
    if shard_count < 1:
        raise ValueError(f"shard_count must be >= 1, got {shard_count}")
    return fnv1a_32(str(entity_id).encode("utf-8")) % shard_count


@dataclass(frozen=True)
class ShardedKeyspace:
    """A cache namespace whose keys look like ``<namespace>:<shardId>:<entityId>[:...]``."""

    namespace: str
    shard_count: int

    def __post_init__(self):
        if self.shard_count < 1:
            raise ValueError(f"shard_count must be >= 1, got {self.shard_count}")

    def shard(self, entity_id: EntityId) -> int:
        return shard_for(entity_id, self.shard_count)

    def key(self, entity_id: EntityId, *parts: object) -> str:
        """Key routed by ``entity_id``; extra parts are appended after it."""
        return self.routed_key(entity_id, entity_id, *parts)

    def routed_key(self, route_id: EntityId, *parts: object) -> str:
        """Key routed by ``route_id`` whose body after the shard is ``parts``.

        Used where the routing entity is not the first path segment, e.g.
        ``bundle:<shard(userId)>:<bundleId>:<userId>``.
        """
        return ":".join([self.namespace, str(self.shard(route_id)), *map(str, parts)])

    def shard_pattern(self, shard_id: int, tail: str = "*") -> str:
        return f"{self.namespace}:{shard_id}:{tail}"

    def patterns(self, tail: str = "*") -> Iterator[str]:
        """One match pattern per shard, e.g. ``bundle:0:<id>:*`` ... ``bundle:7:<id>:*``."""
        for shard_id in range(self.shard_count):
            yield self.shard_pattern(shard_id, tail)
