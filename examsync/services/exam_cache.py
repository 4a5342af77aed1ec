"""
Per-feature read-through caches.

Hot per-user entries live in sharded keyspaces (see ``core.sharding``); bulk
invalidation clears each shard with its own incremental SCAN, concurrently.
"""
import asyncio
import logging
from typing import Any, Dict, Iterable, List, Optional

from examsync.core.cache import CacheGateway
from examsync.core.config import Settings, settings as default_settings
from examsync.core.sharding import ShardedKeyspace

logger = logging.getLogger(__name__)


class ExamCache:
    def __init__(self, gateway: CacheGateway, settings: Settings = default_settings):
        self.gateway = gateway
        self.settings = settings
        self.categorized = ShardedKeyspace("categorized", settings.CATEGORIZED_SHARDS)
        self.access = ShardedKeyspace("access", settings.ACCESS_SHARDS)
        self.bundles = ShardedKeyspace("bundle", settings.BUNDLE_SHARDS)
        self.attempts = ShardedKeyspace("attempts", settings.ATTEMPTS_SHARDS)

    async def _clear_all(self, patterns: Iterable[str], count: Optional[int] = None) -> int:
        """Clear several patterns concurrently; a failing shard does not stop the others."""
        results = await asyncio.gather(
            *(self.gateway.clear_pattern(p, count) for p in patterns),
            return_exceptions=True,
        )
        total = 0
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Shard clear failed: {result}")
            else:
                total += result
        return total

    async def invalidate_keyspace(self, keyspace: ShardedKeyspace) -> int:
        """Drop every entry of a keyspace. Run this before changing its shard count."""
        return await self._clear_all(keyspace.patterns(), count=200)

    # ========== Categorized exams (per user) ==========

    async def get_categorized_exams(self, user_id: str) -> Optional[Any]:
        return await self.gateway.get(self.categorized.key(user_id), default=None)

    async def set_categorized_exams(self, user_id: str, data: Any) -> bool:
        return await self.gateway.set(self.categorized.key(user_id), data, ttl=self.settings.CATEGORIZED_TTL)

    async def clear_categorized_exams(self, user_id: str) -> bool:
        return await self.gateway.delete(self.categorized.key(user_id))

    async def clear_all_categorized(self) -> int:
        return await self.invalidate_keyspace(self.categorized)

    # ========== Bundles (sharded by user) ==========

    def bundle_key(self, bundle_id: str, user_id: str) -> str:
        return self.bundles.routed_key(user_id, bundle_id, user_id)

    async def get_bundle(self, bundle_id: str, user_id: str) -> Optional[Any]:
        return await self.gateway.get(self.bundle_key(bundle_id, user_id), default=None)

    async def set_bundle(self, bundle_id: str, user_id: str, data: Any) -> bool:
        return await self.gateway.set(self.bundle_key(bundle_id, user_id), data, ttl=self.settings.BUNDLE_TTL)

    async def clear_bundle(self, bundle_id: str) -> int:
        """Drop one bundle's entries for every user, one SCAN per shard."""
        return await self._clear_all(self.bundles.patterns(f"{bundle_id}:*"))

    async def clear_all_bundles(self) -> int:
        return await self.invalidate_keyspace(self.bundles)

    # ========== Exam access (per user) ==========

    async def get_user_access(self, user_id: str) -> Optional[Dict[str, bool]]:
        return await self.gateway.get(self.access.key(user_id), default=None)

    async def set_user_access(self, user_id: str, access_map: Dict[str, bool]) -> bool:
        return await self.gateway.set(self.access.key(user_id), access_map, ttl=self.settings.ACCESS_TTL)

    async def clear_user_access(self, user_id: str) -> bool:
        return await self.gateway.delete(self.access.key(user_id))

    async def clear_all_access(self) -> int:
        return await self.invalidate_keyspace(self.access)

    async def batch_check_access(self, user_id: str, exam_ids: List[str]) -> Optional[Dict[str, bool]]:
        """Per-exam access from the cached map, or None if the caller must ask the store."""
        access_map = await self.get_user_access(user_id)
        if not isinstance(access_map, dict):
            return None
        return {exam_id: bool(access_map.get(exam_id)) for exam_id in exam_ids}

    # ========== Attempt lists (per user and exam) ==========

    def attempts_key(self, user_id: str, exam_id: str) -> str:
        return self.attempts.routed_key(user_id, "user", user_id, "exam", exam_id)

    async def get_user_attempts(self, user_id: str, exam_id: str) -> Optional[Any]:
        return await self.gateway.get(self.attempts_key(user_id, exam_id), default=None)

    async def set_user_attempts(self, user_id: str, exam_id: str, data: Any) -> bool:
        return await self.gateway.set(self.attempts_key(user_id, exam_id), data, ttl=self.settings.ATTEMPTS_LIST_TTL)

    async def clear_user_attempts(self, user_id: str) -> int:
        pattern = self.attempts.shard_pattern(self.attempts.shard(user_id), f"user:{user_id}:*")
        return await self.gateway.clear_pattern(pattern)

    # ========== Unsharded categories ==========

    async def get_exam_rules(self, exam_id: str) -> Optional[Any]:
        return await self.gateway.get(f"rules:{exam_id}", default=None)

    async def set_exam_rules(self, exam_id: str, rules: Any) -> bool:
        return await self.gateway.set(f"rules:{exam_id}", rules, ttl=self.settings.RULES_TTL)

    async def get_question(self, question_id: str) -> Optional[Any]:
        return await self.gateway.get(f"q:{question_id}", default=None)

    async def set_question(self, question_id: str, question: Any) -> bool:
        return await self.gateway.set(f"q:{question_id}", question, ttl=self.settings.QUESTION_TTL)

    async def get_dashboard(self, name: str) -> Optional[Any]:
        return await self.gateway.get(f"dashboard:{name}", default=None)

    async def set_dashboard(self, name: str, data: Any) -> bool:
        return await self.gateway.set(f"dashboard:{name}", data, ttl=self.settings.DASHBOARD_TTL)

    async def clear_dashboards(self) -> int:
        return await self.gateway.clear_pattern("dashboard:*")
