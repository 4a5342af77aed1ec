"""
Per-exam analytics counters.

Events are queued (``analytics-delta``) instead of incrementing on the
request path, so a popular exam does not turn its counter hash into a hot
key during a traffic spike. The worker folds queued deltas into the counter
hash with HINCRBY and marks it dirty; a slower loop mirrors dirty counters
into the durable ``exam_analytics`` row.

Counter keys are private to this module; everything else goes through
:class:`AnalyticsAggregator`.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from examsync.core.cache import CacheGateway
from examsync.core.config import Settings, settings as default_settings
from examsync.core.exceptions import CacheUnavailable, DurableWriteFailure
from examsync.core.metrics import RECONCILE_ITEMS
from examsync.jobs.queue import BatchQueue, now_ms
from examsync.models.schemas import AnalyticsDelta, BatchQueueItem, QueueType
from examsync.services.store import AttemptStore

logger = logging.getLogger(__name__)

DIRTY_SET = "analytics:dirty"
NEEDS_SYNC = "needsSync"


def counter_key(exam_id: str) -> str:
    return f"analytics:exam:{exam_id}:counters"


def _pct(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole > 0 else 0.0


@dataclass
class AnalyticsCounter:
    exam_id: str
    total_attempted: int = 0
    total_completed: int = 0
    pass_count: int = 0
    fail_count: int = 0
    score_total: float = 0.0
    scored_count: int = 0
    needs_sync: bool = False

    @property
    def pass_percentage(self) -> float:
        return _pct(self.pass_count, self.total_completed)

    @property
    def fail_percentage(self) -> float:
        return _pct(self.fail_count, self.total_completed)

    @property
    def average_score(self) -> float:
        return self.score_total / self.scored_count if self.scored_count > 0 else 0.0

    @classmethod
    def from_hash(cls, exam_id: str, data: Dict[str, str]) -> "AnalyticsCounter":
        return cls(
            exam_id=exam_id,
            total_attempted=int(data.get("totalAttempted") or 0),
            total_completed=int(data.get("totalCompleted") or 0),
            pass_count=int(data.get("passCount") or 0),
            fail_count=int(data.get("failCount") or 0),
            score_total=float(data.get("scoreTotal") or 0.0),
            scored_count=int(data.get("scoredCount") or 0),
            needs_sync=data.get(NEEDS_SYNC) == "1",
        )

    def to_hash(self) -> Dict[str, str]:
        return {
            "totalAttempted": str(self.total_attempted),
            "totalCompleted": str(self.total_completed),
            "passCount": str(self.pass_count),
            "failCount": str(self.fail_count),
            "scoreTotal": repr(float(self.score_total)),
            "scoredCount": str(self.scored_count),
        }

    def to_record(self) -> Dict[str, float]:
        """Values for the durable ``exam_analytics`` row."""
        return {
            "total_attempted": self.total_attempted,
            "total_completed": self.total_completed,
            "pass_count": self.pass_count,
            "fail_count": self.fail_count,
            "pass_percentage": round(self.pass_percentage, 2),
            "fail_percentage": round(self.fail_percentage, 2),
            "average_score": round(self.average_score, 2),
        }


@dataclass
class _Totals:
    attempted: int = 0
    completed: int = 0
    passed: int = 0
    failed: int = 0
    score_total: float = 0.0
    scored: int = 0

    def add(self, delta: AnalyticsDelta) -> None:
        self.attempted += delta.attempted
        self.completed += delta.completed
        self.passed += delta.passed
        self.failed += delta.failed
        # a score only counts alongside a completion (or its removal)
        if delta.score is not None and delta.completed != 0:
            self.score_total += delta.score
            self.scored += 1 if delta.completed > 0 else -1


class AnalyticsAggregator:
    def __init__(
        self,
        gateway: CacheGateway,
        queue: BatchQueue,
        store: AttemptStore,
        settings: Settings = default_settings,
    ):
        self.gateway = gateway
        self.queue = queue
        self.store = store
        self.settings = settings

    @property
    def redis(self):
        return self.gateway.redis

    async def record_event(
        self,
        exam_id: str,
        *,
        attempted: int = 0,
        completed: int = 0,
        passed: int = 0,
        failed: int = 0,
        score: Optional[float] = None,
    ) -> bool:
        """Queue a counter delta. Booleans count as 1; negative values undo earlier events."""
        return await self.queue.enqueue(
            AnalyticsDelta(
                exam_id=exam_id,
                attempted=int(attempted),
                completed=int(completed),
                passed=int(passed),
                failed=int(failed),
                score=score,
                timestamp=now_ms(),
            )
        )

    async def get_counter(self, exam_id: str) -> Optional[AnalyticsCounter]:
        try:
            data = await self.gateway.call("hgetall", lambda: self.redis.hgetall(counter_key(exam_id)))
        except CacheUnavailable as e:
            logger.error(f"Analytics counter read failed for exam {exam_id}: {e}")
            return None
        return AnalyticsCounter.from_hash(exam_id, data) if data else None

    # ========== Consumer ==========

    async def consume(self, max_items: Optional[int] = None) -> int:
        """Fold one batch of queued deltas into the cached counters."""
        return await self.queue.process(
            QueueType.ANALYTICS_DELTA,
            self._apply_deltas,
            max_items or self.settings.ANALYTICS_BATCH_SIZE,
        )

    async def _apply_deltas(self, items: List[BatchQueueItem]) -> None:
        by_exam: Dict[str, _Totals] = defaultdict(_Totals)
        for item in items:
            by_exam[item.payload.exam_id].add(item.payload)

        for exam_id, totals in by_exam.items():
            try:
                await self._seed_from_store(exam_id)
                await self._increment(exam_id, totals)
                RECONCILE_ITEMS.labels(loop="analytics-consume", outcome="applied").inc()
            except (CacheUnavailable, DurableWriteFailure, SQLAlchemyError) as e:
                RECONCILE_ITEMS.labels(loop="analytics-consume", outcome="failed").inc()
                logger.error(f"Error processing analytics updates for exam {exam_id}: {e}")

    async def _seed_from_store(self, exam_id: str) -> None:
        """Recreate an evicted counter from the durable row so increments do not restart at zero."""
        key = counter_key(exam_id)
        if await self.gateway.call("exists", lambda: self.redis.exists(key)):
            return
        row = await self.store.get_analytics(exam_id)
        if row is None:
            return
        seed = AnalyticsCounter(
            exam_id=exam_id,
            total_attempted=row.total_attempted,
            total_completed=row.total_completed,
            pass_count=row.pass_count,
            fail_count=row.fail_count,
            score_total=(row.average_score or 0.0) * (row.total_completed or 0),
            scored_count=row.total_completed or 0,
        )

        async def write_seed():
            pipe = self.redis.pipeline(transaction=True)
            for field, value in seed.to_hash().items():
                pipe.hsetnx(key, field, value)
            return await pipe.execute()

        await self.gateway.call("hsetnx", write_seed)

    async def _increment(self, exam_id: str, totals: _Totals) -> None:
        key = counter_key(exam_id)

        async def write():
            pipe = self.redis.pipeline(transaction=True)
            pipe.hincrby(key, "totalAttempted", totals.attempted)
            pipe.hincrby(key, "totalCompleted", totals.completed)
            pipe.hincrby(key, "passCount", totals.passed)
            pipe.hincrby(key, "failCount", totals.failed)
            pipe.hincrbyfloat(key, "scoreTotal", totals.score_total)
            pipe.hincrby(key, "scoredCount", totals.scored)
            pipe.hset(key, NEEDS_SYNC, "1")
            pipe.sadd(DIRTY_SET, exam_id)
            return await pipe.execute()

        await self.gateway.call("hincrby", write)

    # ========== DB sync ==========

    async def flush(self) -> int:
        """Mirror every dirty counter into its durable analytics row.

        The dirty flag is cleared before the counter is read, so a delta that
        lands during the sync sets it again and the next cycle picks it up.
        A failed upsert restores the flag. Returns the number of rows synced.
        """
        try:
            exam_ids = await self.gateway.call("smembers", lambda: self.redis.smembers(DIRTY_SET))
        except CacheUnavailable as e:
            logger.error(f"Cannot list dirty analytics counters: {e}")
            return 0

        synced = 0
        for exam_id in sorted(exam_ids):
            if await self.sync_exam(exam_id):
                synced += 1
        if synced:
            logger.info(f"Synced {synced} analytics records to database")
        return synced

    async def sync_exam(self, exam_id: str) -> bool:
        key = counter_key(exam_id)

        async def claim():
            pipe = self.redis.pipeline(transaction=True)
            pipe.hdel(key, NEEDS_SYNC)
            pipe.srem(DIRTY_SET, exam_id)
            pipe.hgetall(key)
            return await pipe.execute()

        try:
            _, _, data = await self.gateway.call("claim", claim)
        except CacheUnavailable as e:
            logger.error(f"Analytics sync for exam {exam_id} deferred: {e}")
            return False
        if not data:
            return False

        counter = AnalyticsCounter.from_hash(exam_id, data)
        try:
            await self.store.find_one_and_update_analytics(exam_id, counter.to_record(), upsert=True)
        except DurableWriteFailure as e:
            RECONCILE_ITEMS.labels(loop="analytics-sync", outcome="failed").inc()
            logger.error(f"Error syncing analytics for exam {exam_id}: {e}")
            await self._mark_dirty(exam_id)
            return False
        RECONCILE_ITEMS.labels(loop="analytics-sync", outcome="applied").inc()
        return True

    async def _mark_dirty(self, exam_id: str) -> None:
        key = counter_key(exam_id)

        async def mark():
            pipe = self.redis.pipeline(transaction=True)
            pipe.hset(key, NEEDS_SYNC, "1")
            pipe.sadd(DIRTY_SET, exam_id)
            return await pipe.execute()

        try:
            await self.gateway.call("mark-dirty", mark)
        except CacheUnavailable as e:
            logger.error(f"Could not re-flag analytics for exam {exam_id}: {e}")

    # ========== Recalculation ==========

    async def rebuild(self, exam_id: str) -> AnalyticsCounter:
        """Recompute a counter from the durable attempts and queue it for sync."""
        stats = await self.store.aggregate_exam_stats(exam_id)
        counter = AnalyticsCounter(
            exam_id=exam_id,
            total_attempted=stats["total_attempted"],
            total_completed=stats["total_completed"],
            pass_count=stats["pass_count"],
            fail_count=stats["fail_count"],
            score_total=stats["score_total"],
            scored_count=stats["scored_count"],
            needs_sync=True,
        )
        key = counter_key(exam_id)

        async def replace():
            pipe = self.redis.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping={**counter.to_hash(), NEEDS_SYNC: "1"})
            pipe.sadd(DIRTY_SET, exam_id)
            return await pipe.execute()

        try:
            await self.gateway.call("rebuild", replace)
        except CacheUnavailable as e:
            # Cache down: write the recomputed values straight through.
            logger.warning(f"Analytics rebuild for exam {exam_id} bypassing cache: {e}")
            await self.store.find_one_and_update_analytics(exam_id, counter.to_record(), upsert=True)
        return counter
