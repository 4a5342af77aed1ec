"""
Batch handlers that apply queued changes to the durable store.

Each handler takes one drained batch. Failures are isolated per attempt: a
missing attempt, an attempt that is no longer in progress, or a failed
durable write is logged and counted, and the rest of the batch still
applies. Everything here is safe to run twice on the same items.
"""
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from examsync.core.config import Settings, settings as default_settings
from examsync.core.exceptions import AttemptNotFound, ConditionalUpdateSkipped, DurableWriteFailure
from examsync.core.metrics import RECONCILE_ITEMS
from examsync.jobs.queue import BatchQueue
from examsync.models.orm import AttemptStatus, utcnow
from examsync.models.schemas import AnswerInput, BatchQueueItem, QueueType, TimerSync
from examsync.services.attempts import AttemptSyncService
from examsync.services.store import AttemptStore

logger = logging.getLogger(__name__)


def _count(loop: str, outcome: str, n: int = 1) -> None:
    if n:
        RECONCILE_ITEMS.labels(loop=loop, outcome=outcome).inc(n)


class Reconciler:
    def __init__(
        self,
        queue: BatchQueue,
        store: AttemptStore,
        attempts: AttemptSyncService,
        settings: Settings = default_settings,
    ):
        self.queue = queue
        self.store = store
        self.attempts = attempts
        self.settings = settings
        # (updated_at, id) of the last stale attempt scanned; None restarts from the oldest
        self._stale_cursor: Optional[Tuple[datetime, str]] = None

    # ========== Answer flush ==========

    async def flush_answers(self, max_items: Optional[int] = None) -> int:
        return await self.queue.process(
            QueueType.ANSWER_UPDATE,
            self.apply_answer_updates,
            max_items or self.settings.ANSWER_BATCH_SIZE,
        )

    async def apply_answer_updates(self, items: List[BatchQueueItem]) -> None:
        # Items arrive oldest first, so a later answer to the same question wins.
        by_attempt: Dict[str, Dict[str, AnswerInput]] = OrderedDict()
        for item in items:
            answers = by_attempt.setdefault(item.payload.attempt_id, OrderedDict())
            for answer in item.payload.answers:
                answers[answer.question_id] = answer

        for attempt_id, answers in by_attempt.items():
            try:
                attempt = await self.store.upsert_answers(attempt_id, answers.values())
            except (AttemptNotFound, ConditionalUpdateSkipped) as e:
                _count("answer-flush", "skipped")
                logger.warning(f"Skipping answer update: {e}")
                continue
            except DurableWriteFailure as e:
                _count("answer-flush", "failed")
                logger.error(f"Error updating answers for attempt {attempt_id}: {e}")
                continue

            await self.attempts.refresh_answer_cache(attempt_id, attempt.answer_map())
            _count("answer-flush", "applied")

        logger.debug(f"Processed answer updates for {len(by_attempt)} attempts")

    # ========== Timer sync ==========

    async def sync_timers(self, max_items: Optional[int] = None) -> int:
        return await self.queue.process(
            QueueType.TIMER_SYNC,
            self.apply_timer_syncs,
            max_items or self.settings.TIMER_BATCH_SIZE,
        )

    async def apply_timer_syncs(self, items: List[BatchQueueItem]) -> None:
        latest: Dict[str, TimerSync] = {}
        for item in items:
            current = latest.get(item.payload.attempt_id)
            if current is None or item.payload.timestamp >= current.timestamp:
                latest[item.payload.attempt_id] = item.payload
        _count("timer-sync", "superseded", len(items) - len(latest))

        for attempt_id, sync in latest.items():
            remaining = max(0, sync.time_remaining)
            try:
                updated = await self.store.update_one(
                    attempt_id,
                    {"time_remaining": remaining, "last_synced_at": utcnow()},
                    status=AttemptStatus.IN_PROGRESS,
                )
            except DurableWriteFailure as e:
                _count("timer-sync", "failed")
                logger.error(f"Error syncing timer for attempt {attempt_id}: {e}")
                continue

            if not updated:
                _count("timer-sync", "skipped")
                logger.debug(f"Timer sync skipped for attempt {attempt_id}: not in progress")
                continue
            _count("timer-sync", "applied")
            if remaining <= 0:
                await self.attempts.queue_timed_out(attempt_id)

    # ========== Timed-out attempts ==========

    async def finalize_timed_out(self, max_items: Optional[int] = None) -> int:
        return await self.queue.process(
            QueueType.TIMED_OUT,
            self.apply_timed_out,
            max_items or self.settings.TIMED_OUT_BATCH_SIZE,
        )

    async def apply_timed_out(self, items: List[BatchQueueItem]) -> None:
        attempt_ids = list(OrderedDict.fromkeys(item.payload.attempt_id for item in items))
        for attempt_id in attempt_ids:
            try:
                await self.timeout_attempt(attempt_id)
            except DurableWriteFailure as e:
                _count("timed-out", "failed")
                logger.error(f"Error processing timed out attempt {attempt_id}: {e}")

    async def timeout_attempt(self, attempt_id: str) -> bool:
        """Move an in-progress attempt to ``timed-out``.

        A no-op when the attempt already reached a terminal state (for
        example the user submitted just before the timer ran out).
        """
        updated = await self.store.update_one(
            attempt_id,
            {
                "status": AttemptStatus.TIMED_OUT.value,
                "time_remaining": 0,
                "end_time": utcnow(),
                "last_synced_at": utcnow(),
            },
            status=AttemptStatus.IN_PROGRESS,
        )
        if not updated:
            _count("timed-out", "skipped")
            logger.info(f"Attempt {attempt_id} not in progress, timeout ignored")
            return False

        await self.attempts.set_cached_status(attempt_id, AttemptStatus.TIMED_OUT.value)
        await self.attempts.mark_timer_finished(attempt_id)
        _count("timed-out", "applied")
        logger.info(f"Attempt {attempt_id} marked as timed out")
        return True

    # ========== Stale attempts ==========

    async def scan_stale_attempts(self, limit: Optional[int] = None) -> int:
        """Reconcile in-progress attempts whose durable row has not moved recently.

        The cached timer is authoritative while it exists: a disagreeing
        durable value is corrected, and a cached value of 0 queues a
        timeout. Each pass picks up where the previous one stopped, so
        attempts beyond ``limit`` are reached on later passes even while
        older ones stay stale. Returns the number of attempts corrected or
        timed out.
        """
        limit = limit or self.settings.STALE_SCAN_LIMIT
        cutoff = utcnow() - timedelta(seconds=self.settings.STALE_AFTER_SECONDS)
        try:
            stale = await self.store.find_stale_attempts(cutoff, limit, after=self._stale_cursor)
        except SQLAlchemyError as e:
            logger.error(f"Stale attempt query failed: {e}")
            return 0
        if len(stale) < limit:
            self._stale_cursor = None
        else:
            self._stale_cursor = (stale[-1].updated_at, stale[-1].id)

        changed = 0
        for attempt_id, durable_remaining, _ in stale:
            cached = await self.attempts.cached_time_remaining(attempt_id)
            if cached is None:
                continue
            if cached <= 0:
                await self.attempts.queue_timed_out(attempt_id)
                changed += 1
                continue
            if cached == durable_remaining:
                continue
            try:
                if await self.store.update_one(
                    attempt_id,
                    {"time_remaining": cached, "last_synced_at": utcnow()},
                    status=AttemptStatus.IN_PROGRESS,
                ):
                    changed += 1
                    _count("stale-scan", "applied")
            except DurableWriteFailure as e:
                _count("stale-scan", "failed")
                logger.error(f"Error correcting timer for attempt {attempt_id}: {e}")

        if changed:
            logger.info(f"Stale scan reconciled {changed} of {len(stale)} attempts")
        return changed
