"""
Write-behind entry points used by the request-serving tier.

An answer submission is written to a short-TTL cache entry (so the same user
reads their own write immediately) and queued for the reconciliation worker;
the request never waits for the durable write. Timer state follows the same
pattern via ``timer:<attemptId>`` and the ``timer-sync`` queue.
"""
import logging
import math
import time
from typing import Any, Dict, Iterable, Optional

from examsync.core.cache import MISS, CacheGateway
from examsync.core.config import Settings, settings as default_settings
from examsync.jobs.queue import BatchQueue, now_ms
from examsync.models.orm import AttemptStatus
from examsync.models.schemas import AnswerInput, AnswerUpdate, TimedOut, TimerSync
from examsync.services.store import AttemptStore

logger = logging.getLogger(__name__)


def answers_key(attempt_id: str) -> str:
    return f"attempt:{attempt_id}:answers"


def timer_key(attempt_id: str) -> str:
    return f"timer:{attempt_id}"


def status_key(attempt_id: str) -> str:
    return f"status:{attempt_id}"


class AttemptSyncService:
    def __init__(
        self,
        gateway: CacheGateway,
        queue: BatchQueue,
        store: Optional[AttemptStore] = None,
        settings: Settings = default_settings,
    ):
        self.gateway = gateway
        self.queue = queue
        self.store = store
        self.settings = settings

    # ========== Answers ==========

    async def save_answers(self, attempt_id: str, answers: Iterable[Dict[str, Any]]) -> bool:
        """Cache the answers for read-your-write and queue them for persistence.

        Returns whether the queue write (the durable intent) succeeded; the
        cache write is best effort.
        """
        parsed = [AnswerInput.model_validate(a) for a in answers]
        if not parsed:
            return True

        queued = await self.queue.enqueue(
            AnswerUpdate(attempt_id=attempt_id, answers=parsed, timestamp=now_ms())
        )

        current = await self.gateway.get(answers_key(attempt_id), default=None)
        if not isinstance(current, dict):
            current = {}
        for answer in parsed:
            current[answer.question_id] = answer.model_dump(by_alias=True)
        await self.gateway.set(answers_key(attempt_id), current, ttl=self.settings.ANSWER_CACHE_TTL)
        return queued

    async def get_cached_answers(self, attempt_id: str) -> Optional[Dict[str, Any]]:
        return await self.gateway.get(answers_key(attempt_id), default=None)

    async def refresh_answer_cache(self, attempt_id: str, answers: Dict[str, Any]) -> bool:
        return await self.gateway.set(answers_key(attempt_id), answers, ttl=self.settings.ANSWER_CACHE_TTL)

    # ========== Timer ==========

    async def start_timer(self, attempt_id: str, time_remaining: int) -> bool:
        """Store the timer as an absolute end time so every server computes the same remaining time."""
        now = now_ms()
        return await self.gateway.set(
            timer_key(attempt_id),
            {
                "timeRemaining": int(time_remaining),
                "absoluteEndTime": now + int(time_remaining) * 1000,
                "lastSyncTime": now,
            },
            ttl=max(self.settings.TIMER_TTL, int(time_remaining) + 300),
        )

    async def update_time_remaining(self, attempt_id: str, user_id: Optional[str], time_remaining: int) -> bool:
        """Refresh the cached timer and queue a durable sync."""
        await self.start_timer(attempt_id, time_remaining)
        return await self.queue.enqueue(
            TimerSync(
                attempt_id=attempt_id,
                time_remaining=int(time_remaining),
                user_id=user_id,
                timestamp=now_ms(),
            )
        )

    async def cached_time_remaining(self, attempt_id: str) -> Optional[int]:
        """Remaining seconds according to the cache only; None when nothing is cached."""
        timer = await self.gateway.get(timer_key(attempt_id))
        if timer is MISS or not isinstance(timer, dict):
            return None
        if timer.get("completed"):
            return 0
        end_time = timer.get("absoluteEndTime")
        if isinstance(end_time, (int, float)) and not isinstance(end_time, bool):
            return max(0, math.floor((end_time - time.time() * 1000) / 1000))
        remaining = timer.get("timeRemaining")
        return int(remaining) if isinstance(remaining, (int, float)) else None

    async def get_current_time_remaining(self, attempt_id: str) -> Optional[int]:
        """Remaining seconds from the cache, falling back to the durable record.

        When the timer has run out a ``timed-out`` item is queued so the
        worker finalizes the attempt. An attempt that already finished
        reads as 0 without queueing anything.
        """
        remaining = await self.cached_time_remaining(attempt_id)
        if remaining is None and self.store is not None:
            attempt = await self.store.find_by_id(attempt_id)
            if attempt is not None:
                if AttemptStatus(attempt.status).is_terminal:
                    return 0
                remaining = attempt.time_remaining
        if remaining is not None and remaining <= 0:
            await self.queue_timed_out(attempt_id)
        return remaining

    async def mark_timer_finished(self, attempt_id: str) -> bool:
        now = now_ms()
        return await self.gateway.set(
            timer_key(attempt_id),
            {"timeRemaining": 0, "absoluteEndTime": now, "lastSyncTime": now, "completed": True},
            ttl=300,
        )

    async def queue_timed_out(self, attempt_id: str) -> bool:
        return await self.queue.enqueue(TimedOut(attempt_id=attempt_id, timestamp=now_ms()))

    # ========== Status ==========

    async def get_cached_status(self, attempt_id: str) -> Optional[str]:
        return await self.gateway.get(status_key(attempt_id), default=None)

    async def set_cached_status(self, attempt_id: str, status: str) -> bool:
        return await self.gateway.set(status_key(attempt_id), status, ttl=self.settings.STATUS_TTL)
