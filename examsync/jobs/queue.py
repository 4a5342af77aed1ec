"""
Capped FIFO batch queues on Redis lists.

Producers LPUSH onto the head of ``queue:<name>``. Consumers claim the oldest
items from the tail by moving them onto ``queue:<name>:processing`` and
remove them from there once handled. Each work type has its own list so a
stalled consumer only backs up its own queue.

A claim is atomic, so concurrent consumers never handle the same item.
Delivery is at-least-once: items claimed by a consumer that dies before
``ack`` stay on the processing list and :meth:`BatchQueue.recover` puts
them back. When a queue reaches its cap the oldest unclaimed items are
dropped (load shedding) instead of letting the list grow without bound.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from examsync.core.cache import CacheGateway
from examsync.core.config import Settings, settings as default_settings
from examsync.core.exceptions import CacheUnavailable
from examsync.core.metrics import QUEUE_DRAINED, QUEUE_ENQUEUED, QUEUE_SHED
from examsync.models.schemas import BatchQueueItem, QueuePayload, QueueType

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def make_item_id(queue_type: QueueType, ts: Optional[int] = None) -> str:
    """``<type>:<epochMillis>:<random>``"""
    return f"{queue_type.value}:{ts if ts is not None else now_ms()}:{secrets.token_hex(4)}"


@dataclass
class Batch:
    """Entries claimed from the tail of a queue, oldest first."""

    queue_type: QueueType
    items: List[BatchQueueItem] = field(default_factory=list)
    raws: List[str] = field(default_factory=list)  # claimed entries, including ones that failed to parse

    @property
    def raw_count(self) -> int:
        return len(self.raws)

    def __len__(self) -> int:
        return len(self.items)


class BatchQueue:
    def __init__(self, gateway: CacheGateway, max_length: int = 10000):
        if max_length < 1:
            raise ValueError("max_length must be >= 1")
        self.gateway = gateway
        self.max_length = max_length

    @classmethod
    def from_settings(cls, gateway: CacheGateway, settings: Settings = default_settings) -> "BatchQueue":
        return cls(gateway, max_length=settings.QUEUE_MAX_LENGTH)

    @property
    def redis(self):
        return self.gateway.redis

    async def enqueue(self, payload: QueuePayload) -> bool:
        """Push a payload onto the queue for its type. Returns False if the cache is down."""
        queue_type = QueueType(payload.type)
        ts = now_ms()
        item = BatchQueueItem(id=make_item_id(queue_type, ts), enqueued_at=ts, payload=payload)
        raw = item.model_dump_json(by_alias=True)

        async def push():
            pipe = self.redis.pipeline(transaction=True)
            pipe.lpush(queue_type.key, raw)
            pipe.ltrim(queue_type.key, 0, self.max_length - 1)
            return await pipe.execute()

        try:
            length, _ = await self.gateway.call("enqueue", push)
        except CacheUnavailable as e:
            logger.error(f"Failed to add item to batch queue ({queue_type.queue_name}): {e}")
            return False

        QUEUE_ENQUEUED.labels(queue=queue_type.queue_name).inc()
        if length > self.max_length:
            shed = length - self.max_length
            QUEUE_SHED.labels(queue=queue_type.queue_name).inc(shed)
            logger.warning(
                f"Queue {queue_type.key} over capacity ({self.max_length}), "
                f"dropped {shed} oldest item(s)"
            )
        return True

    async def drain(self, queue_type: QueueType, max_items: int) -> Batch:
        """Claim up to ``max_items`` of the oldest entries.

        Each entry is moved from the tail of the queue onto the head of its
        processing list in one MULTI block, so concurrent consumers never
        claim the same entry and the length cap cannot trim a claimed one.
        Entries that fail to parse are logged and skipped; they stay in
        ``raws`` so :meth:`ack` removes them too.
        """
        batch = Batch(queue_type)
        if max_items < 1:
            return batch

        async def claim():
            pipe = self.redis.pipeline(transaction=True)
            for _ in range(max_items):
                pipe.lmove(queue_type.key, queue_type.processing_key, "RIGHT", "LEFT")
            return await pipe.execute()

        try:
            moved = await self.gateway.call("drain", claim)
        except CacheUnavailable as e:
            logger.error(f"Failed to read batch queue ({queue_type.queue_name}): {e}")
            return batch

        # LMOVE returns None once the queue is empty
        batch.raws = [raw for raw in moved if raw is not None]
        for raw in batch.raws:
            try:
                item = BatchQueueItem.model_validate_json(raw)
            except ValidationError as e:
                logger.error(f"Failed to parse batch item on {queue_type.key}: {e.errors()[:1]}")
                continue
            if item.type is not queue_type:
                logger.error(f"Dropping {item.type.value} item {item.id} found on {queue_type.key}")
                continue
            batch.items.append(item)
        return batch

    async def ack(self, batch: Batch) -> bool:
        """Remove the entries of ``batch`` from the processing list."""
        if not batch.raws:
            return True
        key = batch.queue_type.processing_key

        async def remove():
            pipe = self.redis.pipeline(transaction=True)
            for raw in batch.raws:
                pipe.lrem(key, 1, raw)
            return await pipe.execute()

        try:
            await self.gateway.call("ack", remove)
        except CacheUnavailable as e:
            logger.error(f"Failed to acknowledge batch ({batch.queue_type.queue_name}): {e}")
            return False
        QUEUE_DRAINED.labels(queue=batch.queue_type.queue_name).inc(batch.raw_count)
        return True

    async def recover(self, queue_type: QueueType) -> int:
        """Move unacknowledged entries back onto the tail of the queue.

        Run at worker startup: entries claimed by a consumer that died are
        delivered again, oldest first. Returns the number moved.
        """
        moved = 0
        try:
            while await self.gateway.call(
                "recover",
                lambda: self.redis.lmove(queue_type.processing_key, queue_type.key, "LEFT", "RIGHT"),
            ) is not None:
                moved += 1
        except CacheUnavailable as e:
            logger.error(f"Failed to recover batch queue ({queue_type.queue_name}): {e}")
        if moved:
            logger.warning(f"Requeued {moved} unacknowledged item(s) on {queue_type.key}")
        return moved

    async def process(
        self,
        queue_type: QueueType,
        handler: Callable[[List[BatchQueueItem]], Awaitable[None]],
        max_items: int,
    ) -> int:
        """Claim one batch, hand it to ``handler`` and acknowledge it.

        The batch is acknowledged even if the handler raises; handlers
        isolate per-item failures themselves. Returns the number of entries
        consumed.
        """
        batch = await self.drain(queue_type, max_items)
        if batch.raw_count == 0:
            return 0
        if batch.items:
            try:
                await handler(batch.items)
            except Exception:
                logger.exception(f"Error in batch processor for {queue_type.queue_name}")
        await self.ack(batch)
        return batch.raw_count

    async def length(self, queue_type: QueueType) -> Optional[int]:
        try:
            return await self.gateway.call("llen", lambda: self.redis.llen(queue_type.key))
        except CacheUnavailable:
            return None

    async def lengths(self) -> Dict[str, Optional[int]]:
        return {t.queue_name: await self.length(t) for t in QueueType}
