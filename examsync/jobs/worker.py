"""
Reconciliation worker process.

Runs every background loop as its own asyncio task on a fixed interval:

    answer-flush      drain ``answer-updates`` into the durable attempts
    timed-out         finalize attempts whose timer ran out
    timer-sync        mirror the latest cached timer into the durable row
    stale-scan        safety net for attempts whose timer syncs were lost
    analytics-consume fold ``analytics-delta`` items into cached counters
    analytics-sync    mirror dirty counters into ``exam_analytics``

All state lives in Redis and the database, so any number of workers may
run. Each queue item is claimed by exactly one worker; items a crashed
worker left claimed are requeued by ``recover`` on the next start.

    python -m examsync.jobs.worker
"""
import asyncio
import logging
import signal
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from prometheus_client import start_http_server
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from examsync.core.cache import CacheGateway
from examsync.core.config import Settings, get_settings
from examsync.core.database import close_db, init_db
from examsync.core.observability import configure_logging, init_sentry
from examsync.core.redis import close_redis, init_redis
from examsync.jobs.queue import BatchQueue
from examsync.jobs.reconcile import Reconciler
from examsync.models.schemas import QueueType
from examsync.services.analytics import AnalyticsAggregator
from examsync.services.attempts import AttemptSyncService
from examsync.services.store import AttemptStore

logger = logging.getLogger(__name__)


@dataclass
class Loop:
    name: str
    interval: float
    step: Callable[[], Awaitable[object]]
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    iterations: int = 0


class ReconciliationWorker:
    def __init__(
        self,
        reconciler: Reconciler,
        analytics: AnalyticsAggregator,
        settings: Settings,
    ):
        self.reconciler = reconciler
        self.analytics = analytics
        self.settings = settings
        self.loops: List[Loop] = [
            Loop("answer-flush", settings.ANSWER_FLUSH_INTERVAL, reconciler.flush_answers),
            Loop("timed-out", settings.TIMED_OUT_INTERVAL, reconciler.finalize_timed_out),
            Loop("timer-sync", settings.TIMER_SYNC_INTERVAL, reconciler.sync_timers),
            Loop("stale-scan", settings.STALE_SCAN_INTERVAL, reconciler.scan_stale_attempts),
            Loop("analytics-consume", settings.ANALYTICS_CONSUME_INTERVAL, analytics.consume),
            Loop("analytics-sync", settings.ANALYTICS_SYNC_INTERVAL, analytics.flush),
        ]
        self._tasks: Dict[str, asyncio.Task] = {}

    @classmethod
    def build(cls, gateway: CacheGateway, store: AttemptStore, settings: Settings) -> "ReconciliationWorker":
        queue = BatchQueue.from_settings(gateway, settings)
        attempts = AttemptSyncService(gateway, queue, store, settings)
        return cls(
            Reconciler(queue, store, attempts, settings),
            AnalyticsAggregator(gateway, queue, store, settings),
            settings,
        )

    async def recover(self) -> int:
        """Requeue items a previous run claimed but never acknowledged."""
        queue = self.reconciler.queue
        return sum([await queue.recover(queue_type) for queue_type in QueueType])

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def start(self) -> None:
        for loop in self.loops:
            if loop.name in self._tasks and not self._tasks[loop.name].done():
                continue
            loop.stop.clear()
            self._tasks[loop.name] = asyncio.create_task(self._run(loop), name=f"examsync-{loop.name}")
        logger.info(f"Reconciliation worker started ({len(self.loops)} loops)")

    async def _run(self, loop: Loop) -> None:
        while not loop.stop.is_set():
            try:
                await loop.step()
            except Exception:
                # Keep the loop alive; the next tick retries.
                logger.exception(f"Error in {loop.name} loop")
            loop.iterations += 1
            try:
                await asyncio.wait_for(loop.stop.wait(), timeout=loop.interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> None:
        """Run one iteration of every loop, in declaration order."""
        for loop in self.loops:
            try:
                await loop.step()
            except Exception:
                logger.exception(f"Error in {loop.name} loop")

    def request_stop(self) -> None:
        """Stop scheduling new iterations; running ones finish."""
        for loop in self.loops:
            loop.stop.set()

    async def stop(self, grace: Optional[float] = None) -> None:
        self.request_stop()
        tasks = list(self._tasks.values())
        if not tasks:
            return
        timeout = self.settings.SHUTDOWN_GRACE_SECONDS if grace is None else grace
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning(f"Cancelling {task.get_name()} after {timeout}s shutdown grace")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        logger.info("Reconciliation worker stopped")


async def main(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    configure_logging(settings)
    init_sentry(settings, integrations=[SqlalchemyIntegration()])
    if settings.PROMETHEUS_ENABLED:
        start_http_server(settings.PROMETHEUS_PORT)
        logger.info(f"Metrics exposed on :{settings.PROMETHEUS_PORT}")

    client = await init_redis(settings)
    session_factory = await init_db(settings)
    worker = ReconciliationWorker.build(
        CacheGateway.from_settings(client, settings), AttemptStore(session_factory), settings
    )

    stopping = asyncio.Event()
    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        event_loop.add_signal_handler(sig, stopping.set)

    await worker.recover()
    worker.start()
    try:
        await stopping.wait()
        logger.info("Shutdown signal received, draining in-flight batches")
    finally:
        await worker.stop()
        await close_redis()
        # Durable store goes last so finishing batches can still write.
        await close_db()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
