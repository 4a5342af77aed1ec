import asyncio

from examsync.jobs.queue import now_ms
from examsync.jobs.worker import Loop, ReconciliationWorker
from examsync.models.schemas import QueueType, TimedOut, TimerSync


def fast_settings(settings):
    return settings.model_copy(
        update={
            "ANSWER_FLUSH_INTERVAL": 0.01,
            "TIMED_OUT_INTERVAL": 0.01,
            "TIMER_SYNC_INTERVAL": 0.01,
            "STALE_SCAN_INTERVAL": 0.01,
            "ANALYTICS_CONSUME_INTERVAL": 0.01,
            "ANALYTICS_SYNC_INTERVAL": 0.01,
        }
    )


async def test_worker_has_one_loop_per_job(gateway, store, settings):
    worker = ReconciliationWorker.build(gateway, store, settings)
    assert [(loop.name, loop.interval) for loop in worker.loops] == [
        ("answer-flush", 2),
        ("timed-out", 5),
        ("timer-sync", 10),
        ("stale-scan", 30),
        ("analytics-consume", 5),
        ("analytics-sync", 60),
    ]


async def test_run_once_reconciles_everything(gateway, store, queue, make_attempt, settings):
    await make_attempt("A1")
    await queue.enqueue(TimedOut(attempt_id="A1", timestamp=now_ms()))
    worker = ReconciliationWorker.build(gateway, store, settings)
    await worker.analytics.record_event("exam-1", attempted=True, completed=True, passed=True)

    await worker.run_once()

    assert (await store.find_by_id("A1")).status == "timed-out"
    assert (await store.get_analytics("exam-1")).pass_percentage == 100


async def test_recover_requeues_batches_left_by_a_dead_worker(gateway, store, queue, make_attempt, settings):
    await make_attempt("A1")
    await queue.enqueue(TimedOut(attempt_id="A1", timestamp=now_ms()))
    await queue.enqueue(TimerSync(attempt_id="A2", time_remaining=60, timestamp=now_ms()))
    await queue.drain(QueueType.TIMED_OUT, 10)
    await queue.drain(QueueType.TIMER_SYNC, 10)
    worker = ReconciliationWorker.build(gateway, store, settings)

    assert await worker.recover() == 2
    await worker.run_once()

    assert (await store.find_by_id("A1")).status == "timed-out"


async def test_loops_run_until_stopped(gateway, store, queue, make_attempt, settings):
    await make_attempt("A1")
    worker = ReconciliationWorker.build(gateway, store, fast_settings(settings))
    worker.start()
    assert worker.running

    await queue.enqueue(TimedOut(attempt_id="A1", timestamp=now_ms()))
    for _ in range(200):
        if (await store.find_by_id("A1")).status == "timed-out":
            break
        await asyncio.sleep(0.01)

    await worker.stop(grace=5)
    assert not worker.running
    assert (await store.find_by_id("A1")).status == "timed-out"


async def test_failing_iteration_does_not_kill_the_loop(gateway, store, settings):
    calls = []

    async def flaky():
        calls.append(1)
        raise RuntimeError("boom")

    worker = ReconciliationWorker.build(gateway, store, settings)
    worker.loops = [Loop("flaky", 0.01, flaky)]
    worker.start()
    await asyncio.sleep(0.1)
    await worker.stop(grace=1)

    assert len(calls) > 1


async def test_stop_cancels_iterations_past_the_grace_period(gateway, store, settings):
    async def stuck():
        await asyncio.sleep(60)

    worker = ReconciliationWorker.build(gateway, store, settings)
    worker.loops = [Loop("stuck", 1, stuck)]
    worker.start()
    await asyncio.sleep(0.01)

    await worker.stop(grace=0.05)
    assert not worker.running
