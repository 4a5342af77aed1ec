import time

from examsync.models.orm import AttemptStatus
from examsync.models.schemas import QueueType
from examsync.services.attempts import timer_key


async def test_save_answers_reads_own_write_and_queues(attempts, queue):
    assert await attempts.save_answers("A1", [{"questionId": "q1", "selectedOption": "A", "responseTime": 3}])
    assert await attempts.save_answers("A1", [{"questionId": "q2", "selectedOption": ["B", "C"]}])

    cached = await attempts.get_cached_answers("A1")
    assert cached == {
        "q1": {"questionId": "q1", "selectedOption": "A", "responseTime": 3.0},
        "q2": {"questionId": "q2", "selectedOption": ["B", "C"], "responseTime": 0.0},
    }
    batch = await queue.drain(QueueType.ANSWER_UPDATE, 10)
    assert [len(i.payload.answers) for i in batch.items] == [1, 1]


async def test_save_nothing_is_a_noop(attempts, queue):
    assert await attempts.save_answers("A1", [])
    assert await queue.length(QueueType.ANSWER_UPDATE) == 0


async def test_timer_is_stored_as_absolute_end_time(attempts, gateway):
    before = int(time.time() * 1000)
    await attempts.start_timer("A1", 120)

    timer = await gateway.get(timer_key("A1"))
    assert timer["timeRemaining"] == 120
    assert timer["absoluteEndTime"] - before >= 120 * 1000
    assert 118 <= await attempts.cached_time_remaining("A1") <= 120


async def test_update_time_remaining_queues_sync(attempts, queue):
    assert await attempts.update_time_remaining("A1", "u1", 90)
    batch = await queue.drain(QueueType.TIMER_SYNC, 10)
    [item] = batch.items
    assert (item.payload.attempt_id, item.payload.time_remaining, item.payload.user_id) == ("A1", 90, "u1")


async def test_current_time_falls_back_to_store(attempts, make_attempt, queue):
    await make_attempt("A1", time_remaining=321)
    assert await attempts.get_current_time_remaining("A1") == 321
    assert await attempts.get_current_time_remaining("missing") is None
    assert await queue.length(QueueType.TIMED_OUT) == 0


async def test_finished_attempt_reads_zero_without_queueing(attempts, make_attempt, queue):
    await make_attempt("A1", status=AttemptStatus.COMPLETED, time_remaining=321)
    await make_attempt("A2", status=AttemptStatus.TIMED_OUT, time_remaining=0)

    assert await attempts.get_current_time_remaining("A1") == 0
    assert await attempts.get_current_time_remaining("A2") == 0
    assert await queue.length(QueueType.TIMED_OUT) == 0


async def test_expired_timer_queues_timeout(attempts, queue):
    await attempts.start_timer("A1", 0)
    assert await attempts.get_current_time_remaining("A1") == 0
    batch = await queue.drain(QueueType.TIMED_OUT, 10)
    assert [i.payload.attempt_id for i in batch.items] == ["A1"]


async def test_finished_timer_reads_zero(attempts):
    await attempts.start_timer("A1", 600)
    await attempts.mark_timer_finished("A1")
    assert await attempts.cached_time_remaining("A1") == 0


async def test_cached_status(attempts):
    assert await attempts.get_cached_status("A1") is None
    await attempts.set_cached_status("A1", AttemptStatus.COMPLETED.value)
    assert await attempts.get_cached_status("A1") == "completed"
