from unittest.mock import AsyncMock

import pytest

from examsync.core.exceptions import DurableWriteFailure
from examsync.models.orm import AttemptStatus
from examsync.models.schemas import QueueType
from examsync.services.analytics import DIRTY_SET, AnalyticsCounter


async def record_completions(analytics, exam_id, passed, failed):
    for _ in range(passed):
        await analytics.record_event(exam_id, attempted=True, completed=True, passed=True)
    for _ in range(failed):
        await analytics.record_event(exam_id, attempted=True, completed=True, failed=True)


def test_counter_percentages():
    counter = AnalyticsCounter("e", total_completed=10, pass_count=7, fail_count=3, score_total=750, scored_count=10)
    assert counter.pass_percentage == 70
    assert counter.fail_percentage == 30
    assert counter.average_score == 75
    assert AnalyticsCounter("e").pass_percentage == 0
    assert AnalyticsCounter("e").average_score == 0


async def test_record_event_is_queued_not_applied(analytics, queue):
    assert await analytics.record_event("exam-1", attempted=True)
    assert await queue.length(QueueType.ANALYTICS_DELTA) == 1
    assert await analytics.get_counter("exam-1") is None


async def test_analytics_converge_after_one_cycle(analytics, store, redis_client):
    await record_completions(analytics, "exam-1", passed=7, failed=3)

    await analytics.consume()
    counter = await analytics.get_counter("exam-1")
    assert (counter.total_completed, counter.pass_count, counter.needs_sync) == (10, 7, True)

    assert await analytics.flush() == 1

    row = await store.get_analytics("exam-1")
    assert row.pass_percentage == 70
    assert row.fail_percentage == 30
    assert row.total_attempted == 10
    assert not (await analytics.get_counter("exam-1")).needs_sync
    assert await redis_client.smembers(DIRTY_SET) == set()


async def test_deltas_are_summed_per_exam(analytics):
    await analytics.record_event("exam-1", attempted=1)
    await analytics.record_event("exam-2", attempted=1)
    await analytics.record_event("exam-1", attempted=1, completed=1, passed=1, score=80)
    await analytics.record_event("exam-1", completed=1, failed=1, score=60)

    await analytics.consume()

    first = await analytics.get_counter("exam-1")
    assert (first.total_attempted, first.total_completed, first.pass_count, first.fail_count) == (2, 2, 1, 1)
    assert first.average_score == pytest.approx(70)
    assert (await analytics.get_counter("exam-2")).total_attempted == 1


async def test_score_without_a_completion_is_ignored(analytics):
    await analytics.record_event("exam-1", attempted=1, score=80)
    await analytics.record_event("exam-1", completed=1, passed=1, score=60)

    await analytics.consume()

    counter = await analytics.get_counter("exam-1")
    assert counter.scored_count == 1
    assert counter.average_score == pytest.approx(60)


async def test_negative_deltas_undo_events(analytics):
    await record_completions(analytics, "exam-1", passed=2, failed=0)
    await analytics.record_event("exam-1", attempted=-1, completed=-1, passed=-1)

    await analytics.consume()

    counter = await analytics.get_counter("exam-1")
    assert (counter.total_attempted, counter.total_completed, counter.pass_count) == (1, 1, 1)


async def test_failed_durable_write_leaves_counter_dirty(analytics, store, redis_client, monkeypatch):
    await record_completions(analytics, "exam-1", passed=1, failed=1)
    await analytics.consume()
    monkeypatch.setattr(
        store, "find_one_and_update_analytics", AsyncMock(side_effect=DurableWriteFailure("db down"))
    )

    assert await analytics.flush() == 0

    assert (await analytics.get_counter("exam-1")).needs_sync
    assert await redis_client.smembers(DIRTY_SET) == {"exam-1"}

    monkeypatch.undo()
    assert await analytics.flush() == 1
    assert (await store.get_analytics("exam-1")).pass_percentage == 50


async def test_evicted_counter_is_seeded_from_durable_row(analytics, store, redis_client):
    await store.find_one_and_update_analytics(
        "exam-1",
        {"total_attempted": 5, "total_completed": 4, "pass_count": 2, "fail_count": 2, "average_score": 50},
    )
    await record_completions(analytics, "exam-1", passed=1, failed=0)

    await analytics.consume()

    counter = await analytics.get_counter("exam-1")
    assert (counter.total_attempted, counter.total_completed, counter.pass_count) == (6, 5, 3)


async def test_rebuild_from_attempts(analytics, store, make_attempt):
    await make_attempt("A1", status=AttemptStatus.COMPLETED, final_score=80, has_passed=True)
    await make_attempt("A2", status=AttemptStatus.COMPLETED, final_score=40, has_passed=False)
    await make_attempt("A3")

    counter = await analytics.rebuild("exam-1")

    assert (counter.total_attempted, counter.total_completed, counter.pass_count) == (3, 2, 1)
    assert await analytics.flush() == 1
    row = await store.get_analytics("exam-1")
    assert (row.pass_percentage, row.average_score) == (50, 60)
