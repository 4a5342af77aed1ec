from datetime import timedelta

import pytest

from examsync.core.exceptions import AttemptNotFound, ConditionalUpdateSkipped
from examsync.models.orm import AttemptStatus, utcnow
from examsync.models.schemas import AnswerInput


def answer(question_id, option, response_time=1.0):
    return AnswerInput(question_id=question_id, selected_option=option, response_time=response_time)


async def test_upsert_answers_by_question(store, make_attempt):
    await make_attempt("A1")
    await store.upsert_answers("A1", [answer("q1", "A"), answer("q2", ["B", "C"])])
    attempt = await store.upsert_answers("A1", [answer("q1", "D", 3.0)])

    assert attempt.answer_map() == {
        "q1": {"questionId": "q1", "selectedOption": "D", "responseTime": 3.0},
        "q2": {"questionId": "q2", "selectedOption": ["B", "C"], "responseTime": 1.0},
    }
    assert attempt.last_synced_at is not None


async def test_upsert_answers_preconditions(store, make_attempt):
    await make_attempt("done", status=AttemptStatus.COMPLETED)
    with pytest.raises(AttemptNotFound):
        await store.upsert_answers("missing", [answer("q1", "A")])
    with pytest.raises(ConditionalUpdateSkipped) as exc:
        await store.upsert_answers("done", [answer("q1", "A")])
    assert exc.value.status == "completed"


async def test_conditional_update_one(store, make_attempt):
    await make_attempt("A1")
    await make_attempt("A2", status=AttemptStatus.COMPLETED)

    assert await store.update_one("A1", {"time_remaining": 10}, status=AttemptStatus.IN_PROGRESS)
    assert not await store.update_one("A2", {"time_remaining": 10}, status=AttemptStatus.IN_PROGRESS)
    assert not await store.update_one("nope", {"time_remaining": 10})

    assert (await store.find_by_id("A1")).time_remaining == 10
    assert (await store.find_by_id("A2")).time_remaining == 1800


async def test_count_documents(store, make_attempt):
    await make_attempt("A1")
    await make_attempt("A2", status=AttemptStatus.COMPLETED)
    await make_attempt("A3", exam_id="exam-2")
    assert await store.count_documents(exam_id="exam-1") == 2
    assert await store.count_documents(status="in-progress") == 2


async def test_aggregate_exam_stats(store, make_attempt):
    await make_attempt("A1", status=AttemptStatus.COMPLETED, final_score=90, has_passed=True)
    await make_attempt("A2", status=AttemptStatus.COMPLETED, final_score=50, has_passed=False)
    await make_attempt("A3")
    await make_attempt("B1", exam_id="exam-2", status=AttemptStatus.COMPLETED, final_score=10, has_passed=False)

    assert await store.aggregate_exam_stats("exam-1") == {
        "total_attempted": 3,
        "total_completed": 2,
        "pass_count": 1,
        "fail_count": 1,
        "score_total": 140.0,
        "scored_count": 2,
    }


async def test_find_stale_attempts(store, make_attempt):
    await make_attempt("fresh")
    await make_attempt("stale", stale_for=300, time_remaining=42)
    await make_attempt("stale-done", stale_for=300, status=AttemptStatus.TIMED_OUT)

    stale = await store.find_stale_attempts(utcnow() - timedelta(seconds=60))
    assert [(s.id, s.time_remaining) for s in stale] == [("stale", 42)]


async def test_find_stale_attempts_pages_after_a_cursor(store, make_attempt):
    await make_attempt("s1", stale_for=400)
    await make_attempt("s2", stale_for=300)
    await make_attempt("s3", stale_for=200)
    cutoff = utcnow() - timedelta(seconds=60)

    first = await store.find_stale_attempts(cutoff, limit=2)
    assert [s.id for s in first] == ["s1", "s2"]

    rest = await store.find_stale_attempts(cutoff, limit=2, after=(first[-1].updated_at, first[-1].id))
    assert [s.id for s in rest] == ["s3"]


async def test_analytics_upsert(store):
    row = await store.find_one_and_update_analytics("exam-1", {"total_completed": 3, "pass_percentage": 66.67})
    assert row.total_completed == 3
    row = await store.find_one_and_update_analytics("exam-1", {"pass_count": 2})
    assert (row.total_completed, row.pass_count) == (3, 2)
    assert await store.find_one_and_update_analytics("exam-2", {"pass_count": 1}, upsert=False) is None
    with pytest.raises(ValueError):
        await store.find_one_and_update_analytics("exam-1", {"bogus": 1})


async def test_ping(store):
    assert await store.ping()
