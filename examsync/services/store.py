"""
Durable store access for exam attempts and exam analytics.

The durable rows are the source of truth; the cache is only a projection.
Conditional writes (``status == in-progress``) are done in SQL so a racing
user submit and timer expiry can never clobber each other.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from examsync.core.exceptions import AttemptNotFound, ConditionalUpdateSkipped, DurableWriteFailure
from examsync.models.orm import AttemptAnswer, AttemptStatus, ExamAnalytics, ExamAttempt, utcnow
from examsync.models.schemas import AnswerInput

logger = logging.getLogger(__name__)

ANALYTICS_FIELDS = (
    "total_attempted", "total_completed", "pass_count", "fail_count",
    "pass_percentage", "fail_percentage", "average_score",
)


class StaleAttempt(NamedTuple):
    id: str
    time_remaining: Optional[int]
    updated_at: datetime


class AttemptStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ========== Reads ==========

    async def find_by_id(self, attempt_id: str) -> Optional[ExamAttempt]:
        async with self.session_factory() as session:
            return await session.get(ExamAttempt, attempt_id)

    async def count_documents(self, **filters: Any) -> int:
        """Count attempts whose columns equal the given values."""
        stmt = select(func.count()).select_from(ExamAttempt)
        for name, value in filters.items():
            stmt = stmt.where(getattr(ExamAttempt, name) == value)
        async with self.session_factory() as session:
            return int(await session.scalar(stmt) or 0)

    async def aggregate_exam_stats(self, exam_id: str) -> Dict[str, Any]:
        """Group the attempts of one exam into analytics totals."""
        completed = ExamAttempt.status == AttemptStatus.COMPLETED.value
        stmt = select(
            func.count().label("total_attempted"),
            func.sum(case((completed, 1), else_=0)).label("total_completed"),
            func.sum(case((completed & (ExamAttempt.has_passed.is_(True)), 1), else_=0)).label("pass_count"),
            func.sum(case((completed & (ExamAttempt.has_passed.is_(False)), 1), else_=0)).label("fail_count"),
            func.sum(case((completed, ExamAttempt.final_score), else_=None)).label("score_total"),
            func.count(case((completed, ExamAttempt.final_score), else_=None)).label("scored_count"),
        ).where(ExamAttempt.exam_id == exam_id)
        async with self.session_factory() as session:
            row = (await session.execute(stmt)).one()
        return {
            "total_attempted": int(row.total_attempted or 0),
            "total_completed": int(row.total_completed or 0),
            "pass_count": int(row.pass_count or 0),
            "fail_count": int(row.fail_count or 0),
            "score_total": float(row.score_total or 0.0),
            "scored_count": int(row.scored_count or 0),
        }

    async def find_stale_attempts(
        self,
        cutoff: datetime,
        limit: int = 500,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[StaleAttempt]:
        """In-progress attempts not updated since ``cutoff``, least recently updated first.

        ``after`` is the ``(updated_at, id)`` of the last attempt of the
        previous page; only attempts ordered after it are returned.
        """
        stmt = select(ExamAttempt.id, ExamAttempt.time_remaining, ExamAttempt.updated_at).where(
            ExamAttempt.status == AttemptStatus.IN_PROGRESS.value, ExamAttempt.updated_at < cutoff
        )
        if after is not None:
            updated_at, attempt_id = after
            stmt = stmt.where(
                or_(
                    ExamAttempt.updated_at > updated_at,
                    and_(ExamAttempt.updated_at == updated_at, ExamAttempt.id > attempt_id),
                )
            )
        stmt = stmt.order_by(ExamAttempt.updated_at, ExamAttempt.id).limit(limit)
        async with self.session_factory() as session:
            return [StaleAttempt(row.id, row.time_remaining, row.updated_at) for row in await session.execute(stmt)]

    async def get_analytics(self, exam_id: str) -> Optional[ExamAnalytics]:
        async with self.session_factory() as session:
            return await session.get(ExamAnalytics, exam_id)

    # ========== Writes ==========

    async def update_one(self, attempt_id: str, fields: Dict[str, Any], status: Optional[AttemptStatus] = None) -> bool:
        """Set ``fields`` on one attempt, only if its status equals ``status`` when given.

        Returns whether a row matched.
        """
        stmt = update(ExamAttempt).where(ExamAttempt.id == attempt_id)
        if status is not None:
            stmt = stmt.where(ExamAttempt.status == status.value)
        stmt = stmt.values(**fields, updated_at=utcnow()).execution_options(synchronize_session=False)
        try:
            async with self.session_factory() as session, session.begin():
                result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise DurableWriteFailure(f"update of attempt {attempt_id} failed: {e}") from e
        return result.rowcount > 0

    async def upsert_answers(self, attempt_id: str, answers: Iterable[AnswerInput]) -> ExamAttempt:
        """Upsert answers by question id on an in-progress attempt.

        Re-applying the same answers leaves the row unchanged. Raises
        ``AttemptNotFound`` or ``ConditionalUpdateSkipped`` when the attempt
        is missing or no longer in progress.
        """
        try:
            async with self.session_factory() as session, session.begin():
                attempt = await session.scalar(
                    select(ExamAttempt).where(ExamAttempt.id == attempt_id).with_for_update()
                )
                if attempt is None:
                    raise AttemptNotFound(attempt_id)
                if attempt.status != AttemptStatus.IN_PROGRESS.value:
                    raise ConditionalUpdateSkipped(attempt_id, attempt.status)

                existing = {a.question_id: a for a in attempt.answers}
                for answer in answers:
                    row = existing.get(answer.question_id)
                    if row is None:
                        row = AttemptAnswer(question_id=answer.question_id)
                        attempt.answers.append(row)
                        existing[answer.question_id] = row
                    row.selected_option = answer.selected_option
                    row.response_time = answer.response_time or 0
                attempt.updated_at = utcnow()
                attempt.last_synced_at = attempt.updated_at
            return attempt
        except SQLAlchemyError as e:
            raise DurableWriteFailure(f"answer upsert for attempt {attempt_id} failed: {e}") from e

    async def find_one_and_update_analytics(self, exam_id: str, values: Dict[str, Any], upsert: bool = True) -> Optional[ExamAnalytics]:
        """Overwrite the analytics row of an exam, creating it when ``upsert``."""
        unknown = set(values) - set(ANALYTICS_FIELDS)
        if unknown:
            raise ValueError(f"Unknown analytics fields: {sorted(unknown)}")
        try:
            async with self.session_factory() as session, session.begin():
                row = await session.get(ExamAnalytics, exam_id, with_for_update=True)
                if row is None:
                    if not upsert:
                        return None
                    row = ExamAnalytics(exam_id=exam_id)
                    session.add(row)
                for name, value in values.items():
                    setattr(row, name, value)
                row.updated_at = utcnow()
            return row
        except SQLAlchemyError as e:
            raise DurableWriteFailure(f"analytics upsert for exam {exam_id} failed: {e}") from e

    async def ping(self) -> bool:
        try:
            async with self.session_factory() as session:
                await session.execute(select(1))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Durable store ping failed: {e}")
            return False
