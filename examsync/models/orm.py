from datetime import datetime, timezone
from typing import Any, List, Optional
import enum

from sqlalchemy import (
    JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from examsync.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttemptStatus(str, enum.Enum):
    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    TIMED_OUT = "timed-out"

    @property
    def is_terminal(self) -> bool:
        return self in (AttemptStatus.COMPLETED, AttemptStatus.TIMED_OUT)


# ========== Delivery Models ==========

class ExamAttempt(Base):
    __tablename__ = "exam_attempts"
    __table_args__ = (
        Index("idx_ea_user_exam", "user_id", "exam_id"),
        Index("idx_ea_status_updated", "status", "updated_at"),
        Index("idx_ea_exam", "exam_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    exam_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AttemptStatus.IN_PROGRESS.value)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    time_remaining: Mapped[Optional[int]] = mapped_column(Integer)  # seconds
    final_score: Mapped[Optional[float]] = mapped_column(Float)
    has_passed: Mapped[Optional[bool]] = mapped_column(Boolean)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    answers: Mapped[List["AttemptAnswer"]] = relationship(
        back_populates="attempt",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="AttemptAnswer.id",
    )

    def answer_map(self) -> dict:
        """Answers keyed by question id, in the shape the answer cache stores."""
        return {a.question_id: a.to_dict() for a in self.answers}

    def __repr__(self) -> str:
        return f"<ExamAttempt(id={self.id}, status={self.status})>"


class AttemptAnswer(Base):
    __tablename__ = "attempt_answers"
    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_attempt_answer"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    attempt_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("exam_attempts.id", ondelete="CASCADE"), nullable=False
    )
    question_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # str for single choice, list for multiple select, None when cleared
    selected_option: Mapped[Any] = mapped_column(JSON, nullable=True)
    response_time: Mapped[float] = mapped_column(Float, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    attempt: Mapped["ExamAttempt"] = relationship(back_populates="answers")

    def to_dict(self) -> dict:
        return {
            "questionId": self.question_id,
            "selectedOption": self.selected_option,
            "responseTime": self.response_time,
        }


# ========== Analytics Models ==========

class ExamAnalytics(Base):
    __tablename__ = "exam_analytics"

    exam_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    total_attempted: Mapped[int] = mapped_column(Integer, default=0)
    total_completed: Mapped[int] = mapped_column(Integer, default=0)
    pass_count: Mapped[int] = mapped_column(Integer, default=0)
    fail_count: Mapped[int] = mapped_column(Integer, default=0)
    pass_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    fail_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    average_score: Mapped[float] = mapped_column(Float, default=0.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
