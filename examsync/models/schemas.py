"""
Queue payloads.

Every batch queue carries exactly one payload type, discriminated by its
``type`` field, so consumers dispatch on the class rather than poking at
loosely shaped dicts. The wire format is camelCase JSON:

    {"id": "timer-sync:1718000000000:9f3a01bc", "enqueuedAt": 1718000000000,
     "payload": {"type": "timer-sync", "attemptId": "...", ...}}
"""
from enum import Enum
from typing import Annotated, Any, List, Optional, Union, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class QueueType(str, Enum):
    ANSWER_UPDATE = "answer-update"
    TIMER_SYNC = "timer-sync"
    TIMED_OUT = "timed-out"
    ANALYTICS_DELTA = "analytics-delta"

    @property
    def queue_name(self) -> str:
        # "answer-updates" is the name existing inspection tooling expects
        return "answer-updates" if self is QueueType.ANSWER_UPDATE else self.value

    @property
    def key(self) -> str:
        return f"queue:{self.queue_name}"

    @property
    def processing_key(self) -> str:
        """Items claimed by a consumer, kept until acknowledged."""
        return f"queue:{self.queue_name}:processing"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnswerInput(WireModel):
    question_id: str = Field(min_length=1)
    selected_option: Any = None
    response_time: float = 0


class AnswerUpdate(WireModel):
    type: Literal["answer-update"] = "answer-update"
    attempt_id: str = Field(min_length=1)
    answers: List[AnswerInput]
    timestamp: int


class TimerSync(WireModel):
    type: Literal["timer-sync"] = "timer-sync"
    attempt_id: str = Field(min_length=1)
    time_remaining: int
    user_id: Optional[str] = None
    timestamp: int


class TimedOut(WireModel):
    type: Literal["timed-out"] = "timed-out"
    attempt_id: str = Field(min_length=1)
    timestamp: int


class AnalyticsDelta(WireModel):
    """Signed counter deltas for one exam (negative when an attempt is removed)."""

    type: Literal["analytics-delta"] = "analytics-delta"
    exam_id: str = Field(min_length=1)
    attempted: int = 0
    completed: int = 0
    passed: int = 0
    failed: int = 0
    score: Optional[float] = None
    timestamp: int


QueuePayload = Annotated[
    Union[AnswerUpdate, TimerSync, TimedOut, AnalyticsDelta],
    Field(discriminator="type"),
]


class BatchQueueItem(WireModel):
    id: str
    enqueued_at: int
    payload: QueuePayload

    @property
    def type(self) -> QueueType:
        return QueueType(self.payload.type)
