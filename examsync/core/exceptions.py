"""
Error taxonomy for the cache and reconciliation layers.

None of these are meant to reach an API caller: the cache gateway turns
cache errors into sentinels and the worker loops log and skip failed items.
"""
from typing import Optional


class ExamSyncError(Exception):
    """Base class for all examsync errors."""


class CacheUnavailable(ExamSyncError):
    """The cache backend could not be reached or timed out."""


class SerializationError(ExamSyncError):
    """A cached value could not be encoded or decoded."""


class DurableWriteFailure(ExamSyncError):
    """A write against the durable store failed."""


class AttemptNotFound(ExamSyncError):
    """A queued item referenced an attempt the durable store does not have."""

    def __init__(self, attempt_id: str):
        super().__init__(f"Exam attempt {attempt_id} not found")
        self.attempt_id = attempt_id


class ConditionalUpdateSkipped(ExamSyncError):
    """The precondition of a conditional update did not hold.

    Expected under races (e.g. user submit vs. timer expiry), so callers
    log it rather than treat it as a failure.
    """

    def __init__(self, attempt_id: str, status: Optional[str] = None):
        super().__init__(f"Attempt {attempt_id} is {status or 'unknown'}, update skipped")
        self.attempt_id = attempt_id
        self.status = status
