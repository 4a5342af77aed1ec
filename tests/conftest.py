from datetime import timedelta

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis import aioredis as fake_aioredis

from examsync.core.cache import CacheGateway
from examsync.core.config import Settings
from examsync.core.database import Base, create_engine, create_session_factory
from examsync.jobs.queue import BatchQueue
from examsync.jobs.reconcile import Reconciler
from examsync.models.orm import AttemptStatus, ExamAttempt, utcnow
from examsync.services.analytics import AnalyticsAggregator
from examsync.services.attempts import AttemptSyncService
from examsync.services.exam_cache import ExamCache
from examsync.services.store import AttemptStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        ENVIRONMENT="testing",
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'examsync.db'}",
        CACHE_RETRY_BACKOFF=0,
        QUEUE_MAX_LENGTH=100,
        PROMETHEUS_ENABLED=False,
    )


@pytest_asyncio.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = create_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def gateway(redis_client, settings):
    return CacheGateway.from_settings(redis_client, settings)


@pytest.fixture
def queue(gateway, settings):
    return BatchQueue.from_settings(gateway, settings)


@pytest.fixture
def store(session_factory):
    return AttemptStore(session_factory)


@pytest.fixture
def attempts(gateway, queue, store, settings):
    return AttemptSyncService(gateway, queue, store, settings)


@pytest.fixture
def reconciler(queue, store, attempts, settings):
    return Reconciler(queue, store, attempts, settings)


@pytest.fixture
def analytics(gateway, queue, store, settings):
    return AnalyticsAggregator(gateway, queue, store, settings)


@pytest.fixture
def exam_cache(gateway, settings):
    return ExamCache(gateway, settings)


@pytest.fixture
def make_attempt(session_factory):
    """Insert an exam attempt row and return its id."""

    async def _make(
        attempt_id="A1",
        *,
        user_id="u1",
        exam_id="exam-1",
        status=AttemptStatus.IN_PROGRESS,
        time_remaining=1800,
        stale_for=None,
        final_score=None,
        has_passed=None,
    ):
        updated_at = utcnow() - timedelta(seconds=stale_for) if stale_for else utcnow()
        async with session_factory() as session, session.begin():
            session.add(
                ExamAttempt(
                    id=attempt_id,
                    user_id=user_id,
                    exam_id=exam_id,
                    status=status.value,
                    time_remaining=time_remaining,
                    final_score=final_score,
                    has_passed=has_passed,
                    updated_at=updated_at,
                )
            )
        return attempt_id

    return _make
