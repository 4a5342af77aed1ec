"""
Fail-open cache gateway over Redis.

Caching is a performance layer, not a correctness boundary: get/set/delete
never raise on backend trouble. A failed read is a miss, a failed write is
``False``, and callers fall back to the durable store.
"""
import json
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from .config import Settings, settings as default_settings
from .exceptions import CacheUnavailable, SerializationError
from .metrics import CACHE_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Miss:
    """Sentinel returned by :meth:`CacheGateway.get` when nothing usable is cached."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISS"


MISS = _Miss()


def encode(value: Any) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), default=str)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Cannot encode value: {e}") from e


def decode(raw: str) -> Any:
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise SerializationError(f"Cannot decode cached value: {e}") from e


class CacheGateway:
    """Uniform get/set/delete/clear_pattern over a Redis keyspace."""

    def __init__(
        self,
        client: redis.Redis,
        *,
        default_ttl: int = 3600,
        set_retries: int = 2,
        retry_backoff: float = 0.2,
        scan_count: int = 100,
    ):
        self.redis = client
        self.default_ttl = default_ttl
        self.set_retries = set_retries
        self.retry_backoff = retry_backoff
        self.scan_count = scan_count

    @classmethod
    def from_settings(cls, client: redis.Redis, settings: Settings = default_settings) -> "CacheGateway":
        return cls(
            client,
            default_ttl=settings.CACHE_TTL,
            set_retries=settings.CACHE_SET_RETRIES,
            retry_backoff=settings.CACHE_RETRY_BACKOFF,
            scan_count=settings.CACHE_SCAN_COUNT,
        )

    async def call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run one backend call, normalizing transport errors to CacheUnavailable."""
        try:
            return await fn()
        except (RedisError, OSError) as e:
            CACHE_ERRORS.labels(operation=operation).inc()
            raise CacheUnavailable(f"{operation} failed: {e}") from e

    async def get(self, key: str, default: Any = MISS) -> Any:
        """Get a JSON value; ``default`` on miss, backend failure or bad payload."""
        try:
            raw = await self.call("get", lambda: self.redis.get(key))
        except CacheUnavailable as e:
            logger.error(f"Cache get error ({key}): {e}")
            return default
        if raw is None:
            return default
        try:
            return decode(raw)
        except SerializationError as e:
            logger.warning(f"Treating malformed cache entry as miss ({key}): {e}")
            return default

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set a JSON value with expiration, retrying with linear backoff."""
        try:
            payload = encode(value)
        except SerializationError as e:
            logger.error(f"Cache set error ({key}): {e}")
            return False

        ex = ttl or self.default_ttl
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.set_retries + 1),
                wait=wait_incrementing(start=self.retry_backoff, increment=self.retry_backoff),
                retry=retry_if_exception_type(CacheUnavailable),
                before_sleep=lambda rs: logger.warning(
                    f"Cache set retry for {key}, attempt {rs.attempt_number} failed"
                ),
            ):
                with attempt:
                    await self.call("set", lambda: self.redis.set(key, payload, ex=ex))
        except RetryError as e:
            logger.error(f"Cache set error ({key}): {e.last_attempt.exception()}")
            return False
        return True

    async def delete(self, *keys: str) -> bool:
        """Delete keys from cache."""
        if not keys:
            return True
        try:
            await self.call("delete", lambda: self.redis.delete(*keys))
            return True
        except CacheUnavailable as e:
            logger.error(f"Cache delete error ({', '.join(keys)}): {e}")
            return False

    async def clear_pattern(self, pattern: str, count: Optional[int] = None) -> int:
        """Delete every key matching ``pattern`` using an incremental SCAN.

        Returns the number of keys deleted. On backend failure the count
        deleted so far is returned.
        """
        page = count or self.scan_count
        cursor = 0
        deleted = 0
        try:
            while True:
                cursor, keys = await self.call(
                    "scan", lambda: self.redis.scan(cursor=cursor, match=pattern, count=page)
                )
                if keys:
                    deleted += await self.call("delete", lambda: self.redis.delete(*keys))
                if int(cursor) == 0:
                    break
        except CacheUnavailable as e:
            logger.error(f"Cache clear error ({pattern}) after {deleted} keys: {e}")
            return deleted

        logger.info(f"Cleared {deleted} keys matching pattern: {pattern}")
        return deleted

    async def ping(self) -> bool:
        try:
            return bool(await self.call("ping", self.redis.ping))
        except CacheUnavailable:
            return False
