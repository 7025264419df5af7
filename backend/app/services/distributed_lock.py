"""Distributed locking service using Redis.

Provides synchronous Redis-based locks for Celery tasks. The background
regeneration scheduler holds one while draining, so that the high and
low priority beat ticks never regenerate at the same time, even across
worker processes. Uses the same Redis instance as the Celery broker.
"""

from functools import lru_cache

import redis
import structlog
from redis.lock import Lock

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

# Lock configuration
DEFAULT_LOCK_TIMEOUT = 900  # seconds, longer than any single drain
REGENERATION_DRAIN_LOCK_KEY = "timeline:regeneration_drain_lock"


@lru_cache(maxsize=1)
def get_sync_redis_client() -> redis.Redis:
    """Get synchronous Redis client for distributed locking.

    Returns:
        Synchronous Redis client instance.
    """
    settings = get_settings()
    redis_url = settings.celery_broker_url

    client = redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=5.0,
    )

    logger.info(
        "sync_redis_client_initialized",
        url=redis_url[:30] + "..." if len(redis_url) > 30 else redis_url,
    )

    return client


class DrainLock:
    """Context manager for the regeneration drain lock.

    Non-blocking: a drain that cannot get the lock is skipped, the next
    beat tick tries again. The lock expires after ``timeout`` so a
    crashed worker cannot block draining forever.

    An instance tracks a single acquisition; use a new one per drain.

    Example:
        >>> with DrainLock() as locked:
        ...     if locked:
        ...         process_pending_tasks(...)
    """

    def __init__(
        self,
        key: str = REGENERATION_DRAIN_LOCK_KEY,
        timeout: int = DEFAULT_LOCK_TIMEOUT,
        redis_client: redis.Redis | None = None,
    ):
        self.key = key
        self.timeout = timeout

        self._redis_client = redis_client or get_sync_redis_client()
        self._lock = Lock(self._redis_client, self.key, timeout=self.timeout)
        self._acquired = False

    def acquire(self) -> bool:
        """Attempt to acquire the lock without waiting.

        Returns:
            True if lock acquired, False otherwise (including Redis errors).
        """
        try:
            self._acquired = self._lock.acquire(blocking=False)
            if self._acquired:
                logger.debug("drain_lock_acquired", key=self.key)
            else:
                logger.debug("drain_lock_busy", key=self.key)
            return self._acquired

        except redis.RedisError as e:
            logger.error("drain_lock_error", key=self.key, error=str(e))
            return False

    def release(self) -> None:
        """Release the lock if held."""
        if self._acquired:
            try:
                self._lock.release()
                self._acquired = False
                logger.debug("drain_lock_released", key=self.key)
            except redis.lock.LockError as e:
                # Lock may have expired - not an error
                logger.warning("drain_lock_release_failed", key=self.key, error=str(e))

    def is_held(self) -> bool:
        """Whether any process currently holds the lock."""
        try:
            return self._lock.locked()
        except redis.RedisError as e:
            logger.warning("drain_lock_status_failed", key=self.key, error=str(e))
            return False

    def __enter__(self) -> bool:
        """Context manager entry - acquire lock."""
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - release lock."""
        self.release()
