"""Queue metrics service for timeline background work.

The invalidation queue lives in the worker process, so the API cannot
read it directly. After every drain the worker publishes the queue's
counters to Redis under a short TTL; the API reads them back for the
queue-status endpoint. A missing key means no worker has drained
recently.

Also reports Celery broker queue depths for the readiness check.
"""

import json
from datetime import UTC, datetime

import redis
import structlog

from app.models.regeneration import InvalidationQueueStats
from app.services.distributed_lock import get_sync_redis_client

logger = structlog.get_logger(__name__)

INVALIDATION_STATS_KEY = "timeline:invalidation_stats"
INVALIDATION_STATS_TTL_SECONDS = 60

# Maps logical queue names to Redis key names
QUEUE_REDIS_KEYS = {
    "default": "celery",  # Celery's default queue is named "celery" in Redis
    "high": "high",
    "low": "low",
}


class QueueMetricsService:
    """Publishes and reads background queue metrics in Redis."""

    def __init__(self, redis_client: redis.Redis | None = None):
        self._redis = redis_client

    @property
    def redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = get_sync_redis_client()
        return self._redis

    def publish_invalidation_stats(self, stats: InvalidationQueueStats) -> None:
        payload = {**stats.model_dump(), "publishedAt": datetime.now(UTC).isoformat()}
        try:
            self.redis.setex(INVALIDATION_STATS_KEY, INVALIDATION_STATS_TTL_SECONDS, json.dumps(payload))
        except redis.RedisError as e:
            logger.warning("invalidation_stats_publish_failed", error=str(e))

    def get_invalidation_stats(self) -> InvalidationQueueStats | None:
        """Last counters published by a worker, or None if none are fresh."""
        try:
            raw = self.redis.get(INVALIDATION_STATS_KEY)
        except redis.RedisError as e:
            logger.warning("invalidation_stats_read_failed", error=str(e))
            return None
        if not raw:
            return None
        return InvalidationQueueStats.model_validate(json.loads(raw))

    def get_broker_queue_depths(self) -> dict[str, int]:
        depths = {}
        for queue_name, redis_key in QUEUE_REDIS_KEYS.items():
            try:
                depths[queue_name] = self.redis.llen(redis_key)
            except redis.RedisError as e:
                logger.warning("queue_metrics_redis_error", queue_name=queue_name, error=str(e))
                depths[queue_name] = 0
        return depths

    def check_health(self) -> dict:
        """Check Redis connectivity.

        Returns:
            Health status dict with redis connection state.
        """
        error_message = None
        redis_connected = False
        try:
            self.redis.ping()
            redis_connected = True
        except redis.RedisError as e:
            error_message = str(e)
            logger.error("queue_health_redis_failed", error=error_message)

        return {
            "status": "healthy" if redis_connected else "unhealthy",
            "redisConnected": redis_connected,
            "queueDepths": self.get_broker_queue_depths() if redis_connected else {},
            "lastCheckedAt": datetime.now(UTC).isoformat(),
            "error": error_message,
        }


# Singleton instance for dependency injection
_queue_metrics_service: QueueMetricsService | None = None


def get_queue_metrics_service() -> QueueMetricsService:
    """Get or create queue metrics service singleton."""
    global _queue_metrics_service

    if _queue_metrics_service is None:
        _queue_metrics_service = QueueMetricsService()

    return _queue_metrics_service


def reset_queue_metrics_service() -> None:
    """Reset service singleton for testing."""
    global _queue_metrics_service
    _queue_metrics_service = None
