"""In-process invalidation queue for cached timeline days.

Holds deduplicated (user, day) keys whose cached data must be
regenerated. Stays are flagged stale at enqueue time so readers see
the staleness immediately; the day itself is regenerated later by the
drain, which runs on a Celery beat tick.

Only one drain runs at a time per process. Each drain takes an
adaptively sized batch:
- more than 50 queued: max batch
- more than 20: half of it
- more than 5: a quarter
- 1 to 5: one item
- empty: nothing

Failed keys are re-queued up to the retry ceiling, and are not retried
until the retry delay has passed since they were re-queued.
"""

import threading
from collections import deque
from dataclasses import dataclass
from datetime import UTC, date, datetime
from functools import lru_cache

import structlog

from app.core.config import Settings, get_settings
from app.models.regeneration import InvalidationQueueStats
from app.models.timeline import TimelineStay
from app.services.timeline.regeneration import (
    TimelineRegenerationService,
    get_timeline_regeneration_service,
)
from app.services.timeline.stay_repository import (
    TimelineStayRepository,
    get_timeline_stay_repository,
)

logger = structlog.get_logger(__name__)

# Queue depth above which a warning is logged after each drain
QUEUE_SIZE_WARNING = 100


@dataclass(frozen=True)
class TimelineKey:
    user_id: str
    day: date


@dataclass(frozen=True)
class QueuedTimelineUpdate:
    key: TimelineKey
    queued_at: datetime
    retry_count: int = 0


class TimelineInvalidationQueue:
    """Marks cached days stale and regenerates them in the background.

    Example:
        >>> queue = TimelineInvalidationQueue()
        >>> queue.mark_stale_and_queue(stays)
        >>> queue.drain()
        3
    """

    def __init__(
        self,
        stay_repository: TimelineStayRepository | None = None,
        regeneration_service: TimelineRegenerationService | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._stays = stay_repository or get_timeline_stay_repository()
        self._regeneration = regeneration_service or get_timeline_regeneration_service()
        self._settings = settings or get_settings()

        self._queue: deque[QueuedTimelineUpdate] = deque()
        self._queued_keys: set[TimelineKey] = set()
        self._retry_counters: dict[TimelineKey, int] = {}
        self._total_processed = 0
        self._total_failed = 0

        self._state_lock = threading.Lock()
        self._drain_lock = threading.Lock()

    # =========================================================================
    # Enqueue
    # =========================================================================

    def mark_stale_and_queue(self, stays: list[TimelineStay]) -> int:
        """Flag stays stale and queue their days for regeneration.

        Returns:
            Number of newly queued (user, day) keys.
        """
        if not stays:
            logger.debug("no_stays_to_invalidate")
            return 0

        self._stays.mark_stale([s.id for s in stays if s.id is not None])

        by_user: dict[str, set[date]] = {}
        for stay in stays:
            by_user.setdefault(stay.user_id, set()).add(stay.timestamp.astimezone(UTC).date())

        queued = sum(self.enqueue(user_id, sorted(days)) for user_id, days in by_user.items())
        logger.info("timeline_days_invalidated", stays=len(stays), queued=queued)
        return queued

    def enqueue(self, user_id: str, days: list[date]) -> int:
        """Queue days of a user, skipping keys already waiting.

        Returns:
            Number of keys added.
        """
        now = datetime.now(UTC)
        added = 0
        with self._state_lock:
            for day in days:
                key = TimelineKey(user_id, day)
                if key in self._queued_keys:
                    continue
                self._queued_keys.add(key)
                self._queue.append(QueuedTimelineUpdate(key, now))
                added += 1
        return added

    # =========================================================================
    # Drain
    # =========================================================================

    def drain(self) -> int:
        """Regenerate one adaptive batch of queued days.

        Returns immediately when another drain is running or nothing is
        queued. Each queued item is looked at no more than once per
        drain, so items waiting out their retry delay cannot spin it.

        Returns:
            Number of days regenerated successfully.
        """
        if not self._drain_lock.acquire(blocking=False):
            return 0
        try:
            return self._process_available_work()
        finally:
            self._drain_lock.release()

    def _process_available_work(self) -> int:
        with self._state_lock:
            batch_size = self._adaptive_batch_size(len(self._queue))
            polls_left = len(self._queue)
        if batch_size == 0:
            return 0

        now = datetime.now(UTC)
        processed = 0
        while processed < batch_size and polls_left > 0:
            polls_left -= 1
            with self._state_lock:
                if not self._queue:
                    break
                update = self._queue.popleft()
                self._queued_keys.discard(update.key)

            if update.retry_count > 0:
                waited = (now - update.queued_at).total_seconds()
                if waited < self._settings.invalidation_retry_delay_seconds:
                    self._requeue(update)
                    continue

            if self._regenerate(update, now):
                processed += 1

        if processed:
            logger.debug("invalidation_batch_processed", processed=processed, batch_size=batch_size)
        self._log_statistics()
        return processed

    def _regenerate(self, update: QueuedTimelineUpdate, now: datetime) -> bool:
        key = update.key
        try:
            result = self._regeneration.regenerate_day(key.user_id, key.day)
        except Exception as e:
            logger.error(
                "invalidation_regeneration_failed",
                user_id=key.user_id,
                day=key.day.isoformat(),
                attempt=update.retry_count + 1,
                error=str(e),
            )
            self._handle_failure(update, now)
            return False

        with self._state_lock:
            self._retry_counters.pop(key, None)
            self._total_processed += 1
        logger.info(
            "invalidated_day_regenerated",
            user_id=key.user_id,
            day=key.day.isoformat(),
            attempts=update.retry_count + 1,
            stays=len(result.stays),
            trips=len(result.trips),
        )
        return True

    def _handle_failure(self, update: QueuedTimelineUpdate, now: datetime) -> None:
        key = update.key
        if update.retry_count < self._settings.invalidation_max_retries:
            with self._state_lock:
                self._retry_counters[key] = self._retry_counters.get(key, 0) + 1
            self._requeue(QueuedTimelineUpdate(key, now, update.retry_count + 1))
            return

        with self._state_lock:
            self._retry_counters.pop(key, None)
            self._total_failed += 1
        logger.error(
            "invalidation_regeneration_abandoned",
            user_id=key.user_id,
            day=key.day.isoformat(),
            attempts=update.retry_count + 1,
        )

    def _requeue(self, update: QueuedTimelineUpdate) -> None:
        with self._state_lock:
            if update.key in self._queued_keys:
                return
            self._queued_keys.add(update.key)
            self._queue.append(update)

    def _adaptive_batch_size(self, queue_size: int) -> int:
        max_batch = self._settings.invalidation_max_batch_size
        if queue_size > 50:
            return max_batch
        if queue_size > 20:
            return max(1, max_batch // 2)
        if queue_size > 5:
            return max(1, max_batch // 4)
        if queue_size > 0:
            return 1
        return 0

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_statistics(self) -> InvalidationQueueStats:
        with self._state_lock:
            return InvalidationQueueStats(
                queue_size=len(self._queue),
                active_retries=len(self._retry_counters),
                total_processed=self._total_processed,
                total_failed=self._total_failed,
            )

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    def _log_statistics(self) -> None:
        stats = self.get_statistics()
        if stats.queue_size or stats.active_retries:
            logger.debug("invalidation_queue_status", **stats.model_dump())
        if stats.queue_size > QUEUE_SIZE_WARNING:
            logger.warning("invalidation_queue_large", queue_size=stats.queue_size)


@lru_cache(maxsize=1)
def get_invalidation_queue() -> TimelineInvalidationQueue:
    """Get the process-wide TimelineInvalidationQueue instance."""
    return TimelineInvalidationQueue()
