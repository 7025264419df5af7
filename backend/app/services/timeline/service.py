"""Timeline service facade.

The single entry point for callers (HTTP routes, Celery tasks):
- get_timeline(): classified and served by the request router
- force_regenerate(): discard the cached past portion and rebuild it
- enqueue_high_priority() / enqueue_low_priority(): queue background work
- get_queue_status(): pending task counts and drain state
"""

from datetime import UTC, date, datetime
from functools import lru_cache

import structlog

from app.models.regeneration import QueueStatus, RegenerationTask
from app.models.timeline import MovementTimeline
from app.services.exceptions import InvalidTimeRangeError
from app.services.timeline.days import start_of_day, utc_now
from app.services.timeline.event_store import TimelineEventStore, get_timeline_event_store
from app.services.timeline.overnight import (
    OvernightTimelineProcessor,
    get_overnight_timeline_processor,
)
from app.services.timeline.router import TimelineRequestRouter, get_timeline_request_router
from app.services.timeline.scheduler import (
    BackgroundRegenerationScheduler,
    get_background_regeneration_scheduler,
)

logger = structlog.get_logger(__name__)


def validate_range(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Normalize a range to UTC and reject it if it ends before it starts.

    Timestamps without an offset are taken as UTC.

    Raises:
        InvalidTimeRangeError: If end is before start.
    """
    start, end = (ts.replace(tzinfo=UTC) if ts.tzinfo is None else ts.astimezone(UTC) for ts in (start, end))
    if end < start:
        raise InvalidTimeRangeError(
            "End time must not be before start time",
            details={"start": start.isoformat(), "end": end.isoformat()},
        )
    return start, end


class TimelineService:
    """Facade over request routing and background regeneration."""

    def __init__(
        self,
        router: TimelineRequestRouter | None = None,
        event_store: TimelineEventStore | None = None,
        overnight_processor: OvernightTimelineProcessor | None = None,
        scheduler: BackgroundRegenerationScheduler | None = None,
    ) -> None:
        self._router = router or get_timeline_request_router()
        self._store = event_store or get_timeline_event_store()
        self._overnight = overnight_processor or get_overnight_timeline_processor()
        self._scheduler = scheduler or get_background_regeneration_scheduler()

    def get_timeline(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        """Timeline of [start, end) for a user.

        Raises:
            InvalidTimeRangeError: If end is before start.
            TimelineStorageError: If storage fails.
        """
        start, end = validate_range(start, end)
        return self._router.route(user_id, start, end)

    def force_regenerate(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        """Rebuild the past part of [start, end) from raw GPS, then serve the range.

        Today is always live, so only the portion before today's
        midnight is deleted and regenerated.

        Raises:
            InvalidTimeRangeError: If end is before start.
            DetectionEngineError: If detection fails during the rebuild.
            TimelineStorageError: If storage fails.
        """
        start, end = validate_range(start, end)
        past_end = min(end, start_of_day(utc_now()))
        if start < past_end:
            logger.info(
                "timeline_force_regeneration",
                user_id=user_id,
                start=start.isoformat(),
                end=past_end.isoformat(),
            )
            self._store.delete_timeline_data(user_id, start, past_end)
            self._overnight.process_time_range(user_id, start, past_end)
        return self._router.route(user_id, start, end)

    def enqueue_high_priority(self, user_id: str, dates: list[date]) -> RegenerationTask | None:
        return self._scheduler.enqueue_high_priority(user_id, dates)

    def enqueue_low_priority(self, user_id: str, start_date: date, end_date: date) -> RegenerationTask | None:
        if end_date < start_date:
            raise InvalidTimeRangeError(
                "End date must not be before start date",
                details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )
        return self._scheduler.enqueue_low_priority(user_id, start_date, end_date)

    def get_queue_status(self) -> QueueStatus:
        return self._scheduler.get_queue_status()


@lru_cache(maxsize=1)
def get_timeline_service() -> TimelineService:
    """Get singleton TimelineService instance."""
    return TimelineService()
