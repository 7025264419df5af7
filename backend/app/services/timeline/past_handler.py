"""Past-range request handling (cache-first).

For a range that ends by today's midnight:
1. Serve persisted events when the range is covered, otherwise delete
   whatever partial data exists and derive the range from raw GPS.
2. Check every cached day's stored version against the current inputs
   and regenerate the days that are flagged or behind.
3. Prepend previous context so adjacent queries meet without a hole.
"""

from collections import defaultdict
from datetime import UTC, date, datetime
from functools import lru_cache

import structlog

from app.models.timeline import MovementTimeline, TimelineDataSource
from app.services.exceptions import DetectionEngineError
from app.services.timeline.assembler import TimelineAssembler, get_timeline_assembler
from app.services.timeline.days import start_of_day, utc_now
from app.services.timeline.event_store import TimelineEventStore, get_timeline_event_store
from app.services.timeline.overnight import (
    OvernightTimelineProcessor,
    get_overnight_timeline_processor,
)
from app.services.timeline.regeneration import (
    TimelineRegenerationService,
    get_timeline_regeneration_service,
)
from app.services.timeline.version import TimelineVersionService, get_timeline_version_service

logger = structlog.get_logger(__name__)


class PastRangeHandler:
    """Returns complete, current timelines for fully past ranges."""

    def __init__(
        self,
        event_store: TimelineEventStore | None = None,
        overnight_processor: OvernightTimelineProcessor | None = None,
        version_service: TimelineVersionService | None = None,
        regeneration_service: TimelineRegenerationService | None = None,
        assembler: TimelineAssembler | None = None,
    ) -> None:
        self._store = event_store or get_timeline_event_store()
        self._overnight = overnight_processor or get_overnight_timeline_processor()
        self._versions = version_service or get_timeline_version_service()
        self._regeneration = regeneration_service or get_timeline_regeneration_service()
        self._assembler = assembler or get_timeline_assembler()

    def handle(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        """Timeline of a past range, served from the cache when possible.

        Args:
            user_id: Owning user.
            start: Range start.
            end: Range end (exclusive), at or before today's midnight.

        Returns:
            Snapshot tagged CACHED. Events that began before ``start`` are
            included whole. If detection is unavailable for an uncached
            range the snapshot is empty; if it is unavailable while
            refreshing a stale day, the cached data is returned flagged
            ``is_stale``.

        Raises:
            TimelineStorageError: If storage reads or writes fail.
        """
        if self._store.has_complete_data(user_id, start, end):
            logger.info("timeline_cache_hit", user_id=user_id, start=start.isoformat(), end=end.isoformat())
            timeline = self._store.get_existing_events(user_id, start, end)
        else:
            logger.info("timeline_cache_miss", user_id=user_id, start=start.isoformat(), end=end.isoformat())
            try:
                timeline = self._derive(user_id, start, end)
            except DetectionEngineError as e:
                logger.warning("past_timeline_detection_failed", user_id=user_id, error=str(e))
                return MovementTimeline.empty(user_id, TimelineDataSource.CACHED)

        timeline = self._refresh_stale_days(user_id, timeline, start, end)
        timeline = self._assembler.enhance(timeline, start)
        return timeline.model_copy(update={"data_source": TimelineDataSource.CACHED}).chronological()

    def _derive(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        self._store.delete_timeline_data(user_id, start, end)
        self._overnight.process_time_range(user_id, start, end)
        return self._store.get_existing_events(user_id, start, end)

    def _refresh_stale_days(
        self,
        user_id: str,
        timeline: MovementTimeline,
        start: datetime,
        end: datetime,
    ) -> MovementTimeline:
        """Regenerate cached days whose stays are flagged or whose versions are behind."""
        versions_by_day: dict[date, set[str | None]] = defaultdict(set)
        flagged: set[date] = set()
        for entity in [*timeline.stays, *timeline.trips]:
            day = entity.timestamp.astimezone(UTC).date()
            versions_by_day[day].add(entity.timeline_version)
            if entity.is_stale:
                flagged.add(day)

        today = start_of_day(utc_now()).date()
        days = sorted(d for d in versions_by_day if d < today)
        if not days:
            return timeline

        current = self._versions.compute_many(user_id, days)
        stale_days = [d for d in days if d in flagged or versions_by_day[d] != {current[d]}]
        if not stale_days:
            return timeline

        logger.info(
            "stale_cached_days_found",
            user_id=user_id,
            days=[d.isoformat() for d in stale_days],
        )
        try:
            for day in stale_days:
                self._regeneration.regenerate_day(user_id, day)
        except DetectionEngineError as e:
            logger.warning("stale_day_refresh_failed", user_id=user_id, error=str(e))
            return timeline.model_copy(update={"is_stale": True})

        return self._store.get_existing_events(user_id, start, end)


@lru_cache(maxsize=1)
def get_past_range_handler() -> PastRangeHandler:
    """Get singleton PastRangeHandler instance."""
    return PastRangeHandler()
