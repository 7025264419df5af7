"""Overnight/whole-day timeline processing.

Generates and persists a past range while keeping events that were
already open at the range start in one piece. A stay from 23:50 to
02:00 is stored once, with its persisted row extended past midnight,
instead of as two halves cut at the day boundary.

Algorithm for [start, end):
1. No GPS at all in the range: persist it as one data gap, if gap
   detection records it.
2. Find the latest persisted event ending at or before ``start``.
   None (or only a data gap): detect over [start, end) and persist it.
3. Otherwise detect from that event's own start through ``end``. The
   first generated event of the same type extends the persisted row in
   place; every other generated event from ``start`` on is persisted. A
   generated gap straddling ``start`` is cut to begin at ``start``.
4. If the extended run yields no stays or trips, fall back to step 2.
"""

from collections import defaultdict
from datetime import UTC, date, datetime
from functools import lru_cache

import structlog

from app.models.timeline import (
    MovementTimeline,
    TimelineDataGap,
    TimelineDataSource,
    TimelineEvent,
    TimelineEventType,
    TimelineStay,
    TimelineTrip,
)
from app.services.timeline.days import day_bounds, start_of_day, utc_now
from app.services.timeline.event_store import TimelineEventStore, get_timeline_event_store
from app.services.timeline.generation import (
    TimelineGenerationService,
    get_timeline_generation_service,
)
from app.services.timeline.version import TimelineVersionService, get_timeline_version_service

logger = structlog.get_logger(__name__)


class OvernightTimelineProcessor:
    """Generates past ranges from GPS and persists them day by day."""

    def __init__(
        self,
        event_store: TimelineEventStore | None = None,
        generator: TimelineGenerationService | None = None,
        version_service: TimelineVersionService | None = None,
    ) -> None:
        self._store = event_store or get_timeline_event_store()
        self._generator = generator or get_timeline_generation_service()
        self._versions = version_service or get_timeline_version_service()

    def process_whole_day(self, user_id: str, day: date) -> MovementTimeline:
        start, end = day_bounds(day)
        return self.process_time_range(user_id, start, end)

    def process_time_range(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        """Generate and persist [start, end).

        The range is generated in one detection pass even when it spans
        several days; persistence is then split per day.

        Args:
            user_id: Owning user.
            start: Range start.
            end: Range end (exclusive), not later than today's midnight.

        Returns:
            Snapshot of the newly persisted events, tagged CACHED.

        Raises:
            DetectionEngineError: If detection fails.
            TimelineStorageError: If reading or persisting fails.
        """
        if not self._generator.has_gps_data(user_id, start, end):
            logger.info("timeline_range_without_gps", user_id=user_id, start=start.isoformat(), end=end.isoformat())
            return self._process_standard(user_id, start, end)

        latest = self._store.find_latest_event_before(user_id, start)
        if latest is None or latest.event_type == TimelineEventType.DATA_GAP:
            return self._process_standard(user_id, start, end)

        extended = self._generator.generate(user_id, latest.start_time, end)
        if not extended.has_activity:
            logger.info(
                "overnight_extension_empty",
                user_id=user_id,
                boundary_event_type=latest.event_type.value,
                boundary_event_id=latest.id,
            )
            return self._process_standard(user_id, start, end)

        return self._persist_with_extension(user_id, latest, extended, start)

    def _process_standard(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        generated = self._generator.generate(user_id, start, end)
        if generated.is_empty:
            logger.info("timeline_range_without_data", user_id=user_id, start=start.isoformat(), end=end.isoformat())
            return MovementTimeline.empty(user_id, TimelineDataSource.CACHED)
        return self._persist(user_id, generated.stays, generated.trips, generated.data_gaps)

    def _persist_with_extension(
        self,
        user_id: str,
        boundary: TimelineEvent,
        extended: MovementTimeline,
        start: datetime,
    ) -> MovementTimeline:
        same_type = extended.stays if boundary.event_type == TimelineEventType.STAY else extended.trips
        continuation = same_type[0] if same_type and same_type[0].timestamp < start else None

        if continuation is not None and continuation.end_time != boundary.end_time:
            updated = self._store.update_event_end(boundary, continuation.end_time)
            if updated != 1:
                logger.warning(
                    "overnight_extension_update_mismatch",
                    user_id=user_id,
                    event_type=boundary.event_type.value,
                    event_id=boundary.id,
                    expected=1,
                    updated=updated,
                )
            else:
                logger.info(
                    "overnight_event_extended",
                    user_id=user_id,
                    event_type=boundary.event_type.value,
                    event_id=boundary.id,
                    new_end=continuation.end_time.isoformat(),
                )

        stays = [s for s in extended.stays if s is not continuation and s.timestamp >= start]
        trips = [t for t in extended.trips if t is not continuation and t.timestamp >= start]
        data_gaps = [
            g if g.start_time >= start else g.model_copy(update={"start_time": start})
            for g in extended.data_gaps
            if g.end_time > start
        ]
        return self._persist(user_id, stays, trips, data_gaps)

    def _persist(
        self,
        user_id: str,
        stays: list[TimelineStay],
        trips: list[TimelineTrip],
        data_gaps: list[TimelineDataGap],
    ) -> MovementTimeline:
        """Persist events grouped by their UTC start day, one write per day.

        Each day is stamped with its own version. Days from today on are
        never persisted. A failure on one day leaves earlier days written.
        """
        today = start_of_day(utc_now()).date()
        by_day: dict[date, tuple[list, list, list]] = defaultdict(lambda: ([], [], []))
        for stay in stays:
            by_day[stay.timestamp.astimezone(UTC).date()][0].append(stay)
        for trip in trips:
            by_day[trip.timestamp.astimezone(UTC).date()][1].append(trip)
        for gap in data_gaps:
            by_day[gap.start_time.astimezone(UTC).date()][2].append(gap)

        skipped = [d for d in by_day if d >= today]
        if skipped:
            logger.debug("skipping_current_day_persistence", user_id=user_id, days=[d.isoformat() for d in skipped])

        saved = MovementTimeline.empty(user_id, TimelineDataSource.CACHED)
        days = sorted(d for d in by_day if d < today)
        if not days:
            return saved

        versions = self._versions.compute_many(user_id, days)
        for day in days:
            day_stays, day_trips, day_gaps = by_day[day]
            version = versions[day]
            result = self._store.save_events(
                user_id,
                [s.model_copy(update={"timeline_version": version, "is_stale": False}) for s in day_stays],
                [t.model_copy(update={"timeline_version": version, "is_stale": False}) for t in day_trips],
                day_gaps,
            )
            saved = saved.model_copy(
                update={
                    "stays": [*saved.stays, *result.stays],
                    "trips": [*saved.trips, *result.trips],
                    "data_gaps": [*saved.data_gaps, *result.data_gaps],
                }
            )

        return saved.model_copy(update={"last_updated": datetime.now(UTC)}).chronological()


@lru_cache(maxsize=1)
def get_overnight_timeline_processor() -> OvernightTimelineProcessor:
    """Get singleton OvernightTimelineProcessor instance."""
    return OvernightTimelineProcessor()
