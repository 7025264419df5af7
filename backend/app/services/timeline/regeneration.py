"""Regeneration of stale cached days.

A cached day turns stale when one of its stays is flagged or its stored
version no longer matches the current favorites and preferences. Stays
detected under older preferences are always derived again from raw GPS.
Otherwise the strategy selector picks the cheapest recomputation that
still yields a consistent day:

- LOCATION_RESOLUTION_ONLY: every stale stay already references a
  favorite, so only names and versions change
- SELECTIVE_MERGE: few stale stays, some without a favorite; names are
  re-resolved and the day is rebuilt only if two stays now look mergeable
- FULL_REGENERATION: delete the day and derive it again from raw GPS
"""

from datetime import date
from functools import lru_cache
from itertools import combinations

import structlog

from app.core.config import Settings, get_settings
from app.models.regeneration import RegenerationStrategy
from app.models.timeline import MovementTimeline, TimelineDataSource, TimelineStay
from app.services.exceptions import ServiceError
from app.services.timeline.collaborators import LocationResolver, get_location_resolver
from app.services.timeline.days import ALL_DAYS, ONE_DAY, day_bounds, start_of_day, utc_now
from app.services.timeline.event_store import TimelineEventStore, get_timeline_event_store
from app.services.timeline.overnight import (
    OvernightTimelineProcessor,
    get_overnight_timeline_processor,
)
from app.services.timeline.stay_repository import (
    TimelineStayRepository,
    get_timeline_stay_repository,
)
from app.services.timeline.version import (
    TimelineVersionService,
    get_timeline_version_service,
    same_generation,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Strategy Selection
# =============================================================================


def has_merge_opportunity(stays: list[TimelineStay], window_hours: int) -> bool:
    """Whether two stays at the same favorite start within window_hours of each other.

    A coarse heuristic: it does not recompute the merge rules, it only
    flags days where a merge is plausible. Hours are whole hours.
    """
    for first, second in combinations(stays, 2):
        if first.favorite_id is None or first.favorite_id != second.favorite_id:
            continue
        hours_apart = int(abs((first.timestamp - second.timestamp).total_seconds()) // 3600)
        if hours_apart <= window_hours:
            return True
    return False


class RegenerationStrategySelector:
    """Picks the cheapest sufficient regeneration strategy for a day."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def select(self, stale_stays: list[TimelineStay]) -> RegenerationStrategy:
        if not stale_stays:
            return RegenerationStrategy.FULL_REGENERATION
        if all(s.favorite_id is not None for s in stale_stays):
            return RegenerationStrategy.LOCATION_RESOLUTION_ONLY
        if len(stale_stays) <= self._settings.selective_merge_max_stays:
            return RegenerationStrategy.SELECTIVE_MERGE
        return RegenerationStrategy.FULL_REGENERATION


# =============================================================================
# Service Implementation
# =============================================================================


class TimelineRegenerationService:
    """Brings stale cached days back in line with current inputs."""

    def __init__(
        self,
        event_store: TimelineEventStore | None = None,
        stay_repository: TimelineStayRepository | None = None,
        overnight_processor: OvernightTimelineProcessor | None = None,
        version_service: TimelineVersionService | None = None,
        location_resolver: LocationResolver | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._store = event_store or get_timeline_event_store()
        self._stays = stay_repository or get_timeline_stay_repository()
        self._overnight = overnight_processor or get_overnight_timeline_processor()
        self._versions = version_service or get_timeline_version_service()
        self._resolver = location_resolver or get_location_resolver()
        self._settings = settings or get_settings()
        self._selector = RegenerationStrategySelector(self._settings)

    def regenerate_day(self, user_id: str, day: date) -> MovementTimeline:
        """Regenerate one cached day with the cheapest sufficient strategy.

        Args:
            user_id: Owning user.
            day: Day to regenerate, or ALL_DAYS for every stale day of the user.

        Returns:
            The day's persisted timeline after regeneration, tagged CACHED.
            Days from today on are never cached and come back empty.

        Raises:
            DetectionEngineError: If a full regeneration cannot detect.
            TimelineStorageError: If reading or writing storage fails.
        """
        if day == ALL_DAYS:
            return self._regenerate_all_stale(user_id)

        if day >= start_of_day(utc_now()).date():
            logger.debug("regeneration_skipped_current_day", user_id=user_id, day=day.isoformat())
            return MovementTimeline.empty(user_id, TimelineDataSource.CACHED)

        start, end = day_bounds(day)
        version = self._versions.compute(user_id, day)
        day_stays = self._stays.find_stays_for_day(user_id, start, end)
        if any(not same_generation(s.timeline_version, version) for s in day_stays):
            # Preferences moved on since these stays were detected
            logger.info("timeline_generation_outdated", user_id=user_id, day=day.isoformat())
            return self._regenerate_from_scratch(user_id, day)

        stale_stays = [s for s in day_stays if s.is_stale]
        if not stale_stays and day_stays:
            # Nothing flagged: only favorite labels changed elsewhere
            return self._restamp(user_id, day, version)

        strategy = self._selector.select(stale_stays)
        logger.info(
            "timeline_regeneration_started",
            user_id=user_id,
            day=day.isoformat(),
            strategy=strategy.value,
            stale_stays=len(stale_stays),
        )

        if strategy == RegenerationStrategy.LOCATION_RESOLUTION_ONLY:
            return self._regenerate_locations(user_id, day, stale_stays, version)
        if strategy == RegenerationStrategy.SELECTIVE_MERGE:
            return self._regenerate_selectively(user_id, day, stale_stays, version)
        return self._regenerate_from_scratch(user_id, day)

    def regenerate_range(self, user_id: str, start_date: date, end_date: date) -> MovementTimeline:
        """Rebuild [start_date, end_date] in one detection pass, persisted per day.

        The range is clamped to yesterday. Used by the background
        scheduler for bulk work.

        Returns:
            Snapshot of the newly persisted events.
        """
        yesterday = start_of_day(utc_now()).date() - ONE_DAY
        end_date = min(end_date, yesterday)
        if start_date > end_date:
            logger.debug("regeneration_range_empty", user_id=user_id, start_date=start_date.isoformat())
            return MovementTimeline.empty(user_id, TimelineDataSource.CACHED)

        start = day_bounds(start_date)[0]
        end = day_bounds(end_date)[1]
        self._store.delete_timeline_data(user_id, start, end)
        result = self._overnight.process_time_range(user_id, start, end)
        logger.info(
            "timeline_range_regenerated",
            user_id=user_id,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
            days=(end_date - start_date).days + 1,
            stays=len(result.stays),
            trips=len(result.trips),
        )
        return result

    # =========================================================================
    # Strategies
    # =========================================================================

    def _regenerate_all_stale(self, user_id: str) -> MovementTimeline:
        days = self._stays.find_stale_days(user_id)
        logger.info("regenerating_all_stale_days", user_id=user_id, days=len(days))

        combined = MovementTimeline.empty(user_id, TimelineDataSource.CACHED)
        for stale_day in days:
            result = self.regenerate_day(user_id, stale_day)
            combined = combined.model_copy(
                update={
                    "stays": [*combined.stays, *result.stays],
                    "trips": [*combined.trips, *result.trips],
                    "data_gaps": [*combined.data_gaps, *result.data_gaps],
                }
            )
        return combined.chronological()

    def _regenerate_locations(
        self, user_id: str, day: date, stale_stays: list[TimelineStay], version: str
    ) -> MovementTimeline:
        self._resolve_stays(user_id, stale_stays, version)
        return self._restamp(user_id, day, version)

    def _regenerate_selectively(
        self, user_id: str, day: date, stale_stays: list[TimelineStay], version: str
    ) -> MovementTimeline:
        try:
            resolved = self._resolve_stays(user_id, stale_stays, version)
            if has_merge_opportunity(resolved, self._settings.merge_opportunity_window_hours):
                logger.info("merge_opportunity_detected", user_id=user_id, day=day.isoformat())
                return self._regenerate_from_scratch(user_id, day)
            return self._restamp(user_id, day, version)
        except ServiceError as e:
            logger.warning(
                "selective_merge_failed",
                user_id=user_id,
                day=day.isoformat(),
                error=str(e),
            )
            return self._regenerate_from_scratch(user_id, day)

    def _regenerate_from_scratch(self, user_id: str, day: date) -> MovementTimeline:
        start, end = day_bounds(day)
        self._store.delete_timeline_data(user_id, start, end)
        self._overnight.process_whole_day(user_id, day)
        logger.info("timeline_day_regenerated", user_id=user_id, day=day.isoformat())
        return self._store.get_existing_events(user_id, start, end)

    def _resolve_stays(self, user_id: str, stays: list[TimelineStay], version: str) -> list[TimelineStay]:
        resolved = []
        resolutions = self._resolver.resolve_many(user_id, [(s.latitude, s.longitude) for s in stays])
        for stay, resolution in zip(stays, resolutions):
            updated = stay.model_copy(
                update={
                    "location_name": resolution.name,
                    "location_source": resolution.source,
                    "favorite_id": resolution.favorite_id,
                    "geocoding_id": resolution.geocoding_id,
                    "is_stale": False,
                    "timeline_version": version,
                }
            )
            self._stays.update_stay_location(updated)
            resolved.append(updated)
        logger.debug("stay_locations_resolved", user_id=user_id, stays=len(resolved))
        return resolved

    def _restamp(self, user_id: str, day: date, version: str) -> MovementTimeline:
        start, end = day_bounds(day)
        self._store.update_versions(user_id, start, end, version)
        return self._store.get_existing_events(user_id, start, end)


@lru_cache(maxsize=1)
def get_timeline_regeneration_service() -> TimelineRegenerationService:
    """Get singleton TimelineRegenerationService instance."""
    return TimelineRegenerationService()
