"""Reactions to reference-data changes.

Favorite edits, preference changes and completed imports all turn some
cached days stale. This module works out which ones and schedules the
cheapest sufficient repair:

- Fast path: a POINT favorite rename only rewrites names in place,
  then re-stamps versions through the invalidation queue
- Slow path: additions, deletions and AREA renames can merge or split
  stays, so affected stays are flagged stale and a HIGH regeneration
  task is queued over their days
- Preference changes and imports queue LOW tasks over whole ranges
"""

from dataclasses import dataclass, field
from datetime import UTC, date, timedelta
from functools import lru_cache

import structlog

from app.core.config import Settings, get_settings
from app.models.favorite import FavoriteDeletionStrategy, FavoriteLocation
from app.models.regeneration import (
    FavoriteChangeEvent,
    FavoriteChangeType,
    ImportCompletedEvent,
    PreferencesChangedEvent,
    RegenerationTask,
)
from app.models.timeline import LocationSource, TimelineStay
from app.services.exceptions import ServiceError
from app.services.timeline.collaborators import LocationResolver, get_location_resolver
from app.services.timeline.days import ONE_DAY, start_of_day, utc_now
from app.services.timeline.invalidation import TimelineInvalidationQueue, get_invalidation_queue
from app.services.timeline.scheduler import (
    BackgroundRegenerationScheduler,
    get_background_regeneration_scheduler,
)
from app.services.timeline.stay_repository import (
    TimelineStayRepository,
    get_timeline_stay_repository,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Impact Analysis
# =============================================================================


@dataclass
class ImpactAnalysis:
    """Which stays a favorite change touches and whether structure may change."""

    structural: bool
    stays: list[TimelineStay] = field(default_factory=list)
    reason: str = ""

    @property
    def affected_dates(self) -> list[date]:
        return sorted({s.timestamp.astimezone(UTC).date() for s in self.stays})


class FavoriteImpactAnalyzer:
    """Finds the stays affected by a favorite change."""

    def __init__(
        self,
        stay_repository: TimelineStayRepository | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._stays = stay_repository or get_timeline_stay_repository()
        self._settings = settings or get_settings()

    def analyze(self, event: FavoriteChangeEvent) -> ImpactAnalysis:
        favorite = event.favorite
        if event.change_type == FavoriteChangeType.ADDED:
            stays = self._stays.find_stays_matching(
                favorite,
                self._settings.favorite_point_impact_radius_meters,
                self._settings.favorite_area_impact_buffer_meters,
            )
            # A new favorite can merge neighbouring stays
            return ImpactAnalysis(True, stays, f"new {favorite.type.value} favorite matches {len(stays)} stays")

        stays = self._stays.find_stays_by_favorite(event.user_id, favorite.id)
        if event.change_type == FavoriteChangeType.DELETED:
            return ImpactAnalysis(True, stays, f"deleted favorite referenced by {len(stays)} stays")

        if favorite.has_merge_impact:
            return ImpactAnalysis(True, stays, f"renamed area favorite referenced by {len(stays)} stays")
        return ImpactAnalysis(False, stays, "point favorite rename")


# =============================================================================
# Deletion Strategies
# =============================================================================


class FavoriteDeletionHandler:
    """Detaches stays from a deleted favorite."""

    def __init__(
        self,
        stay_repository: TimelineStayRepository | None = None,
        location_resolver: LocationResolver | None = None,
    ) -> None:
        self._stays = stay_repository or get_timeline_stay_repository()
        self._resolver = location_resolver or get_location_resolver()

    def apply(self, stays: list[TimelineStay], strategy: FavoriteDeletionStrategy) -> list[TimelineStay]:
        """Clear the favorite reference of each stay and rename it per strategy.

        Returns:
            The updated stays.
        """
        updated = []
        for stay in stays:
            resolution = None
            if strategy == FavoriteDeletionStrategy.REVERT_TO_GEOCODING:
                try:
                    resolution = self._resolver.geocode(stay.latitude, stay.longitude)
                except ServiceError as e:
                    logger.warning("favorite_deletion_geocoding_failed", stay_id=stay.id, error=str(e))
                if resolution is None:
                    logger.debug("favorite_deletion_keeps_historical_name", stay_id=stay.id)

            if resolution is not None:
                changes = {
                    "location_name": resolution.name,
                    "location_source": LocationSource.GEOCODED,
                    "geocoding_id": resolution.geocoding_id,
                }
            else:
                # Name kept as-is
                changes = {"location_source": LocationSource.HISTORICAL, "geocoding_id": None}

            stay = stay.model_copy(update={**changes, "favorite_id": None})
            self._stays.update_stay_location(stay)
            updated.append(stay)

        logger.info("favorite_deletion_applied", strategy=strategy.value, stays=len(updated))
        return updated


# =============================================================================
# Change Handler
# =============================================================================


class FavoriteChangeHandler:
    """Turns reference-data change events into invalidation and regeneration work."""

    def __init__(
        self,
        stay_repository: TimelineStayRepository | None = None,
        invalidation_queue: TimelineInvalidationQueue | None = None,
        scheduler: BackgroundRegenerationScheduler | None = None,
        analyzer: FavoriteImpactAnalyzer | None = None,
        deletion_handler: FavoriteDeletionHandler | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._stays = stay_repository or get_timeline_stay_repository()
        self._invalidation = invalidation_queue or get_invalidation_queue()
        self._scheduler = scheduler or get_background_regeneration_scheduler()
        self._analyzer = analyzer or FavoriteImpactAnalyzer(self._stays, self._settings)
        self._deletion = deletion_handler or FavoriteDeletionHandler(self._stays)

    def handle_favorite_change(self, event: FavoriteChangeEvent) -> dict:
        """React to a favorite being added, renamed or deleted.

        Returns:
            Summary of the work scheduled.
        """
        favorite = event.favorite
        logger.info(
            "favorite_change_received",
            user_id=event.user_id,
            favorite_id=favorite.id,
            change_type=event.change_type.value,
        )

        analysis = self._analyzer.analyze(event)
        if not analysis.stays:
            logger.debug("favorite_change_without_impact", favorite_id=favorite.id, reason=analysis.reason)
            return {"affected_stays": 0, "structural": analysis.structural}

        if not analysis.structural:
            return self._rename_in_place(event.user_id, favorite)

        stays = analysis.stays
        if event.change_type == FavoriteChangeType.DELETED:
            strategy = FavoriteDeletionStrategy(self._settings.favorite_deletion_strategy)
            stays = self._deletion.apply(stays, strategy)

        return self._schedule_structural_repair(event.user_id, stays, analysis)

    def _rename_in_place(self, user_id: str, favorite: FavoriteLocation) -> dict:
        stays = self._stays.rename_favorite_stays(user_id, favorite.id, favorite.name)
        queued = self._invalidation.mark_stale_and_queue(stays)
        logger.info("favorite_renamed_in_place", user_id=user_id, favorite_id=favorite.id, stays=len(stays))
        return {"affected_stays": len(stays), "structural": False, "queued_days": queued}

    def _schedule_structural_repair(self, user_id: str, stays: list[TimelineStay], analysis: ImpactAnalysis) -> dict:
        self._stays.mark_stale([s.id for s in stays if s.id is not None])

        today = start_of_day(utc_now()).date()
        dates = [d for d in analysis.affected_dates if d < today]
        task = self._scheduler.enqueue_high_priority(user_id, dates)

        logger.info(
            "favorite_structural_change_scheduled",
            user_id=user_id,
            stays=len(stays),
            dates=len(dates),
            task_id=task.id if task else None,
            reason=analysis.reason,
        )
        return {
            "affected_stays": len(stays),
            "structural": True,
            "affected_dates": [d.isoformat() for d in dates],
            "task_id": task.id if task else None,
        }

    def handle_preferences_changed(self, event: PreferencesChangedEvent) -> RegenerationTask | None:
        """Queue a LOW regeneration over the recent past.

        Older days are repaired lazily: their stored versions no longer
        match and the read path regenerates them.
        """
        yesterday = start_of_day(utc_now()).date() - ONE_DAY
        start_date = yesterday - timedelta(days=self._settings.preferences_regeneration_days - 1)
        logger.info(
            "timeline_preferences_changed",
            user_id=event.user_id,
            reset_to_defaults=event.reset_to_defaults,
            start_date=start_date.isoformat(),
            end_date=yesterday.isoformat(),
        )
        return self._scheduler.enqueue_low_priority(event.user_id, start_date, yesterday)

    def handle_import_completed(self, event: ImportCompletedEvent) -> RegenerationTask | None:
        """Queue a LOW regeneration over the imported past days."""
        yesterday = start_of_day(utc_now()).date() - ONE_DAY
        end_date = min(event.end_date, yesterday)
        if event.start_date > end_date:
            logger.debug("import_range_not_in_past", user_id=event.user_id)
            return None
        logger.info(
            "gps_import_completed",
            user_id=event.user_id,
            start_date=event.start_date.isoformat(),
            end_date=end_date.isoformat(),
        )
        return self._scheduler.enqueue_low_priority(event.user_id, event.start_date, end_date)


@lru_cache(maxsize=1)
def get_favorite_change_handler() -> FavoriteChangeHandler:
    """Get singleton FavoriteChangeHandler instance."""
    return FavoriteChangeHandler()
