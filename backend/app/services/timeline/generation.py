"""Live timeline generation from raw GPS.

Runs the detection pipeline for an interval: load preferences and GPS
points, detect stays and trips, resolve stay names and record data
gaps. Nothing is persisted here; callers decide what to store.
"""

from datetime import UTC, datetime
from functools import lru_cache

import structlog

from app.models.favorite import LocationResolution
from app.models.gps import StayCandidate, TripCandidate
from app.models.timeline import (
    MovementTimeline,
    TimelineDataSource,
    TimelineStay,
    TimelineTrip,
)
from app.services.timeline.collaborators import (
    DetectionEngine,
    GpsSource,
    LocationResolver,
    PreferenceStore,
    get_detection_engine,
    get_gps_source,
    get_location_resolver,
    get_preference_store,
)
from app.services.timeline.gaps import detect_data_gaps

logger = structlog.get_logger(__name__)


class TimelineGenerationService:
    """Generates LIVE timelines from raw GPS points."""

    def __init__(
        self,
        gps_source: GpsSource | None = None,
        detection_engine: DetectionEngine | None = None,
        location_resolver: LocationResolver | None = None,
        preference_store: PreferenceStore | None = None,
    ) -> None:
        self._gps = gps_source or get_gps_source()
        self._detector = detection_engine or get_detection_engine()
        self._resolver = location_resolver or get_location_resolver()
        self._preferences = preference_store or get_preference_store()

    def has_gps_data(self, user_id: str, start: datetime, end: datetime) -> bool:
        return self._gps.has_points(user_id, start, end)

    def generate(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        """Generate the timeline of [start, end) from GPS.

        Events are clipped to the range: anything starting outside it is
        dropped and anything running past ``end`` is cut at ``end``.

        Args:
            user_id: Owning user.
            start: Range start.
            end: Range end (exclusive).

        Returns:
            LIVE snapshot, possibly empty.

        Raises:
            DetectionEngineError: If the detection collaborator fails.
        """
        preferences = self._preferences.get_preferences(user_id)
        points = self._gps.fetch_points(user_id, start, end)

        stays: list[TimelineStay] = []
        trips: list[TimelineTrip] = []
        if points:
            result = self._detector.detect(points, preferences)
            candidates = [c for c in result.stays if start <= c.timestamp < end]
            resolutions = self._resolver.resolve_many(user_id, [(c.latitude, c.longitude) for c in candidates])
            stays = [
                self._to_stay(user_id, c, resolution, end) for c, resolution in zip(candidates, resolutions)
            ]
            trips = [
                self._to_trip(user_id, c, end) for c in result.trips if start <= c.timestamp < end
            ]

        data_gaps = detect_data_gaps(user_id, points, start, end, preferences)

        logger.info(
            "timeline_generated",
            user_id=user_id,
            start=start.isoformat(),
            end=end.isoformat(),
            points=len(points),
            stays=len(stays),
            trips=len(trips),
            data_gaps=len(data_gaps),
        )
        return MovementTimeline(
            user_id=user_id,
            stays=stays,
            trips=trips,
            data_gaps=data_gaps,
            data_source=TimelineDataSource.LIVE,
            last_updated=datetime.now(UTC),
        ).chronological()

    @staticmethod
    def _to_stay(
        user_id: str, candidate: StayCandidate, resolution: LocationResolution, end: datetime
    ) -> TimelineStay:
        return TimelineStay(
            user_id=user_id,
            timestamp=candidate.timestamp,
            duration_seconds=_clipped_duration(candidate.timestamp, candidate.duration_seconds, end),
            latitude=candidate.latitude,
            longitude=candidate.longitude,
            location_name=resolution.name,
            location_source=resolution.source,
            favorite_id=resolution.favorite_id,
            geocoding_id=resolution.geocoding_id,
        )

    @staticmethod
    def _to_trip(user_id: str, candidate: TripCandidate, end: datetime) -> TimelineTrip:
        return TimelineTrip(
            user_id=user_id,
            timestamp=candidate.timestamp,
            duration_seconds=_clipped_duration(candidate.timestamp, candidate.duration_seconds, end),
            start_latitude=candidate.start_latitude,
            start_longitude=candidate.start_longitude,
            end_latitude=candidate.end_latitude,
            end_longitude=candidate.end_longitude,
            distance_meters=candidate.distance_meters,
            movement_type=candidate.movement_type,
            path=candidate.path,
        )


def _clipped_duration(start: datetime, duration_seconds: int, end: datetime) -> int:
    return min(duration_seconds, int((end - start).total_seconds()))


@lru_cache(maxsize=1)
def get_timeline_generation_service() -> TimelineGenerationService:
    """Get singleton TimelineGenerationService instance."""
    return TimelineGenerationService()
