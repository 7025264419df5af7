"""Shared fixtures for timeline service tests.

In-memory stand-ins for the Supabase-backed stores and the external
collaborators (GPS source, detection engine, location resolver), so the
timeline services can be exercised together without a database.
"""

from datetime import UTC, date, datetime, timedelta

import pytest

from app.core.config import Settings
from app.models.favorite import FavoriteLocation, LocationResolution
from app.models.gps import DetectionResult, GpsPoint
from app.models.timeline import (
    LocationSource,
    MovementTimeline,
    TimelineDataGap,
    TimelineDataSource,
    TimelineEvent,
    TimelineEventType,
    TimelinePreferences,
    TimelineStay,
    TimelineTrip,
)
from app.services.timeline.assembler import TimelineAssembler
from app.services.timeline.collaborators import default_preferences
from app.services.timeline.days import start_of_day, utc_now
from app.services.timeline.generation import TimelineGenerationService
from app.services.timeline.mixed_handler import MixedRangeHandler
from app.services.timeline.overnight import OvernightTimelineProcessor
from app.services.timeline.past_handler import PastRangeHandler
from app.services.timeline.regeneration import TimelineRegenerationService
from app.services.timeline.router import TimelineRequestRouter
from app.services.timeline.version import TimelineVersionService

USER_ID = "user-1"


# =============================================================================
# In-Memory Stores
# =============================================================================


class InMemoryEventStore:
    """Event store keeping stays, trips and gaps in lists."""

    def __init__(self) -> None:
        self.stays: list[TimelineStay] = []
        self.trips: list[TimelineTrip] = []
        self.gaps: list[TimelineDataGap] = []
        self.deletions: list[tuple[str, datetime, datetime]] = []
        self._next_id = 1

    def _with_id(self, entity):
        entity = entity.model_copy(update={"id": self._next_id})
        self._next_id += 1
        return entity

    def add_stay(self, stay: TimelineStay) -> TimelineStay:
        saved = self._with_id(stay)
        self.stays.append(saved)
        return saved

    def add_trip(self, trip: TimelineTrip) -> TimelineTrip:
        saved = self._with_id(trip)
        self.trips.append(saved)
        return saved

    def add_gap(self, gap: TimelineDataGap) -> TimelineDataGap:
        saved = self._with_id(gap)
        self.gaps.append(saved)
        return saved

    def _events(self, user_id: str) -> list[TimelineEvent]:
        return [
            TimelineEvent.of(e)
            for e in [*self.stays, *self.trips, *self.gaps]
            if e.user_id == user_id
        ]

    def has_complete_data(self, user_id: str, start: datetime, end: datetime) -> bool:
        for event in self._events(user_id):
            if event.event_type == TimelineEventType.DATA_GAP:
                if event.start_time <= start and event.end_time >= end:
                    return True
            elif event.start_time < end and event.end_time > start:
                return True
        return False

    def get_existing_events(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        def overlapping(items, start_of):
            return sorted(
                (i for i in items if i.user_id == user_id and start_of(i) < end and i.end_time > start),
                key=start_of,
            )

        return MovementTimeline(
            user_id=user_id,
            stays=overlapping(self.stays, lambda s: s.timestamp),
            trips=overlapping(self.trips, lambda t: t.timestamp),
            data_gaps=overlapping(self.gaps, lambda g: g.start_time),
            data_source=TimelineDataSource.CACHED,
            last_updated=datetime.now(UTC),
        )

    def find_latest_event_before(self, user_id: str, timestamp: datetime) -> TimelineEvent | None:
        candidates = [e for e in self._events(user_id) if e.end_time <= timestamp]
        if not candidates:
            return None
        return max(candidates, key=lambda e: (e.end_time, e.start_time))

    def delete_timeline_data(self, user_id: str, start: datetime, end: datetime) -> None:
        def keep(owner: str, ts: datetime) -> bool:
            return not (owner == user_id and start <= ts < end)

        self.stays = [s for s in self.stays if keep(s.user_id, s.timestamp)]
        self.trips = [t for t in self.trips if keep(t.user_id, t.timestamp)]
        self.gaps = [g for g in self.gaps if keep(g.user_id, g.start_time)]
        self.deletions.append((user_id, start, end))

    def save_events(self, user_id, stays, trips, data_gaps) -> MovementTimeline:
        return MovementTimeline(
            user_id=user_id,
            stays=[self.add_stay(s) for s in stays],
            trips=[self.add_trip(t) for t in trips],
            data_gaps=[self.add_gap(g) for g in data_gaps],
            data_source=TimelineDataSource.CACHED,
        )

    def update_event_end(self, event: TimelineEvent, new_end: datetime) -> int:
        collection = {
            TimelineEventType.STAY: self.stays,
            TimelineEventType.TRIP: self.trips,
            TimelineEventType.DATA_GAP: self.gaps,
        }[event.event_type]
        for i, item in enumerate(collection):
            if item.id == event.id:
                collection[i] = TimelineEvent.of(item).with_end_time(new_end)
                return 1
        return 0

    def update_versions(self, user_id: str, start: datetime, end: datetime, version: str) -> None:
        def restamp(items):
            return [
                i.model_copy(update={"timeline_version": version})
                if i.user_id == user_id and start <= i.timestamp < end
                else i
                for i in items
            ]

        self.stays = restamp(self.stays)
        self.trips = restamp(self.trips)


class InMemoryStayRepository:
    """Stay repository over the stays of an InMemoryEventStore."""

    def __init__(self, store: InMemoryEventStore) -> None:
        self._store = store

    def _user_stays(self, user_id: str) -> list[TimelineStay]:
        return sorted((s for s in self._store.stays if s.user_id == user_id), key=lambda s: s.timestamp)

    def find_stays_for_day(self, user_id, start, end):
        return [s for s in self._user_stays(user_id) if start <= s.timestamp < end]

    def find_stale_days(self, user_id):
        return sorted({s.timestamp.astimezone(UTC).date() for s in self._user_stays(user_id) if s.is_stale})

    def find_stays_by_favorite(self, user_id, favorite_id):
        return [s for s in self._user_stays(user_id) if s.favorite_id == favorite_id]

    def find_stays_matching(self, favorite, point_radius_m, area_buffer_m):
        return [
            s
            for s in self._user_stays(favorite.user_id)
            if favorite.matches(s.latitude, s.longitude, point_radius_m, area_buffer_m)
        ]

    def mark_stale(self, stay_ids):
        ids = set(stay_ids)
        self._store.stays = [
            s.model_copy(update={"is_stale": True}) if s.id in ids else s for s in self._store.stays
        ]
        return len(ids)

    def update_stay_location(self, stay):
        self._store.stays = [stay if s.id == stay.id else s for s in self._store.stays]

    def rename_favorite_stays(self, user_id, favorite_id, new_name):
        renamed = []
        for i, stay in enumerate(self._store.stays):
            if stay.user_id == user_id and stay.favorite_id == favorite_id:
                self._store.stays[i] = stay.model_copy(update={"location_name": new_name})
                renamed.append(self._store.stays[i])
        return renamed


# =============================================================================
# Collaborators
# =============================================================================


class FakeGpsSource:
    def __init__(self) -> None:
        self.points: list[GpsPoint] = []

    def add_points(self, *timestamps: datetime, latitude: float = 52.52, longitude: float = 13.405) -> None:
        self.points.extend(GpsPoint(timestamp=ts, latitude=latitude, longitude=longitude) for ts in timestamps)
        self.points.sort(key=lambda p: p.timestamp)

    def fetch_points(self, user_id, start, end):
        return [p for p in self.points if start <= p.timestamp < end]

    def has_points(self, user_id, start, end):
        return bool(self.fetch_points(user_id, start, end))


class FakeDetectionEngine:
    """Returns a fixed detection result, or raises a configured error."""

    def __init__(self) -> None:
        self.result = DetectionResult()
        self.error: Exception | None = None
        self.calls = 0

    def detect(self, points, preferences):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class FakeLocationResolver:
    """Resolves by exact coordinates, defaulting to a geocoded name."""

    def __init__(self) -> None:
        self.resolutions: dict[tuple[float, float], LocationResolution] = {}
        self.geocoded: dict[tuple[float, float], LocationResolution] = {}
        self.geocode_error: Exception | None = None

    def resolve(self, user_id, latitude, longitude):
        return self.resolutions.get(
            (latitude, longitude),
            LocationResolution(name="Somewhere", source=LocationSource.GEOCODED, geocoding_id=99),
        )

    def resolve_many(self, user_id, coordinates):
        return [self.resolve(user_id, latitude, longitude) for latitude, longitude in coordinates]

    def geocode(self, latitude, longitude):
        if self.geocode_error is not None:
            raise self.geocode_error
        return self.geocoded.get((latitude, longitude))


class FakePreferenceStore:
    def __init__(self, preferences: TimelinePreferences) -> None:
        self.preferences = preferences

    def get_preferences(self, user_id):
        return self.preferences


class FakeFavoriteRegistry:
    def __init__(self) -> None:
        self.favorites: list[FavoriteLocation] = []

    def list_favorites(self, user_id):
        return [f for f in self.favorites if f.user_id == user_id]


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def user_id() -> str:
    return USER_ID


@pytest.fixture
def settings() -> Settings:
    """Settings with one-hour data gap recording enabled."""
    return Settings(
        _env_file=None,
        timeline_data_gap_threshold_seconds=3600,
        invalidation_max_batch_size=20,
        invalidation_max_retries=3,
        invalidation_retry_delay_seconds=300,
        selective_merge_max_stays=10,
        merge_opportunity_window_hours=2,
        favorite_deletion_strategy="REVERT_TO_GEOCODING",
    )


@pytest.fixture
def preferences(settings: Settings) -> TimelinePreferences:
    return default_preferences(settings)


@pytest.fixture
def today() -> date:
    return start_of_day(utc_now()).date()


@pytest.fixture
def past_day(today: date) -> date:
    """A day safely in the past."""
    return today - timedelta(days=10)


@pytest.fixture
def event_store() -> InMemoryEventStore:
    return InMemoryEventStore()


@pytest.fixture
def stay_repository(event_store: InMemoryEventStore) -> InMemoryStayRepository:
    return InMemoryStayRepository(event_store)


@pytest.fixture
def gps_source() -> FakeGpsSource:
    return FakeGpsSource()


@pytest.fixture
def detection_engine() -> FakeDetectionEngine:
    return FakeDetectionEngine()


@pytest.fixture
def location_resolver() -> FakeLocationResolver:
    return FakeLocationResolver()


@pytest.fixture
def preference_store(preferences: TimelinePreferences) -> FakePreferenceStore:
    return FakePreferenceStore(preferences)


@pytest.fixture
def favorite_registry() -> FakeFavoriteRegistry:
    return FakeFavoriteRegistry()


@pytest.fixture
def version_service(favorite_registry, preference_store) -> TimelineVersionService:
    return TimelineVersionService(favorite_registry, preference_store)


@pytest.fixture
def generator(gps_source, detection_engine, location_resolver, preference_store) -> TimelineGenerationService:
    return TimelineGenerationService(gps_source, detection_engine, location_resolver, preference_store)


@pytest.fixture
def overnight_processor(event_store, generator, version_service) -> OvernightTimelineProcessor:
    return OvernightTimelineProcessor(event_store, generator, version_service)


@pytest.fixture
def assembler(event_store, preference_store) -> TimelineAssembler:
    return TimelineAssembler(event_store, preference_store)


@pytest.fixture
def regeneration_service(
    event_store, stay_repository, overnight_processor, version_service, location_resolver, settings
) -> TimelineRegenerationService:
    return TimelineRegenerationService(
        event_store, stay_repository, overnight_processor, version_service, location_resolver, settings
    )


@pytest.fixture
def past_handler(
    event_store, overnight_processor, version_service, regeneration_service, assembler
) -> PastRangeHandler:
    return PastRangeHandler(event_store, overnight_processor, version_service, regeneration_service, assembler)


@pytest.fixture
def mixed_handler(past_handler, generator, assembler) -> MixedRangeHandler:
    return MixedRangeHandler(past_handler, generator, assembler)


@pytest.fixture
def request_router(past_handler, mixed_handler) -> TimelineRequestRouter:
    return TimelineRequestRouter(past_handler, mixed_handler)


@pytest.fixture
def make_stay():
    """Factory for unsaved stays."""

    def _make(
        start: datetime,
        hours: float = 1.0,
        favorite_id: int | None = None,
        latitude: float = 52.52,
        longitude: float = 13.405,
        name: str = "Cafe",
        version: str | None = None,
        is_stale: bool = False,
        user_id: str = USER_ID,
    ) -> TimelineStay:
        return TimelineStay(
            user_id=user_id,
            timestamp=start,
            duration_seconds=int(hours * 3600),
            latitude=latitude,
            longitude=longitude,
            location_name=name,
            location_source=LocationSource.FAVORITE if favorite_id else LocationSource.GEOCODED,
            favorite_id=favorite_id,
            is_stale=is_stale,
            timeline_version=version,
        )

    return _make


@pytest.fixture
def make_trip():
    """Factory for unsaved trips."""

    def _make(start: datetime, hours: float = 0.5, version: str | None = None, user_id: str = USER_ID) -> TimelineTrip:
        return TimelineTrip(
            user_id=user_id,
            timestamp=start,
            duration_seconds=int(hours * 3600),
            start_latitude=52.52,
            start_longitude=13.405,
            end_latitude=52.53,
            end_longitude=13.41,
            distance_meters=1500.0,
            movement_type="WALK",
            timeline_version=version,
        )

    return _make
