"""Movement timeline models.

Pydantic models for the entities a timeline is made of (stays, trips,
data gaps), the snapshot returned to callers, and the per-user
generation preferences that drive detection and gap recording.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Enums
# =============================================================================


class TimelineDataSource(str, Enum):
    """Where the data of a snapshot came from.

    Sources:
    - LIVE: Generated on request from raw GPS, never persisted
    - CACHED: Read from persisted timeline events
    - MIXED: Cached history combined with live data for today
    - REGENERATING: Cached data returned while a regeneration is in flight
    """

    LIVE = "LIVE"
    CACHED = "CACHED"
    MIXED = "MIXED"
    REGENERATING = "REGENERATING"


class LocationSource(str, Enum):
    """How a stay's location name was resolved."""

    FAVORITE = "FAVORITE"
    GEOCODED = "GEOCODED"
    HISTORICAL = "HISTORICAL"


class TimelineEventType(str, Enum):
    """Variant tag for the three kinds of timeline events."""

    STAY = "STAY"
    TRIP = "TRIP"
    DATA_GAP = "DATA_GAP"


# =============================================================================
# Timeline Entities
# =============================================================================


class TimelineStay(BaseModel):
    """A period spent at one location."""

    model_config = ConfigDict(populate_by_name=True)

    id: int | None = Field(None, description="Persisted row ID")
    user_id: str = Field(..., alias="userId", description="Owning user ID")
    timestamp: datetime = Field(..., description="Stay start (UTC)")
    duration_seconds: int = Field(..., ge=0, alias="durationSeconds", description="Stay duration")
    latitude: float = Field(..., description="Stay latitude")
    longitude: float = Field(..., description="Stay longitude")
    location_name: str | None = Field(None, alias="locationName", description="Resolved location name")
    location_source: LocationSource = Field(
        LocationSource.HISTORICAL, alias="locationSource", description="How the name was resolved"
    )
    favorite_id: int | None = Field(None, alias="favoriteId", description="Referenced favorite location")
    geocoding_id: int | None = Field(None, alias="geocodingId", description="Referenced geocoding result")
    is_stale: bool = Field(False, alias="isStale", description="Marked for regeneration")
    timeline_version: str | None = Field(
        None, alias="timelineVersion", description="Version fingerprint at generation time"
    )
    last_updated: datetime | None = Field(None, alias="lastUpdated", description="Last write timestamp")

    @property
    def end_time(self) -> datetime:
        return self.timestamp + timedelta(seconds=self.duration_seconds)


class TimelineTrip(BaseModel):
    """Movement between two stays."""

    model_config = ConfigDict(populate_by_name=True)

    id: int | None = Field(None, description="Persisted row ID")
    user_id: str = Field(..., alias="userId", description="Owning user ID")
    timestamp: datetime = Field(..., description="Trip start (UTC)")
    duration_seconds: int = Field(..., ge=0, alias="durationSeconds", description="Trip duration")
    start_latitude: float = Field(..., alias="startLatitude")
    start_longitude: float = Field(..., alias="startLongitude")
    end_latitude: float = Field(..., alias="endLatitude")
    end_longitude: float = Field(..., alias="endLongitude")
    distance_meters: float = Field(0.0, ge=0.0, alias="distanceMeters", description="Travelled distance")
    movement_type: str = Field("UNKNOWN", alias="movementType", description="Movement classification")
    path: list[tuple[float, float]] | None = Field(
        None, description="Optional path geometry as (latitude, longitude) pairs"
    )
    is_stale: bool = Field(False, alias="isStale")
    timeline_version: str | None = Field(None, alias="timelineVersion")
    last_updated: datetime | None = Field(None, alias="lastUpdated")

    @property
    def end_time(self) -> datetime:
        return self.timestamp + timedelta(seconds=self.duration_seconds)


class TimelineDataGap(BaseModel):
    """An interval [start_time, end_time) with no GPS coverage."""

    model_config = ConfigDict(populate_by_name=True)

    id: int | None = Field(None, description="Persisted row ID")
    user_id: str = Field(..., alias="userId", description="Owning user ID")
    start_time: datetime = Field(..., alias="startTime", description="Gap start (UTC)")
    end_time: datetime = Field(..., alias="endTime", description="Gap end (UTC, exclusive)")
    last_updated: datetime | None = Field(None, alias="lastUpdated")

    @property
    def duration_seconds(self) -> int:
        return int((self.end_time - self.start_time).total_seconds())


TimelineEntity = TimelineStay | TimelineTrip | TimelineDataGap


@dataclass(frozen=True)
class TimelineEvent:
    """Any timeline entity, projected onto a common start/end interval."""

    event_type: TimelineEventType
    entity: TimelineEntity

    @classmethod
    def of(cls, entity: TimelineEntity) -> TimelineEvent:
        if isinstance(entity, TimelineStay):
            return cls(TimelineEventType.STAY, entity)
        if isinstance(entity, TimelineTrip):
            return cls(TimelineEventType.TRIP, entity)
        return cls(TimelineEventType.DATA_GAP, entity)

    @property
    def id(self) -> int | None:
        return self.entity.id

    @property
    def start_time(self) -> datetime:
        if isinstance(self.entity, TimelineDataGap):
            return self.entity.start_time
        return self.entity.timestamp

    @property
    def end_time(self) -> datetime:
        return self.entity.end_time

    def with_end_time(self, end_time: datetime) -> TimelineEntity:
        """Copy of the wrapped entity stretched or shrunk to end at end_time."""
        if isinstance(self.entity, TimelineDataGap):
            return self.entity.model_copy(update={"end_time": end_time})
        duration = max(0, int((end_time - self.entity.timestamp).total_seconds()))
        return self.entity.model_copy(update={"duration_seconds": duration})


# =============================================================================
# Snapshot
# =============================================================================


class MovementTimeline(BaseModel):
    """Timeline snapshot for a requested interval.

    A value object returned to callers; only its stays, trips and data
    gaps are ever persisted.
    """

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    stays: list[TimelineStay] = Field(default_factory=list)
    trips: list[TimelineTrip] = Field(default_factory=list)
    data_gaps: list[TimelineDataGap] = Field(default_factory=list, alias="dataGaps")
    data_source: TimelineDataSource = Field(
        TimelineDataSource.LIVE, alias="dataSource", description="Origin of the snapshot data"
    )
    last_updated: datetime | None = Field(None, alias="lastUpdated")
    is_stale: bool = Field(False, alias="isStale")

    @classmethod
    def empty(cls, user_id: str, data_source: TimelineDataSource) -> MovementTimeline:
        return cls(user_id=user_id, data_source=data_source)

    @property
    def has_activity(self) -> bool:
        return bool(self.stays or self.trips)

    @property
    def is_empty(self) -> bool:
        return not (self.stays or self.trips or self.data_gaps)

    @property
    def is_gap_only(self) -> bool:
        return bool(self.data_gaps) and not self.has_activity

    def events(self) -> list[TimelineEvent]:
        """All events of the snapshot ordered by start time."""
        events = [TimelineEvent.of(e) for e in [*self.stays, *self.trips, *self.data_gaps]]
        return sorted(events, key=lambda e: e.start_time)

    def chronological(self) -> MovementTimeline:
        """Copy with each event list in chronological order."""
        return self.model_copy(
            update={
                "stays": sorted(self.stays, key=lambda s: s.timestamp),
                "trips": sorted(self.trips, key=lambda t: t.timestamp),
                "data_gaps": sorted(self.data_gaps, key=lambda g: g.start_time),
            }
        )


# =============================================================================
# Preferences
# =============================================================================


class TimelinePreferences(BaseModel):
    """Effective generation preferences for one user.

    Detection, merge and gap thresholds. Every field here affects the
    generated timeline and therefore its version fingerprint.
    """

    staypoint_detection_algorithm: str
    staypoint_velocity_threshold: float
    staypoint_max_accuracy_threshold: float
    staypoint_radius_meters: int
    staypoint_min_duration_minutes: int
    trip_detection_algorithm: str
    trip_min_distance_meters: int
    trip_min_duration_minutes: int
    is_merge_enabled: bool
    merge_max_distance_meters: int
    merge_max_time_gap_minutes: int
    data_gap_threshold_seconds: int | None = None
    data_gap_min_duration_seconds: int | None = None

    @property
    def is_gap_detection_enabled(self) -> bool:
        return bool(self.data_gap_threshold_seconds)

    def should_record_gap(self, duration_seconds: float) -> bool:
        """Whether a gap of this length is materialized as a data gap."""
        if not self.is_gap_detection_enabled:
            return False
        if duration_seconds < self.data_gap_threshold_seconds:
            return False
        if self.data_gap_min_duration_seconds and duration_seconds < self.data_gap_min_duration_seconds:
            return False
        return True

    def fingerprint_fields(self) -> list[str]:
        """Generation-affecting values in a fixed order for hashing."""
        return [
            self.staypoint_detection_algorithm,
            str(self.staypoint_velocity_threshold),
            str(self.staypoint_max_accuracy_threshold),
            str(self.staypoint_radius_meters),
            str(self.staypoint_min_duration_minutes),
            self.trip_detection_algorithm,
            str(self.trip_min_distance_meters),
            str(self.trip_min_duration_minutes),
            str(self.is_merge_enabled),
            str(self.merge_max_distance_meters),
            str(self.merge_max_time_gap_minutes),
            str(self.data_gap_threshold_seconds),
            str(self.data_gap_min_duration_seconds),
        ]
