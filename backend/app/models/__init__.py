"""Pydantic models module."""

from app.models.favorite import (
    FavoriteDeletionStrategy,
    FavoriteLocation,
    FavoriteLocationType,
    LocationResolution,
)
from app.models.gps import DetectionResult, GpsPoint, StayCandidate, TripCandidate
from app.models.regeneration import (
    FavoriteChangeEvent,
    FavoriteChangeType,
    ImportCompletedEvent,
    InvalidationQueueStats,
    PreferencesChangedEvent,
    QueueStatus,
    RegenerationStrategy,
    RegenerationTask,
    TaskPriority,
    TaskStatus,
)
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

__all__ = [
    # Timeline models
    "LocationSource",
    "MovementTimeline",
    "TimelineDataGap",
    "TimelineDataSource",
    "TimelineEvent",
    "TimelineEventType",
    "TimelinePreferences",
    "TimelineStay",
    "TimelineTrip",
    # GPS and detection models
    "DetectionResult",
    "GpsPoint",
    "StayCandidate",
    "TripCandidate",
    # Favorite models
    "FavoriteDeletionStrategy",
    "FavoriteLocation",
    "FavoriteLocationType",
    "LocationResolution",
    # Regeneration models
    "FavoriteChangeEvent",
    "FavoriteChangeType",
    "ImportCompletedEvent",
    "InvalidationQueueStats",
    "PreferencesChangedEvent",
    "QueueStatus",
    "RegenerationStrategy",
    "RegenerationTask",
    "TaskPriority",
    "TaskStatus",
]
