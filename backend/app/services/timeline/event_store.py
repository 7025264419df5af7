"""Event Store Accessor for persisted timeline events.

Storage-facing operations over the three timeline tables:
- timeline_stays
- timeline_trips
- timeline_data_gaps

Every table stores an explicit ``end_time`` next to the start so that
range reads can use half-open overlap predicates. A read for
[start, end) selects rows with ``start < end AND end_time > start``,
which is what lets a stay that began before ``start`` come back whole
instead of truncated (boundary expansion).

All methods are synchronous: the interactive handlers run on the
request's worker thread and the Celery tasks call them directly.
"""

from datetime import UTC, datetime
from functools import lru_cache
from typing import Any

import structlog

from app.models.timeline import (
    LocationSource,
    MovementTimeline,
    TimelineDataGap,
    TimelineDataSource,
    TimelineEvent,
    TimelineEventType,
    TimelineStay,
    TimelineTrip,
)
from app.services.exceptions import (
    ServiceError,
    SupabaseNotConfiguredError,
    TimelineStorageError,
)
from app.services.supabase.client import get_service_client

logger = structlog.get_logger(__name__)

STAYS_TABLE = "timeline_stays"
TRIPS_TABLE = "timeline_trips"
GAPS_TABLE = "timeline_data_gaps"

# Column holding each table's start instant
_START_COLUMN = {
    TimelineEventType.STAY: "timestamp",
    TimelineEventType.TRIP: "timestamp",
    TimelineEventType.DATA_GAP: "start_time",
}
_TABLE = {
    TimelineEventType.STAY: STAYS_TABLE,
    TimelineEventType.TRIP: TRIPS_TABLE,
    TimelineEventType.DATA_GAP: GAPS_TABLE,
}


# =============================================================================
# Row Mapping
# =============================================================================


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse a PostgREST timestamp, assuming UTC when no offset is given."""
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _optional_timestamp(value: str | None) -> datetime | None:
    return parse_timestamp(value) if value else None


def row_to_stay(row: dict[str, Any]) -> TimelineStay:
    return TimelineStay(
        id=row.get("id"),
        user_id=row["user_id"],
        timestamp=parse_timestamp(row["timestamp"]),
        duration_seconds=row["stay_duration"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        location_name=row.get("location_name"),
        location_source=LocationSource(row.get("location_source") or LocationSource.HISTORICAL.value),
        favorite_id=row.get("favorite_id"),
        geocoding_id=row.get("geocoding_id"),
        is_stale=bool(row.get("is_stale", False)),
        timeline_version=row.get("timeline_version"),
        last_updated=_optional_timestamp(row.get("last_updated")),
    )


def stay_to_row(stay: TimelineStay) -> dict[str, Any]:
    return {
        "user_id": stay.user_id,
        "timestamp": stay.timestamp.isoformat(),
        "end_time": stay.end_time.isoformat(),
        "stay_duration": stay.duration_seconds,
        "latitude": stay.latitude,
        "longitude": stay.longitude,
        "location_name": stay.location_name,
        "location_source": stay.location_source.value,
        "favorite_id": stay.favorite_id,
        "geocoding_id": stay.geocoding_id,
        "is_stale": stay.is_stale,
        "timeline_version": stay.timeline_version,
        "last_updated": datetime.now(UTC).isoformat(),
    }


def row_to_trip(row: dict[str, Any]) -> TimelineTrip:
    path = row.get("path")
    return TimelineTrip(
        id=row.get("id"),
        user_id=row["user_id"],
        timestamp=parse_timestamp(row["timestamp"]),
        duration_seconds=row["trip_duration"],
        start_latitude=row["start_latitude"],
        start_longitude=row["start_longitude"],
        end_latitude=row["end_latitude"],
        end_longitude=row["end_longitude"],
        distance_meters=row.get("distance_meters") or 0.0,
        movement_type=row.get("movement_type") or "UNKNOWN",
        path=[tuple(p) for p in path] if path else None,
        is_stale=bool(row.get("is_stale", False)),
        timeline_version=row.get("timeline_version"),
        last_updated=_optional_timestamp(row.get("last_updated")),
    )


def trip_to_row(trip: TimelineTrip) -> dict[str, Any]:
    return {
        "user_id": trip.user_id,
        "timestamp": trip.timestamp.isoformat(),
        "end_time": trip.end_time.isoformat(),
        "trip_duration": trip.duration_seconds,
        "start_latitude": trip.start_latitude,
        "start_longitude": trip.start_longitude,
        "end_latitude": trip.end_latitude,
        "end_longitude": trip.end_longitude,
        "distance_meters": trip.distance_meters,
        "movement_type": trip.movement_type,
        "path": [list(p) for p in trip.path] if trip.path else None,
        "is_stale": trip.is_stale,
        "timeline_version": trip.timeline_version,
        "last_updated": datetime.now(UTC).isoformat(),
    }


def row_to_gap(row: dict[str, Any]) -> TimelineDataGap:
    return TimelineDataGap(
        id=row.get("id"),
        user_id=row["user_id"],
        start_time=parse_timestamp(row["start_time"]),
        end_time=parse_timestamp(row["end_time"]),
        last_updated=_optional_timestamp(row.get("last_updated")),
    )


def gap_to_row(gap: TimelineDataGap) -> dict[str, Any]:
    return {
        "user_id": gap.user_id,
        "start_time": gap.start_time.isoformat(),
        "end_time": gap.end_time.isoformat(),
        "duration_seconds": gap.duration_seconds,
        "last_updated": datetime.now(UTC).isoformat(),
    }


_ROW_MAPPER = {
    TimelineEventType.STAY: row_to_stay,
    TimelineEventType.TRIP: row_to_trip,
    TimelineEventType.DATA_GAP: row_to_gap,
}


# =============================================================================
# Service Implementation
# =============================================================================


class SupabaseTableService:
    """Base for services reading and writing timeline tables in Supabase."""

    storage_error: type[ServiceError] = TimelineStorageError

    def __init__(self, client=None) -> None:
        self._client = client

    @property
    def client(self):
        """Get Supabase client.

        Raises:
            SupabaseNotConfiguredError: If Supabase is not configured.
        """
        if self._client is None:
            self._client = get_service_client()
            if self._client is None:
                raise SupabaseNotConfiguredError()
        return self._client

    def _execute(self, operation: str, query, **context: Any):
        """Run a prepared query, wrapping driver failures in ``storage_error``."""
        try:
            return query.execute()
        except ServiceError:
            raise
        except Exception as e:
            logger.error("timeline_storage_failed", operation=operation, error=str(e), **context)
            raise self.storage_error(f"Failed to {operation.replace('_', ' ')}: {e}") from e


class TimelineEventStore(SupabaseTableService):
    """Reads and writes persisted stays, trips and data gaps.

    Example:
        >>> store = TimelineEventStore()
        >>> store.has_complete_data("user-1", day_start, day_end)
        True
    """

    # =========================================================================
    # Coverage and Retrieval
    # =========================================================================

    def has_complete_data(self, user_id: str, start: datetime, end: datetime) -> bool:
        """Check whether the range is already covered by persisted events.

        Covered means at least one stay or trip overlaps the range, or a
        single data gap spans all of it. A gap covering only part of the
        range does not count, so the remainder gets derived again.

        Args:
            user_id: Owning user.
            start: Range start (inclusive).
            end: Range end (exclusive).

        Returns:
            True if the range can be served from storage.
        """
        for event_type in (TimelineEventType.STAY, TimelineEventType.TRIP):
            response = self._execute(
                "check_timeline_coverage",
                self.client.table(_TABLE[event_type])
                .select("id")
                .eq("user_id", user_id)
                .lt("timestamp", end.isoformat())
                .gt("end_time", start.isoformat())
                .limit(1),
                user_id=user_id,
            )
            if response.data:
                return True

        response = self._execute(
            "check_gap_coverage",
            self.client.table(GAPS_TABLE)
            .select("id")
            .eq("user_id", user_id)
            .lte("start_time", start.isoformat())
            .gte("end_time", end.isoformat())
            .limit(1),
            user_id=user_id,
        )
        return bool(response.data)

    def get_existing_events(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        """Fetch persisted events overlapping [start, end), untruncated.

        Returns:
            Snapshot tagged CACHED with each list in chronological order.
        """
        events = {
            event_type: self._fetch_overlapping(event_type, user_id, start, end)
            for event_type in TimelineEventType
        }
        timeline = MovementTimeline(
            user_id=user_id,
            stays=events[TimelineEventType.STAY],
            trips=events[TimelineEventType.TRIP],
            data_gaps=events[TimelineEventType.DATA_GAP],
            data_source=TimelineDataSource.CACHED,
            last_updated=datetime.now(UTC),
        )
        logger.debug(
            "timeline_events_loaded",
            user_id=user_id,
            stays=len(timeline.stays),
            trips=len(timeline.trips),
            data_gaps=len(timeline.data_gaps),
        )
        return timeline

    def _fetch_overlapping(
        self,
        event_type: TimelineEventType,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> list:
        start_column = _START_COLUMN[event_type]
        response = self._execute(
            "load_timeline_events",
            self.client.table(_TABLE[event_type])
            .select("*")
            .eq("user_id", user_id)
            .lt(start_column, end.isoformat())
            .gt("end_time", start.isoformat())
            .order(start_column),
            user_id=user_id,
            event_type=event_type.value,
        )
        return [_ROW_MAPPER[event_type](row) for row in response.data or []]

    def find_latest_event_before(self, user_id: str, timestamp: datetime) -> TimelineEvent | None:
        """Find the event of any type with the latest end at or before timestamp.

        Ties on end time go to the event that started later.

        Returns:
            The latest event, or None if the user has nothing before timestamp.
        """
        candidates: list[TimelineEvent] = []
        for event_type in TimelineEventType:
            response = self._execute(
                "find_latest_event",
                self.client.table(_TABLE[event_type])
                .select("*")
                .eq("user_id", user_id)
                .lte("end_time", timestamp.isoformat())
                .order("end_time", desc=True)
                .limit(1),
                user_id=user_id,
                event_type=event_type.value,
            )
            if response.data:
                candidates.append(TimelineEvent.of(_ROW_MAPPER[event_type](response.data[0])))

        if not candidates:
            return None
        return max(candidates, key=lambda e: (e.end_time, e.start_time))

    # =========================================================================
    # Writes
    # =========================================================================

    def delete_timeline_data(self, user_id: str, start: datetime, end: datetime) -> None:
        """Delete all events starting within [start, end)."""
        for event_type in TimelineEventType:
            start_column = _START_COLUMN[event_type]
            self._execute(
                "delete_timeline_events",
                self.client.table(_TABLE[event_type])
                .delete()
                .eq("user_id", user_id)
                .gte(start_column, start.isoformat())
                .lt(start_column, end.isoformat()),
                user_id=user_id,
                event_type=event_type.value,
            )
        logger.info("timeline_data_deleted", user_id=user_id, start=start.isoformat(), end=end.isoformat())

    def save_events(
        self,
        user_id: str,
        stays: list[TimelineStay],
        trips: list[TimelineTrip],
        data_gaps: list[TimelineDataGap],
    ) -> MovementTimeline:
        """Insert new events in one call per table.

        Returns:
            Snapshot of the inserted rows, with their database IDs.
        """
        saved_stays = self._insert(STAYS_TABLE, [stay_to_row(s) for s in stays], row_to_stay, user_id)
        saved_trips = self._insert(TRIPS_TABLE, [trip_to_row(t) for t in trips], row_to_trip, user_id)
        saved_gaps = self._insert(GAPS_TABLE, [gap_to_row(g) for g in data_gaps], row_to_gap, user_id)

        logger.info(
            "timeline_events_saved",
            user_id=user_id,
            stays=len(saved_stays),
            trips=len(saved_trips),
            data_gaps=len(saved_gaps),
        )
        return MovementTimeline(
            user_id=user_id,
            stays=saved_stays,
            trips=saved_trips,
            data_gaps=saved_gaps,
            data_source=TimelineDataSource.CACHED,
            last_updated=datetime.now(UTC),
        )

    def _insert(self, table: str, rows: list[dict[str, Any]], mapper, user_id: str) -> list:
        if not rows:
            return []
        response = self._execute(
            "save_timeline_events",
            self.client.table(table).insert(rows),
            user_id=user_id,
            table=table,
        )
        return [mapper(row) for row in response.data or []]

    def update_event_end(self, event: TimelineEvent, new_end: datetime) -> int:
        """Move the end of a persisted event in place.

        Returns:
            Number of rows updated.
        """
        updated = event.with_end_time(new_end)
        now = datetime.now(UTC).isoformat()
        if event.event_type == TimelineEventType.STAY:
            data = {"stay_duration": updated.duration_seconds, "end_time": new_end.isoformat(), "last_updated": now}
        elif event.event_type == TimelineEventType.TRIP:
            data = {"trip_duration": updated.duration_seconds, "end_time": new_end.isoformat(), "last_updated": now}
        else:
            data = {"end_time": new_end.isoformat(), "duration_seconds": updated.duration_seconds, "last_updated": now}

        response = self._execute(
            "extend_timeline_event",
            self.client.table(_TABLE[event.event_type]).update(data).eq("id", event.id),
            event_id=event.id,
            event_type=event.event_type.value,
        )
        return len(response.data or [])

    def update_versions(self, user_id: str, start: datetime, end: datetime, version: str) -> None:
        """Stamp a new version on the stays and trips starting within [start, end).

        Staleness flags are left alone; a stay that is still stale stays so.
        """
        for table in (STAYS_TABLE, TRIPS_TABLE):
            self._execute(
                "update_timeline_versions",
                self.client.table(table)
                .update({"timeline_version": version, "last_updated": datetime.now(UTC).isoformat()})
                .eq("user_id", user_id)
                .gte("timestamp", start.isoformat())
                .lt("timestamp", end.isoformat()),
                user_id=user_id,
                table=table,
            )


@lru_cache(maxsize=1)
def get_timeline_event_store() -> TimelineEventStore:
    """Get singleton TimelineEventStore instance."""
    return TimelineEventStore()
