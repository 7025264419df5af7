"""External collaborators consumed by the timeline engine.

Each collaborator is a narrow Protocol so handlers can be wired with
fakes in tests. The default implementations read from Supabase, except
for detection which is delegated to an HTTP detection service.
"""

from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import Any, Protocol

import httpx
import structlog
from pydantic import ValidationError
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import Settings, get_settings
from app.core.correlation import CORRELATION_HEADER, get_correlation_id
from app.core.geo import bounding_box, haversine_m
from app.models.favorite import FavoriteLocation, FavoriteLocationType, LocationResolution
from app.models.gps import DetectionResult, GpsPoint
from app.models.timeline import LocationSource, TimelinePreferences
from app.services.exceptions import DetectionEngineError, ServiceError
from app.services.timeline.event_store import SupabaseTableService, parse_timestamp

logger = structlog.get_logger(__name__)

GPS_POINTS_TABLE = "gps_points"
FAVORITES_TABLE = "favorite_locations"
GEOCODING_TABLE = "reverse_geocoding_locations"
PREFERENCES_TABLE = "user_timeline_preferences"

GPS_PAGE_SIZE = 1000
UNKNOWN_LOCATION_NAME = "Unknown location"


# =============================================================================
# Protocols
# =============================================================================


class GpsSource(Protocol):
    def fetch_points(self, user_id: str, start: datetime, end: datetime) -> list[GpsPoint]: ...

    def has_points(self, user_id: str, start: datetime, end: datetime) -> bool: ...


class DetectionEngine(Protocol):
    def detect(self, points: list[GpsPoint], preferences: TimelinePreferences) -> DetectionResult: ...


class LocationResolver(Protocol):
    def resolve(self, user_id: str, latitude: float, longitude: float) -> LocationResolution: ...

    def resolve_many(self, user_id: str, coordinates: list[tuple[float, float]]) -> list[LocationResolution]: ...

    def geocode(self, latitude: float, longitude: float) -> LocationResolution | None: ...


class PreferenceStore(Protocol):
    def get_preferences(self, user_id: str) -> TimelinePreferences: ...


class FavoriteRegistry(Protocol):
    def list_favorites(self, user_id: str) -> list[FavoriteLocation]: ...


# =============================================================================
# Supabase Implementations
# =============================================================================


class SupabaseGpsSource(SupabaseTableService):
    """Reads raw GPS points, paging through PostgREST's row limit."""

    def fetch_points(self, user_id: str, start: datetime, end: datetime) -> list[GpsPoint]:
        points: list[GpsPoint] = []
        offset = 0
        while True:
            response = self._execute(
                "fetch_gps_points",
                self.client.table(GPS_POINTS_TABLE)
                .select("timestamp, latitude, longitude, accuracy, velocity")
                .eq("user_id", user_id)
                .gte("timestamp", start.isoformat())
                .lt("timestamp", end.isoformat())
                .order("timestamp")
                .range(offset, offset + GPS_PAGE_SIZE - 1),
                user_id=user_id,
            )
            rows = response.data or []
            points.extend(
                GpsPoint(
                    timestamp=parse_timestamp(row["timestamp"]),
                    latitude=row["latitude"],
                    longitude=row["longitude"],
                    accuracy=row.get("accuracy"),
                    velocity=row.get("velocity"),
                )
                for row in rows
            )
            if len(rows) < GPS_PAGE_SIZE:
                break
            offset += GPS_PAGE_SIZE

        logger.debug("gps_points_fetched", user_id=user_id, count=len(points))
        return points

    def has_points(self, user_id: str, start: datetime, end: datetime) -> bool:
        response = self._execute(
            "has_gps_points",
            self.client.table(GPS_POINTS_TABLE)
            .select("timestamp")
            .eq("user_id", user_id)
            .gte("timestamp", start.isoformat())
            .lt("timestamp", end.isoformat())
            .limit(1),
            user_id=user_id,
        )
        return bool(response.data)


class SupabaseFavoriteRegistry(SupabaseTableService):
    """Reads a user's favorite locations."""

    def list_favorites(self, user_id: str) -> list[FavoriteLocation]:
        response = self._execute(
            "list_favorites",
            self.client.table(FAVORITES_TABLE).select("*").eq("user_id", user_id).order("id"),
            user_id=user_id,
        )
        return [
            FavoriteLocation(
                id=row["id"],
                user_id=row["user_id"],
                name=row["name"],
                type=FavoriteLocationType(row.get("type") or FavoriteLocationType.POINT.value),
                latitude=row["latitude"],
                longitude=row["longitude"],
                north_east_latitude=row.get("north_east_latitude"),
                north_east_longitude=row.get("north_east_longitude"),
                south_west_latitude=row.get("south_west_latitude"),
                south_west_longitude=row.get("south_west_longitude"),
                city=row.get("city"),
                country=row.get("country"),
            )
            for row in response.data or []
        ]


def default_preferences(settings: Settings) -> TimelinePreferences:
    """Preferences used for users without stored overrides."""
    return TimelinePreferences(
        staypoint_detection_algorithm=settings.timeline_staypoint_detection_algorithm,
        staypoint_velocity_threshold=settings.timeline_staypoint_velocity_threshold,
        staypoint_max_accuracy_threshold=settings.timeline_staypoint_max_accuracy_threshold,
        staypoint_radius_meters=settings.timeline_staypoint_radius_meters,
        staypoint_min_duration_minutes=settings.timeline_staypoint_min_duration_minutes,
        trip_detection_algorithm=settings.timeline_trip_detection_algorithm,
        trip_min_distance_meters=settings.timeline_trip_min_distance_meters,
        trip_min_duration_minutes=settings.timeline_trip_min_duration_minutes,
        is_merge_enabled=settings.timeline_merge_enabled,
        merge_max_distance_meters=settings.timeline_merge_max_distance_meters,
        merge_max_time_gap_minutes=settings.timeline_merge_max_time_gap_minutes,
        data_gap_threshold_seconds=settings.timeline_data_gap_threshold_seconds,
        data_gap_min_duration_seconds=settings.timeline_data_gap_min_duration_seconds,
    )


class SupabasePreferenceStore(SupabaseTableService):
    """Per-user preference overrides layered over the configured defaults."""

    def __init__(self, client=None, settings: Settings | None = None) -> None:
        super().__init__(client)
        self._settings = settings or get_settings()

    def get_preferences(self, user_id: str) -> TimelinePreferences:
        defaults = default_preferences(self._settings)
        response = self._execute(
            "load_timeline_preferences",
            self.client.table(PREFERENCES_TABLE).select("*").eq("user_id", user_id).limit(1),
            user_id=user_id,
        )
        if not response.data:
            return defaults

        row = response.data[0]
        overrides = {
            field: row[field]
            for field in TimelinePreferences.model_fields
            if row.get(field) is not None
        }
        return defaults.model_copy(update=overrides)


# =============================================================================
# Location Resolution
# =============================================================================


def _unknown_location() -> LocationResolution:
    return LocationResolution(name=UNKNOWN_LOCATION_NAME, source=LocationSource.HISTORICAL)


class FavoriteLocationResolver(SupabaseTableService):
    """Resolves coordinates to favorites first, then cached geocoding results.

    resolve() and resolve_many() do not raise on storage failures: the
    result is downgraded to a HISTORICAL "Unknown location" instead.
    """

    def __init__(
        self,
        favorite_registry: FavoriteRegistry | None = None,
        client=None,
        settings: Settings | None = None,
    ) -> None:
        super().__init__(client)
        self._settings = settings or get_settings()
        self._favorites = favorite_registry or SupabaseFavoriteRegistry(client)

    def resolve(self, user_id: str, latitude: float, longitude: float) -> LocationResolution:
        return self.resolve_many(user_id, [(latitude, longitude)])[0]

    def resolve_many(self, user_id: str, coordinates: list[tuple[float, float]]) -> list[LocationResolution]:
        """Resolve several coordinates, loading the user's favorites once."""
        try:
            favorites = self._favorites.list_favorites(user_id)
        except ServiceError as e:
            logger.warning("location_resolution_failed", user_id=user_id, points=len(coordinates), error=str(e))
            return [_unknown_location() for _ in coordinates]
        return [self._resolve_with(user_id, favorites, latitude, longitude) for latitude, longitude in coordinates]

    def _resolve_with(
        self,
        user_id: str,
        favorites: list[FavoriteLocation],
        latitude: float,
        longitude: float,
    ) -> LocationResolution:
        favorite = self._match_favorite(favorites, latitude, longitude)
        if favorite is not None:
            return LocationResolution(
                name=favorite.name,
                source=LocationSource.FAVORITE,
                favorite_id=favorite.id,
            )
        try:
            geocoded = self.geocode(latitude, longitude)
            if geocoded is not None:
                return geocoded
        except ServiceError as e:
            logger.warning(
                "location_resolution_failed",
                user_id=user_id,
                latitude=latitude,
                longitude=longitude,
                error=str(e),
            )
        return _unknown_location()

    def _match_favorite(
        self, favorites: list[FavoriteLocation], latitude: float, longitude: float
    ) -> FavoriteLocation | None:
        radius = self._settings.favorite_point_match_radius_meters
        matches = [f for f in favorites if f.matches(latitude, longitude, radius)]
        if not matches:
            return None
        # Areas win over points; among equals the closest center wins
        return min(matches, key=lambda f: (not f.is_area, f.distance_to(latitude, longitude)))

    def geocode(self, latitude: float, longitude: float) -> LocationResolution | None:
        """Look up the closest cached reverse-geocoding result in range.

        Returns:
            GEOCODED resolution, or None if nothing is cached nearby.
        """
        radius = self._settings.geocoding_match_radius_meters
        min_lat, min_lon, max_lat, max_lon = bounding_box(latitude, longitude, radius)
        response = self._execute(
            "lookup_geocoding",
            self.client.table(GEOCODING_TABLE)
            .select("id, display_name, latitude, longitude")
            .gte("latitude", min_lat)
            .lte("latitude", max_lat)
            .gte("longitude", min_lon)
            .lte("longitude", max_lon),
        )
        candidates = [
            (haversine_m(latitude, longitude, row["latitude"], row["longitude"]), row)
            for row in response.data or []
        ]
        candidates = [c for c in candidates if c[0] <= radius]
        if not candidates:
            return None

        _, row = min(candidates, key=lambda c: c[0])
        return LocationResolution(
            name=row["display_name"],
            source=LocationSource.GEOCODED,
            geocoding_id=row["id"],
        )


# =============================================================================
# Detection
# =============================================================================


class HttpDetectionEngine:
    """Delegates staypoint/trip detection to the detection service.

    Transport errors are retried with exponential backoff; HTTP error
    responses are not, since the service is deterministic.
    """

    def __init__(self, settings: Settings | None = None, http_client: httpx.Client | None = None) -> None:
        self._settings = settings or get_settings()
        self._http = http_client or httpx.Client(timeout=self._settings.detection_timeout_seconds)

    def detect(self, points: list[GpsPoint], preferences: TimelinePreferences) -> DetectionResult:
        if not points:
            return DetectionResult()

        payload: dict[str, Any] = {
            "points": [p.model_dump(mode="json") for p in points],
            "config": preferences.model_dump(mode="json"),
        }
        correlation_id = get_correlation_id()
        headers = {CORRELATION_HEADER: correlation_id} if correlation_id else {}
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(self._settings.detection_max_retries),
                wait=wait_exponential(multiplier=0.5, max=8),
                retry=retry_if_exception_type(httpx.TransportError),
                reraise=True,
            ):
                with attempt:
                    response = self._http.post(self._settings.detection_service_url, json=payload, headers=headers)
                    response.raise_for_status()
        except (httpx.HTTPError, RetryError) as e:
            logger.warning("detection_request_failed", points=len(points), error=str(e))
            raise DetectionEngineError(f"Detection service failed: {e}") from e

        try:
            return DetectionResult.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.warning("detection_response_invalid", points=len(points), error=str(e))
            raise DetectionEngineError(f"Detection service returned an invalid response: {e}") from e


# =============================================================================
# Factories
# =============================================================================


@lru_cache(maxsize=1)
def get_gps_source() -> SupabaseGpsSource:
    return SupabaseGpsSource()


@lru_cache(maxsize=1)
def get_detection_engine() -> HttpDetectionEngine:
    return HttpDetectionEngine()


@lru_cache(maxsize=1)
def get_favorite_registry() -> SupabaseFavoriteRegistry:
    return SupabaseFavoriteRegistry()


@lru_cache(maxsize=1)
def get_location_resolver() -> FavoriteLocationResolver:
    return FavoriteLocationResolver(get_favorite_registry())


@lru_cache(maxsize=1)
def get_preference_store() -> SupabasePreferenceStore:
    return SupabasePreferenceStore()
