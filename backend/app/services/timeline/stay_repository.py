"""Stay-level maintenance queries.

Lookups and in-place updates on timeline_stays used by invalidation,
favorite change handling and the cheaper regeneration strategies.
"""

from datetime import UTC, date, datetime
from functools import lru_cache

import structlog

from app.core.geo import bounding_box, meters_to_degrees
from app.models.favorite import FavoriteLocation
from app.models.timeline import TimelineStay
from app.services.timeline.event_store import (
    STAYS_TABLE,
    SupabaseTableService,
    parse_timestamp,
    row_to_stay,
)

logger = structlog.get_logger(__name__)


class TimelineStayRepository(SupabaseTableService):
    """Queries and updates individual persisted stays."""

    def find_stays_for_day(self, user_id: str, start: datetime, end: datetime) -> list[TimelineStay]:
        """Stays starting within [start, end), in chronological order."""
        response = self._execute(
            "find_stays_for_day",
            self.client.table(STAYS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .gte("timestamp", start.isoformat())
            .lt("timestamp", end.isoformat())
            .order("timestamp"),
            user_id=user_id,
        )
        return [row_to_stay(row) for row in response.data or []]

    def find_stale_days(self, user_id: str) -> list[date]:
        """Distinct UTC days holding at least one stale stay, oldest first."""
        response = self._execute(
            "find_stale_days",
            self.client.table(STAYS_TABLE)
            .select("timestamp")
            .eq("user_id", user_id)
            .eq("is_stale", True),
            user_id=user_id,
        )
        days = {parse_timestamp(row["timestamp"]).astimezone(UTC).date() for row in response.data or []}
        return sorted(days)

    def find_stays_by_favorite(self, user_id: str, favorite_id: int) -> list[TimelineStay]:
        """Stays currently resolved to the given favorite."""
        response = self._execute(
            "find_stays_by_favorite",
            self.client.table(STAYS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("favorite_id", favorite_id)
            .order("timestamp"),
            user_id=user_id,
            favorite_id=favorite_id,
        )
        return [row_to_stay(row) for row in response.data or []]

    def find_stays_matching(
        self,
        favorite: FavoriteLocation,
        point_radius_m: float,
        area_buffer_m: float,
    ) -> list[TimelineStay]:
        """Stays of the favorite's owner lying within the favorite's geometry.

        A bounding box narrows the query; each row is then checked
        exactly against the favorite.

        Args:
            favorite: Favorite whose geometry to match.
            point_radius_m: Search radius around POINT favorites.
            area_buffer_m: Margin around AREA favorites.

        Returns:
            Matching stays in chronological order.
        """
        if favorite.is_area:
            lat_pad, lon_pad = meters_to_degrees(favorite.latitude, area_buffer_m)
            min_lat = favorite.south_west_latitude - lat_pad
            min_lon = favorite.south_west_longitude - lon_pad
            max_lat = favorite.north_east_latitude + lat_pad
            max_lon = favorite.north_east_longitude + lon_pad
        else:
            min_lat, min_lon, max_lat, max_lon = bounding_box(
                favorite.latitude, favorite.longitude, point_radius_m
            )

        response = self._execute(
            "find_stays_near_favorite",
            self.client.table(STAYS_TABLE)
            .select("*")
            .eq("user_id", favorite.user_id)
            .gte("latitude", min_lat)
            .lte("latitude", max_lat)
            .gte("longitude", min_lon)
            .lte("longitude", max_lon)
            .order("timestamp"),
            user_id=favorite.user_id,
            favorite_id=favorite.id,
        )
        stays = [row_to_stay(row) for row in response.data or []]
        return [s for s in stays if favorite.matches(s.latitude, s.longitude, point_radius_m, area_buffer_m)]

    def mark_stale(self, stay_ids: list[int]) -> int:
        """Flag stays for regeneration.

        Returns:
            Number of stays marked.
        """
        if not stay_ids:
            return 0
        response = self._execute(
            "mark_stays_stale",
            self.client.table(STAYS_TABLE)
            .update({"is_stale": True, "last_updated": datetime.now(UTC).isoformat()})
            .in_("id", stay_ids),
            stay_count=len(stay_ids),
        )
        marked = len(response.data or [])
        logger.info("stays_marked_stale", requested=len(stay_ids), marked=marked)
        return marked

    def update_stay_location(self, stay: TimelineStay) -> None:
        """Persist a stay's resolved location, staleness and version."""
        self._execute(
            "update_stay_location",
            self.client.table(STAYS_TABLE)
            .update({
                "location_name": stay.location_name,
                "location_source": stay.location_source.value,
                "favorite_id": stay.favorite_id,
                "geocoding_id": stay.geocoding_id,
                "is_stale": stay.is_stale,
                "timeline_version": stay.timeline_version,
                "last_updated": datetime.now(UTC).isoformat(),
            })
            .eq("id", stay.id),
            stay_id=stay.id,
        )

    def rename_favorite_stays(self, user_id: str, favorite_id: int, new_name: str) -> list[TimelineStay]:
        """Rewrite the location name of every stay referencing a favorite.

        Returns:
            The updated stays.
        """
        response = self._execute(
            "rename_favorite_stays",
            self.client.table(STAYS_TABLE)
            .update({"location_name": new_name, "last_updated": datetime.now(UTC).isoformat()})
            .eq("user_id", user_id)
            .eq("favorite_id", favorite_id),
            user_id=user_id,
            favorite_id=favorite_id,
        )
        stays = [row_to_stay(row) for row in response.data or []]
        logger.info("favorite_stays_renamed", user_id=user_id, favorite_id=favorite_id, updated=len(stays))
        return stays


@lru_cache(maxsize=1)
def get_timeline_stay_repository() -> TimelineStayRepository:
    """Get singleton TimelineStayRepository instance."""
    return TimelineStayRepository()
