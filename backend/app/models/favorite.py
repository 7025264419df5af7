"""Favorite (named) location models and location resolution results."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from app.core.geo import haversine_m, is_inside_circle, meters_to_degrees
from app.models.timeline import LocationSource


class FavoriteLocationType(str, Enum):
    """Geometry kind of a favorite location."""

    POINT = "POINT"
    AREA = "AREA"


class FavoriteDeletionStrategy(str, Enum):
    """What happens to stays referencing a deleted favorite.

    Strategies:
    - REVERT_TO_GEOCODING: Re-resolve the stay through the geocoding cache
    - PRESERVE_HISTORICAL: Keep the old name, marked as historical
    """

    REVERT_TO_GEOCODING = "REVERT_TO_GEOCODING"
    PRESERVE_HISTORICAL = "PRESERVE_HISTORICAL"


class FavoriteLocation(BaseModel):
    """A user's named location.

    POINT favorites are a single coordinate. AREA favorites are a
    rectangle given by their north-east and south-west corners, with
    latitude/longitude holding the center.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(..., description="Favorite ID")
    user_id: str = Field(..., alias="userId")
    name: str = Field(..., description="Display name")
    type: FavoriteLocationType = Field(FavoriteLocationType.POINT)
    latitude: float = Field(..., description="Point or area center latitude")
    longitude: float = Field(..., description="Point or area center longitude")
    north_east_latitude: float | None = Field(None, alias="northEastLatitude")
    north_east_longitude: float | None = Field(None, alias="northEastLongitude")
    south_west_latitude: float | None = Field(None, alias="southWestLatitude")
    south_west_longitude: float | None = Field(None, alias="southWestLongitude")
    city: str | None = None
    country: str | None = None

    @property
    def is_area(self) -> bool:
        return self.type == FavoriteLocationType.AREA and self.south_west_latitude is not None

    @property
    def has_merge_impact(self) -> bool:
        """Area favorites group several stays, so changing one can merge or split stays."""
        return self.type == FavoriteLocationType.AREA

    def geometry_wkt(self) -> str:
        if self.is_area:
            sw_lat, sw_lon = self.south_west_latitude, self.south_west_longitude
            ne_lat, ne_lon = self.north_east_latitude, self.north_east_longitude
            return (
                f"POLYGON(({sw_lon} {sw_lat}, {ne_lon} {sw_lat}, {ne_lon} {ne_lat}, "
                f"{sw_lon} {ne_lat}, {sw_lon} {sw_lat}))"
            )
        return f"POINT({self.longitude} {self.latitude})"

    def matches(self, latitude: float, longitude: float, point_radius_m: float, area_buffer_m: float = 0.0) -> bool:
        """Check whether a coordinate belongs to this favorite.

        Args:
            latitude: Coordinate latitude.
            longitude: Coordinate longitude.
            point_radius_m: Match radius around POINT favorites.
            area_buffer_m: Extra margin around AREA bounds.

        Returns:
            True if the coordinate is within the favorite's geometry.
        """
        if not self.is_area:
            return is_inside_circle(latitude, longitude, self.latitude, self.longitude, point_radius_m)

        lat_pad, lon_pad = meters_to_degrees(latitude, area_buffer_m)
        return (
            self.south_west_latitude - lat_pad <= latitude <= self.north_east_latitude + lat_pad
            and self.south_west_longitude - lon_pad <= longitude <= self.north_east_longitude + lon_pad
        )

    def distance_to(self, latitude: float, longitude: float) -> float:
        return haversine_m(latitude, longitude, self.latitude, self.longitude)


class LocationResolution(BaseModel):
    """Outcome of resolving a coordinate to a name."""

    name: str
    source: LocationSource
    favorite_id: int | None = None
    geocoding_id: int | None = None
