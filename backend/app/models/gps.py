"""Raw GPS input and detection output models."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class GpsPoint(BaseModel):
    """A single raw GPS sample."""

    timestamp: datetime
    latitude: float
    longitude: float
    accuracy: float | None = Field(None, description="Horizontal accuracy in meters")
    velocity: float | None = Field(None, description="Speed in km/h")


class StayCandidate(BaseModel):
    """A stay as emitted by the detection engine, before name resolution."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime
    duration_seconds: int = Field(..., ge=0, alias="durationSeconds")
    latitude: float
    longitude: float


class TripCandidate(BaseModel):
    """A trip as emitted by the detection engine."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: datetime
    duration_seconds: int = Field(..., ge=0, alias="durationSeconds")
    start_latitude: float = Field(..., alias="startLatitude")
    start_longitude: float = Field(..., alias="startLongitude")
    end_latitude: float = Field(..., alias="endLatitude")
    end_longitude: float = Field(..., alias="endLongitude")
    distance_meters: float = Field(0.0, alias="distanceMeters")
    movement_type: str = Field("UNKNOWN", alias="movementType")
    path: list[tuple[float, float]] | None = None


class DetectionResult(BaseModel):
    """Candidate stays and trips produced by the detection engine."""

    stays: list[StayCandidate] = Field(default_factory=list)
    trips: list[TripCandidate] = Field(default_factory=list)
