"""Request and response envelopes for the timeline HTTP API.

Every successful response wraps its payload in ``data``; errors use the
structured ``{"error": {...}}`` body produced by the exception handlers.
"""

from datetime import date

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.regeneration import (
    InvalidationQueueStats,
    QueueStatus,
    RegenerationTask,
    TaskPriority,
)
from app.models.timeline import MovementTimeline


class TimelineResponse(BaseModel):
    """API response for a timeline snapshot."""

    data: MovementTimeline


class RegenerationTaskRequest(BaseModel):
    """Request body for queueing background regeneration.

    HIGH requests list the affected dates; LOW requests give a range.
    """

    model_config = ConfigDict(populate_by_name=True)

    priority: TaskPriority
    dates: list[date] = Field(default_factory=list, description="Affected dates (HIGH)")
    start_date: date | None = Field(None, alias="startDate", description="Range start (LOW)")
    end_date: date | None = Field(None, alias="endDate", description="Range end, inclusive (LOW)")

    @model_validator(mode="after")
    def check_shape(self) -> "RegenerationTaskRequest":
        if self.priority == TaskPriority.HIGH and not self.dates:
            raise ValueError("HIGH priority requests need at least one date")
        if self.priority == TaskPriority.LOW and (self.start_date is None or self.end_date is None):
            raise ValueError("LOW priority requests need startDate and endDate")
        return self


class RegenerationTaskData(BaseModel):
    """Result of a queue request; ``task`` is null when an identical task is pending."""

    model_config = ConfigDict(populate_by_name=True)

    queued: bool
    task: RegenerationTask | None = None


class RegenerationTaskResponse(BaseModel):
    data: RegenerationTaskData


class TaskDetailResponse(BaseModel):
    data: RegenerationTask


class QueueStatusData(BaseModel):
    """Background queue state, with in-process invalidation counters when available."""

    model_config = ConfigDict(populate_by_name=True)

    regeneration: QueueStatus
    invalidation: InvalidationQueueStats | None = None


class QueueStatusResponse(BaseModel):
    data: QueueStatusData


class EventAcceptedData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    accepted: bool = True
    job_id: str | None = Field(None, alias="jobId", description="Celery task ID")


class EventAcceptedResponse(BaseModel):
    data: EventAcceptedData
