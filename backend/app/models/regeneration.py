"""Background regeneration models.

Regeneration tasks are persisted units of queued work consumed by the
background scheduler. The invalidation models describe the in-process
queue of (user, day) keys and the events that feed it.
"""

from datetime import date, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from app.models.favorite import FavoriteLocation

# =============================================================================
# Regeneration Tasks
# =============================================================================


class TaskPriority(str, Enum):
    """Regeneration task priority.

    Priorities:
    - HIGH: Reference-data edits (favorite changes), drained every few seconds
    - LOW: Bulk work (imports, preference changes), drained only when no HIGH task waits
    """

    HIGH = "HIGH"
    LOW = "LOW"


class TaskStatus(str, Enum):
    """Regeneration task status.

    States:
    - PENDING: Waiting to be picked up (also after a retryable failure)
    - PROCESSING: Being regenerated
    - COMPLETED: Regenerated and persisted
    - FAILED: Failed after all retries exhausted
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TaskOutcome(str, Enum):
    """Result of one processing attempt.

    Outcomes:
    - COMPLETED: Regenerated and persisted
    - DEFERRED: Still inside its retry delay, left PENDING untouched
    - FAILED: The attempt failed; the task was re-queued or marked FAILED
    """

    COMPLETED = "COMPLETED"
    DEFERRED = "DEFERRED"
    FAILED = "FAILED"


class RegenerationStrategy(str, Enum):
    """How much of a cached day has to be recomputed."""

    LOCATION_RESOLUTION_ONLY = "LOCATION_RESOLUTION_ONLY"
    SELECTIVE_MERGE = "SELECTIVE_MERGE"
    FULL_REGENERATION = "FULL_REGENERATION"


class RegenerationTask(BaseModel):
    """A queued regeneration of a user's date range."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Task UUID")
    user_id: str = Field(..., alias="userId")
    start_date: date = Field(..., alias="startDate", description="First day to regenerate")
    end_date: date = Field(..., alias="endDate", description="Last day to regenerate (inclusive)")
    priority: TaskPriority
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = Field(0, ge=0, alias="retryCount")
    processing_started_at: datetime | None = Field(
        None, alias="processingStartedAt", description="Start of the latest processing attempt"
    )
    error_message: str | None = Field(None, alias="errorMessage")
    created_at: datetime | None = Field(None, alias="createdAt")
    completed_at: datetime | None = Field(None, alias="completedAt")


class QueueStatus(BaseModel):
    """Snapshot of the background regeneration queues."""

    model_config = ConfigDict(populate_by_name=True)

    high_pending: int = Field(..., alias="highPending")
    low_pending: int = Field(..., alias="lowPending")
    draining: bool = Field(..., description="Whether a scheduler drain is running on any worker")


# =============================================================================
# Invalidation
# =============================================================================


class InvalidationQueueStats(BaseModel):
    """Counters of the in-process invalidation queue."""

    model_config = ConfigDict(populate_by_name=True)

    queue_size: int = Field(..., alias="queueSize")
    active_retries: int = Field(..., alias="activeRetries")
    total_processed: int = Field(..., alias="totalProcessed")
    total_failed: int = Field(..., alias="totalFailed")


class FavoriteChangeType(str, Enum):
    """Kind of change emitted by the favorite location registry."""

    ADDED = "ADDED"
    RENAMED = "RENAMED"
    DELETED = "DELETED"


class FavoriteChangeEvent(BaseModel):
    """A favorite location was added, renamed or deleted."""

    model_config = ConfigDict(populate_by_name=True)

    change_type: FavoriteChangeType = Field(..., alias="changeType")
    user_id: str = Field(..., alias="userId")
    favorite: FavoriteLocation = Field(..., description="Favorite state after the change (before, for deletions)")
    old_name: str | None = Field(None, alias="oldName", description="Previous name for renames")


class PreferencesChangedEvent(BaseModel):
    """A user's timeline generation preferences were updated or reset."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    reset_to_defaults: bool = Field(False, alias="resetToDefaults")


class ImportCompletedEvent(BaseModel):
    """A bulk GPS import finished for a date range."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId")
    start_date: date = Field(..., alias="startDate")
    end_date: date = Field(..., alias="endDate")
