"""Timeline API routes.

Provides endpoints for:
- Reading a user's movement timeline for a time range
- Forcing regeneration of the cached past portion of a range
- Queueing background regeneration tasks and reading their status
- Reporting background queue state
- Accepting change notifications (favorites, preferences, imports)

Change notifications are handed to Celery and answered with 202; the
timeline itself is served synchronously.
"""

import asyncio
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from app.core.exceptions import NotFoundError, ValidationError
from app.models.api import (
    EventAcceptedData,
    EventAcceptedResponse,
    QueueStatusData,
    QueueStatusResponse,
    RegenerationTaskData,
    RegenerationTaskRequest,
    RegenerationTaskResponse,
    TaskDetailResponse,
    TimelineResponse,
)
from app.models.regeneration import (
    FavoriteChangeEvent,
    ImportCompletedEvent,
    PreferencesChangedEvent,
    TaskPriority,
)
from app.services.exceptions import ServiceError
from app.services.queue_metrics_service import QueueMetricsService, get_queue_metrics_service
from app.services.timeline.service import TimelineService, get_timeline_service
from app.services.timeline.task_store import RegenerationTaskStore, get_regeneration_task_store
from app.workers.tasks.timeline_tasks import (
    process_favorite_change,
    process_import_completed,
    process_preferences_change,
)

router = APIRouter(tags=["timeline"])
logger = structlog.get_logger(__name__)


def _handle_service_error(error: ServiceError) -> HTTPException:
    """Convert service errors to HTTP exceptions."""
    return HTTPException(
        status_code=error.status_code,
        detail={
            "error": {
                "code": error.code,
                "message": error.message,
                "details": error.details,
            }
        },
    )


def _check_user(user_id: str, body_user_id: str) -> None:
    if user_id != body_user_id:
        raise ValidationError(
            "Event user does not match the request path",
            code="USER_MISMATCH",
            details={"path_user_id": user_id, "event_user_id": body_user_id},
        )


# =============================================================================
# Timeline Reads
# =============================================================================


@router.get(
    "/users/{user_id}/timeline",
    response_model=TimelineResponse,
    summary="Get Movement Timeline",
    description="""
    Return the stays, trips and data gaps of a user for [start, end).

    Past days are served from the cache (deriving and persisting them on
    first access); today is always generated live from raw GPS.
    Ranges entirely in the future return an empty timeline.
    """,
)
async def get_timeline(
    user_id: str = Path(..., description="User ID"),
    start: datetime = Query(..., description="Range start (ISO 8601)"),
    end: datetime = Query(..., description="Range end, exclusive (ISO 8601)"),
    timeline_service: TimelineService = Depends(get_timeline_service),
) -> TimelineResponse:
    try:
        timeline = await asyncio.to_thread(timeline_service.get_timeline, user_id, start, end)
    except ServiceError as e:
        logger.warning("timeline_read_failed", user_id=user_id, error_code=e.code, error=e.message)
        raise _handle_service_error(e) from e

    return TimelineResponse(data=timeline)


@router.post(
    "/users/{user_id}/timeline/regenerate",
    response_model=TimelineResponse,
    summary="Force Timeline Regeneration",
    description="Discard cached data before today within [start, end), rebuild it from raw GPS and return the range.",
)
async def regenerate_timeline(
    user_id: str = Path(..., description="User ID"),
    start: datetime = Query(..., description="Range start (ISO 8601)"),
    end: datetime = Query(..., description="Range end, exclusive (ISO 8601)"),
    timeline_service: TimelineService = Depends(get_timeline_service),
) -> TimelineResponse:
    logger.info("timeline_regeneration_requested", user_id=user_id)
    try:
        timeline = await asyncio.to_thread(timeline_service.force_regenerate, user_id, start, end)
    except ServiceError as e:
        logger.error("timeline_regeneration_failed", user_id=user_id, error_code=e.code, error=e.message)
        raise _handle_service_error(e) from e

    return TimelineResponse(data=timeline)


# =============================================================================
# Background Regeneration
# =============================================================================


@router.post(
    "/users/{user_id}/timeline/regeneration-tasks",
    response_model=RegenerationTaskResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Queue Background Regeneration",
)
async def queue_regeneration(
    body: RegenerationTaskRequest,
    user_id: str = Path(..., description="User ID"),
    timeline_service: TimelineService = Depends(get_timeline_service),
) -> RegenerationTaskResponse:
    """Queue a HIGH task over the given dates or a LOW task over a range.

    ``task`` is null when an identical task is already pending.
    """
    try:
        if body.priority == TaskPriority.HIGH:
            task = await asyncio.to_thread(timeline_service.enqueue_high_priority, user_id, body.dates)
        else:
            task = await asyncio.to_thread(
                timeline_service.enqueue_low_priority, user_id, body.start_date, body.end_date
            )
    except ServiceError as e:
        logger.error("regeneration_queue_failed", user_id=user_id, error_code=e.code, error=e.message)
        raise _handle_service_error(e) from e

    return RegenerationTaskResponse(data=RegenerationTaskData(queued=task is not None, task=task))


@router.get(
    "/timeline/regeneration-tasks/{task_id}",
    response_model=TaskDetailResponse,
    summary="Get Regeneration Task",
)
async def get_regeneration_task(
    task_id: str = Path(..., description="Task ID"),
    task_store: RegenerationTaskStore = Depends(get_regeneration_task_store),
) -> TaskDetailResponse:
    try:
        task = await asyncio.to_thread(task_store.get, task_id)
    except ServiceError as e:
        raise _handle_service_error(e) from e

    if task is None:
        raise NotFoundError("Regeneration task", task_id)
    return TaskDetailResponse(data=task)


@router.get(
    "/timeline/queue-status",
    response_model=QueueStatusResponse,
    summary="Get Background Queue Status",
)
async def get_queue_status(
    timeline_service: TimelineService = Depends(get_timeline_service),
    metrics: QueueMetricsService = Depends(get_queue_metrics_service),
) -> QueueStatusResponse:
    """Pending regeneration tasks plus the last published invalidation counters."""
    try:
        regeneration = await asyncio.to_thread(timeline_service.get_queue_status)
    except ServiceError as e:
        raise _handle_service_error(e) from e

    invalidation = await asyncio.to_thread(metrics.get_invalidation_stats)
    return QueueStatusResponse(data=QueueStatusData(regeneration=regeneration, invalidation=invalidation))


# =============================================================================
# Change Notifications
# =============================================================================


@router.post(
    "/users/{user_id}/timeline/events/favorite-changed",
    response_model=EventAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Notify Favorite Change",
)
async def favorite_changed(
    event: FavoriteChangeEvent,
    user_id: str = Path(..., description="User ID"),
) -> EventAcceptedResponse:
    _check_user(user_id, event.user_id)
    task = process_favorite_change.delay(event.model_dump(mode="json"))
    logger.info(
        "favorite_change_dispatched",
        user_id=user_id,
        change_type=event.change_type.value,
        favorite_id=event.favorite.id,
        job_id=task.id,
    )
    return EventAcceptedResponse(data=EventAcceptedData(job_id=task.id))


@router.post(
    "/users/{user_id}/timeline/events/preferences-changed",
    response_model=EventAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Notify Preferences Change",
)
async def preferences_changed(
    event: PreferencesChangedEvent,
    user_id: str = Path(..., description="User ID"),
) -> EventAcceptedResponse:
    _check_user(user_id, event.user_id)
    task = process_preferences_change.delay(event.model_dump(mode="json"))
    logger.info("preferences_change_dispatched", user_id=user_id, job_id=task.id)
    return EventAcceptedResponse(data=EventAcceptedData(job_id=task.id))


@router.post(
    "/users/{user_id}/timeline/events/import-completed",
    response_model=EventAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Notify Import Completed",
)
async def import_completed(
    event: ImportCompletedEvent,
    user_id: str = Path(..., description="User ID"),
) -> EventAcceptedResponse:
    _check_user(user_id, event.user_id)
    task = process_import_completed.delay(event.model_dump(mode="json"))
    logger.info(
        "import_completed_dispatched",
        user_id=user_id,
        start_date=event.start_date.isoformat(),
        end_date=event.end_date.isoformat(),
        job_id=task.id,
    )
    return EventAcceptedResponse(data=EventAcceptedData(job_id=task.id))
