"""Timeline background tasks.

Periodic tasks (see beat_schedule in celery.py):
- Draining the in-process invalidation queue
- Draining HIGH and LOW regeneration tasks
- Sweeping finished regeneration tasks

Event tasks dispatched by the API:
- Favorite added / renamed / deleted
- Timeline preferences changed
- GPS import completed

Every task returns a summary dict and never raises: a failed tick is
logged and the next tick tries again.
"""

import structlog

from app.models.regeneration import (
    FavoriteChangeEvent,
    ImportCompletedEvent,
    PreferencesChangedEvent,
)
from app.workers.celery import celery_app

logger = structlog.get_logger(__name__)


# =============================================================================
# Periodic Tasks
# =============================================================================


@celery_app.task(name="app.workers.tasks.timeline_tasks.drain_invalidation_queue", ignore_result=True)
def drain_invalidation_queue() -> dict:
    """Regenerate one adaptive batch of invalidated days."""
    from app.services.queue_metrics_service import get_queue_metrics_service
    from app.services.timeline.invalidation import get_invalidation_queue

    try:
        queue = get_invalidation_queue()
        processed = queue.drain()
        stats = queue.get_statistics()
        get_queue_metrics_service().publish_invalidation_stats(stats)
        return {"processed": processed, **stats.model_dump()}
    except Exception as e:
        logger.error("invalidation_drain_task_failed", error=str(e))
        return {"error": str(e)}


@celery_app.task(name="app.workers.tasks.timeline_tasks.process_high_priority_regenerations", ignore_result=True)
def process_high_priority_regenerations() -> dict:
    """Drain one batch of HIGH regeneration tasks."""
    from app.services.timeline.scheduler import get_background_regeneration_scheduler

    try:
        return get_background_regeneration_scheduler().process_high_priority()
    except Exception as e:
        logger.error("high_priority_regeneration_task_failed", error=str(e))
        return {"error": str(e)}


@celery_app.task(name="app.workers.tasks.timeline_tasks.process_low_priority_regenerations", ignore_result=True)
def process_low_priority_regenerations() -> dict:
    """Drain one batch of LOW regeneration tasks."""
    from app.services.timeline.scheduler import get_background_regeneration_scheduler

    try:
        return get_background_regeneration_scheduler().process_low_priority()
    except Exception as e:
        logger.error("low_priority_regeneration_task_failed", error=str(e))
        return {"error": str(e)}


@celery_app.task(name="app.workers.tasks.timeline_tasks.cleanup_regeneration_tasks")
def cleanup_regeneration_tasks() -> dict:
    """Delete finished regeneration tasks past the retention window."""
    from app.services.timeline.scheduler import get_background_regeneration_scheduler

    try:
        deleted = get_background_regeneration_scheduler().cleanup()
        return {"deleted": deleted}
    except Exception as e:
        logger.error("regeneration_cleanup_task_failed", error=str(e))
        return {"error": str(e)}


# =============================================================================
# Event Tasks
# =============================================================================


@celery_app.task(name="app.workers.tasks.timeline_tasks.process_favorite_change")
def process_favorite_change(event: dict) -> dict:
    """Apply a favorite change to cached timeline data.

    Args:
        event: Serialized FavoriteChangeEvent.
    """
    from app.services.timeline.favorite_changes import get_favorite_change_handler

    try:
        change = FavoriteChangeEvent.model_validate(event)
        return get_favorite_change_handler().handle_favorite_change(change)
    except Exception as e:
        logger.error("favorite_change_task_failed", error=str(e))
        return {"error": str(e)}


@celery_app.task(name="app.workers.tasks.timeline_tasks.process_preferences_change")
def process_preferences_change(event: dict) -> dict:
    """Queue regeneration after a preferences change."""
    from app.services.timeline.favorite_changes import get_favorite_change_handler

    try:
        change = PreferencesChangedEvent.model_validate(event)
        task = get_favorite_change_handler().handle_preferences_changed(change)
        return {"task_id": task.id if task else None}
    except Exception as e:
        logger.error("preferences_change_task_failed", error=str(e))
        return {"error": str(e)}


@celery_app.task(name="app.workers.tasks.timeline_tasks.process_import_completed")
def process_import_completed(event: dict) -> dict:
    """Queue regeneration of a freshly imported date range."""
    from app.services.timeline.favorite_changes import get_favorite_change_handler

    try:
        completed = ImportCompletedEvent.model_validate(event)
        task = get_favorite_change_handler().handle_import_completed(completed)
        return {"task_id": task.id if task else None}
    except Exception as e:
        logger.error("import_completed_task_failed", error=str(e))
        return {"error": str(e)}
