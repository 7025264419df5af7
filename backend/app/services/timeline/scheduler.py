"""Background regeneration scheduler.

Consumes persisted regeneration tasks in two priority lanes:
- HIGH: favorite changes, drained every couple of seconds
- LOW: imports and preference changes, drained only while no HIGH task waits

Each task regenerates its whole date range in one detection pass and
persists the result per day. Failures are retried up to a ceiling with
a delay between attempts, then the task is marked FAILED. A retention
sweep removes finished tasks.

Drains are serialized through a Redis lock shared by every worker.
"""

from collections.abc import Callable
from datetime import UTC, date, datetime
from functools import lru_cache
from typing import Any

import structlog

from app.core.config import Settings, get_settings
from app.models.regeneration import QueueStatus, RegenerationTask, TaskOutcome, TaskPriority, TaskStatus
from app.services.distributed_lock import DrainLock
from app.services.timeline.regeneration import (
    TimelineRegenerationService,
    get_timeline_regeneration_service,
)
from app.services.timeline.task_store import RegenerationTaskStore, get_regeneration_task_store

logger = structlog.get_logger(__name__)


class BackgroundRegenerationScheduler:
    """Queues and processes regeneration tasks by priority."""

    def __init__(
        self,
        task_store: RegenerationTaskStore | None = None,
        regeneration_service: TimelineRegenerationService | None = None,
        drain_lock_factory: Callable[[], DrainLock] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._tasks = task_store or get_regeneration_task_store()
        self._regeneration = regeneration_service or get_timeline_regeneration_service()
        self._drain_lock_factory = drain_lock_factory or DrainLock
        self._settings = settings or get_settings()

    def _new_drain_lock(self) -> DrainLock:
        # One per drain: a DrainLock tracks only its own acquisition
        return self._drain_lock_factory()

    # =========================================================================
    # Enqueue
    # =========================================================================

    def enqueue_high_priority(self, user_id: str, dates: list[date]) -> RegenerationTask | None:
        """Queue a HIGH task spanning the given dates.

        Returns:
            The created task, or None if no dates were given or an
            identical task is already pending.
        """
        if not dates:
            return None
        return self._enqueue(user_id, min(dates), max(dates), TaskPriority.HIGH)

    def enqueue_low_priority(self, user_id: str, start_date: date, end_date: date) -> RegenerationTask | None:
        """Queue a LOW task for [start_date, end_date].

        Returns:
            The created task, or None if an identical task is already pending.
        """
        return self._enqueue(user_id, start_date, end_date, TaskPriority.LOW)

    def _enqueue(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        priority: TaskPriority,
    ) -> RegenerationTask | None:
        if self._tasks.has_pending(user_id, start_date, end_date, priority):
            logger.debug(
                "regeneration_task_already_pending",
                user_id=user_id,
                priority=priority.value,
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
            )
            return None
        return self._tasks.create(user_id, start_date, end_date, priority)

    # =========================================================================
    # Processing
    # =========================================================================

    def process_high_priority(self) -> dict[str, Any]:
        """Drain one batch of HIGH tasks."""
        tasks = self._tasks.find_pending(
            TaskPriority.HIGH,
            self._settings.regeneration_high_priority_batch_size,
            self._settings.regeneration_retry_delay_seconds,
        )
        if not tasks:
            return {"processed": 0, "successful": 0, "failed": 0, "deferred": 0}
        return self._process_batch(tasks, TaskPriority.HIGH)

    def process_low_priority(self) -> dict[str, Any]:
        """Drain one batch of LOW tasks, unless HIGH tasks are waiting."""
        high_pending = self._tasks.count_pending(TaskPriority.HIGH)
        if high_pending > 0:
            logger.debug("low_priority_drain_skipped", high_pending=high_pending)
            return {"skipped": True, "reason": "high_priority_pending", "high_pending": high_pending}

        tasks = self._tasks.find_pending(
            TaskPriority.LOW,
            self._settings.regeneration_low_priority_batch_size,
            self._settings.regeneration_retry_delay_seconds,
        )
        if not tasks:
            return {"processed": 0, "successful": 0, "failed": 0, "deferred": 0}
        return self._process_batch(tasks, TaskPriority.LOW)

    def _process_batch(self, tasks: list[RegenerationTask], priority: TaskPriority) -> dict[str, Any]:
        with self._new_drain_lock() as locked:
            if not locked:
                return {"skipped": True, "reason": "drain_in_progress"}

            outcomes = [self.process_task(task) for task in tasks]

        successful = outcomes.count(TaskOutcome.COMPLETED)
        failed = outcomes.count(TaskOutcome.FAILED)
        deferred = outcomes.count(TaskOutcome.DEFERRED)
        logger.info(
            "regeneration_batch_completed",
            priority=priority.value,
            successful=successful,
            failed=failed,
            deferred=deferred,
        )
        return {
            "processed": successful + failed,
            "successful": successful,
            "failed": failed,
            "deferred": deferred,
        }

    def process_task(self, task: RegenerationTask) -> TaskOutcome:
        """Regenerate a task's range and record the outcome.

        Returns:
            COMPLETED, DEFERRED while the task waits out its retry delay, or
            FAILED.
        """
        now = datetime.now(UTC)
        if task.retry_count > 0 and task.processing_started_at is not None:
            waited = (now - task.processing_started_at).total_seconds()
            if waited < self._settings.regeneration_retry_delay_seconds:
                logger.debug("regeneration_task_retry_deferred", task_id=task.id, waited_seconds=int(waited))
                return TaskOutcome.DEFERRED

        task = task.model_copy(update={"status": TaskStatus.PROCESSING, "processing_started_at": now})
        self._tasks.update(task)
        logger.info(
            "regeneration_task_started",
            task_id=task.id,
            user_id=task.user_id,
            start_date=task.start_date.isoformat(),
            end_date=task.end_date.isoformat(),
            attempt=task.retry_count + 1,
        )

        try:
            result = self._regeneration.regenerate_range(task.user_id, task.start_date, task.end_date)
        except Exception as e:
            logger.error("regeneration_task_failed", task_id=task.id, user_id=task.user_id, error=str(e))
            self._record_failure(task, str(e))
            return TaskOutcome.FAILED

        self._tasks.update(
            task.model_copy(
                update={
                    "status": TaskStatus.COMPLETED,
                    "completed_at": datetime.now(UTC),
                    "error_message": None,
                }
            )
        )
        logger.info(
            "regeneration_task_completed",
            task_id=task.id,
            user_id=task.user_id,
            stays=len(result.stays),
            trips=len(result.trips),
        )
        return TaskOutcome.COMPLETED

    def _record_failure(self, task: RegenerationTask, error: str) -> None:
        if task.retry_count < self._settings.regeneration_max_retries:
            # processing_started_at is kept so the retry delay counts from this attempt
            self._tasks.update(
                task.model_copy(
                    update={
                        "status": TaskStatus.PENDING,
                        "retry_count": task.retry_count + 1,
                        "error_message": error,
                    }
                )
            )
            logger.debug("regeneration_task_requeued", task_id=task.id, retry_count=task.retry_count + 1)
            return

        self._tasks.update(
            task.model_copy(
                update={
                    "status": TaskStatus.FAILED,
                    "error_message": error,
                    "completed_at": datetime.now(UTC),
                }
            )
        )
        logger.error(
            "regeneration_task_failed_permanently",
            task_id=task.id,
            attempts=task.retry_count + 1,
        )

    # =========================================================================
    # Maintenance and Status
    # =========================================================================

    def cleanup(self) -> int:
        """Delete finished tasks older than the retention window."""
        return self._tasks.delete_finished_before(self._settings.regeneration_task_retention_days)

    def get_queue_status(self) -> QueueStatus:
        return QueueStatus(
            high_pending=self._tasks.count_pending(TaskPriority.HIGH),
            low_pending=self._tasks.count_pending(TaskPriority.LOW),
            draining=self._new_drain_lock().is_held(),
        )


@lru_cache(maxsize=1)
def get_background_regeneration_scheduler() -> BackgroundRegenerationScheduler:
    """Get singleton BackgroundRegenerationScheduler instance."""
    return BackgroundRegenerationScheduler()
