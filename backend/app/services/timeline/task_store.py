"""Persistence for background regeneration tasks.

Tasks live in the timeline_regeneration_tasks table. Only the
background scheduler changes a task's status once it is created.
"""

import uuid
from datetime import UTC, date, datetime, timedelta
from functools import lru_cache
from typing import Any

import structlog

from app.models.regeneration import RegenerationTask, TaskPriority, TaskStatus
from app.services.exceptions import RegenerationTaskError
from app.services.timeline.event_store import SupabaseTableService, parse_timestamp

logger = structlog.get_logger(__name__)

TASKS_TABLE = "timeline_regeneration_tasks"

_FINISHED_STATUSES = [TaskStatus.COMPLETED.value, TaskStatus.FAILED.value]


def _row_to_task(row: dict[str, Any]) -> RegenerationTask:
    return RegenerationTask(
        id=row["id"],
        user_id=row["user_id"],
        start_date=date.fromisoformat(row["start_date"]),
        end_date=date.fromisoformat(row["end_date"]),
        priority=TaskPriority(row["priority"]),
        status=TaskStatus(row["status"]),
        retry_count=row.get("retry_count") or 0,
        processing_started_at=parse_timestamp(row["processing_started_at"]) if row.get("processing_started_at") else None,
        error_message=row.get("error_message"),
        created_at=parse_timestamp(row["created_at"]) if row.get("created_at") else None,
        completed_at=parse_timestamp(row["completed_at"]) if row.get("completed_at") else None,
    )


class RegenerationTaskStore(SupabaseTableService):
    """CRUD for regeneration tasks."""

    storage_error = RegenerationTaskError

    def create(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        priority: TaskPriority,
    ) -> RegenerationTask:
        """Insert a new PENDING task.

        Raises:
            RegenerationTaskError: If the insert fails.
        """
        row = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "priority": priority.value,
            "status": TaskStatus.PENDING.value,
            "retry_count": 0,
            "created_at": datetime.now(UTC).isoformat(),
        }
        response = self._execute("create_regeneration_task", self.client.table(TASKS_TABLE).insert(row), user_id=user_id)
        task = _row_to_task(response.data[0] if response.data else row)
        logger.info(
            "regeneration_task_created",
            task_id=task.id,
            user_id=user_id,
            priority=priority.value,
            start_date=start_date.isoformat(),
            end_date=end_date.isoformat(),
        )
        return task

    def get(self, task_id: str) -> RegenerationTask | None:
        response = self._execute(
            "get_regeneration_task",
            self.client.table(TASKS_TABLE).select("*").eq("id", task_id).limit(1),
            task_id=task_id,
        )
        return _row_to_task(response.data[0]) if response.data else None

    def find_pending(self, priority: TaskPriority, limit: int, retry_delay_seconds: int = 0) -> list[RegenerationTask]:
        """Oldest PENDING tasks of a priority, at most ``limit``.

        Retried tasks whose last attempt started less than
        ``retry_delay_seconds`` ago are left out, so they never take the
        place of tasks that can run now.
        """
        ready_before = datetime.now(UTC) - timedelta(seconds=retry_delay_seconds)
        response = self._execute(
            "find_pending_regeneration_tasks",
            self.client.table(TASKS_TABLE)
            .select("*")
            .eq("priority", priority.value)
            .eq("status", TaskStatus.PENDING.value)
            .or_(f"processing_started_at.is.null,processing_started_at.lt.{ready_before.isoformat()}")
            .order("created_at")
            .limit(limit),
            priority=priority.value,
        )
        return [_row_to_task(row) for row in response.data or []]

    def count_pending(self, priority: TaskPriority) -> int:
        response = self._execute(
            "count_pending_regeneration_tasks",
            self.client.table(TASKS_TABLE)
            .select("id", count="exact")
            .eq("priority", priority.value)
            .eq("status", TaskStatus.PENDING.value),
            priority=priority.value,
        )
        if response.count is not None:
            return response.count
        return len(response.data or [])

    def has_pending(self, user_id: str, start_date: date, end_date: date, priority: TaskPriority) -> bool:
        """Whether an identical task is already waiting."""
        response = self._execute(
            "find_duplicate_regeneration_task",
            self.client.table(TASKS_TABLE)
            .select("id")
            .eq("user_id", user_id)
            .eq("start_date", start_date.isoformat())
            .eq("end_date", end_date.isoformat())
            .eq("priority", priority.value)
            .eq("status", TaskStatus.PENDING.value)
            .limit(1),
            user_id=user_id,
        )
        return bool(response.data)

    def update(self, task: RegenerationTask) -> None:
        """Persist the status fields of a task."""
        data = {
            "status": task.status.value,
            "retry_count": task.retry_count,
            "processing_started_at": task.processing_started_at.isoformat() if task.processing_started_at else None,
            "error_message": task.error_message,
            "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        }
        self._execute(
            "update_regeneration_task",
            self.client.table(TASKS_TABLE).update(data).eq("id", task.id),
            task_id=task.id,
            status=task.status.value,
        )

    def delete_finished_before(self, days: int) -> int:
        """Delete COMPLETED and FAILED tasks finished more than ``days`` ago.

        Returns:
            Number of tasks deleted.
        """
        cutoff = datetime.now(UTC) - timedelta(days=days)
        response = self._execute(
            "cleanup_regeneration_tasks",
            self.client.table(TASKS_TABLE)
            .delete()
            .in_("status", _FINISHED_STATUSES)
            .lt("completed_at", cutoff.isoformat()),
            retention_days=days,
        )
        deleted = len(response.data or [])
        logger.info("regeneration_tasks_cleaned_up", deleted=deleted, retention_days=days)
        return deleted


@lru_cache(maxsize=1)
def get_regeneration_task_store() -> RegenerationTaskStore:
    """Get singleton RegenerationTaskStore instance."""
    return RegenerationTaskStore()
