"""Tests for timeline Celery tasks."""

from unittest.mock import MagicMock, patch

import pytest

from app.models.regeneration import InvalidationQueueStats
from app.workers.tasks.timeline_tasks import (
    cleanup_regeneration_tasks,
    drain_invalidation_queue,
    process_favorite_change,
    process_high_priority_regenerations,
    process_import_completed,
    process_low_priority_regenerations,
    process_preferences_change,
)

# Patch paths for the factories imported inside each task
QUEUE_PATCH = "app.services.timeline.invalidation.get_invalidation_queue"
METRICS_PATCH = "app.services.queue_metrics_service.get_queue_metrics_service"
SCHEDULER_PATCH = "app.services.timeline.scheduler.get_background_regeneration_scheduler"
HANDLER_PATCH = "app.services.timeline.favorite_changes.get_favorite_change_handler"


@pytest.fixture
def scheduler():
    with patch(SCHEDULER_PATCH) as factory:
        yield factory.return_value


@pytest.fixture
def handler():
    with patch(HANDLER_PATCH) as factory:
        yield factory.return_value


class TestDrainInvalidationQueue:
    def test_drains_and_publishes_stats(self) -> None:
        queue = MagicMock()
        queue.drain.return_value = 5
        queue.get_statistics.return_value = InvalidationQueueStats(
            queue_size=10, active_retries=0, total_processed=5, total_failed=0
        )

        with patch(QUEUE_PATCH, return_value=queue), patch(METRICS_PATCH) as metrics:
            result = drain_invalidation_queue()

        assert result["processed"] == 5
        assert result["queue_size"] == 10
        metrics.return_value.publish_invalidation_stats.assert_called_once_with(queue.get_statistics.return_value)

    def test_failure_is_reported_not_raised(self) -> None:
        queue = MagicMock()
        queue.drain.side_effect = RuntimeError("boom")

        with patch(QUEUE_PATCH, return_value=queue), patch(METRICS_PATCH):
            assert drain_invalidation_queue() == {"error": "boom"}


class TestRegenerationDrains:
    def test_high_priority(self, scheduler) -> None:
        scheduler.process_high_priority.return_value = {"processed": 2, "successful": 2, "failed": 0}

        assert process_high_priority_regenerations()["successful"] == 2

    def test_low_priority(self, scheduler) -> None:
        scheduler.process_low_priority.return_value = {"skipped": True, "reason": "high_priority_pending"}

        assert process_low_priority_regenerations()["skipped"] is True

    def test_cleanup(self, scheduler) -> None:
        scheduler.cleanup.return_value = 3

        assert cleanup_regeneration_tasks() == {"deleted": 3}

    def test_scheduler_error(self, scheduler) -> None:
        scheduler.process_high_priority.side_effect = RuntimeError("redis down")

        assert process_high_priority_regenerations() == {"error": "redis down"}


class TestEventTasks:
    def test_favorite_change_payload_is_validated(self, handler) -> None:
        handler.handle_favorite_change.return_value = {"affected_stays": 2, "structural": True}
        payload = {
            "changeType": "DELETED",
            "userId": "user-1",
            "favorite": {"id": 1, "userId": "user-1", "name": "Home", "latitude": 52.52, "longitude": 13.405},
        }

        result = process_favorite_change(payload)

        assert result["affected_stays"] == 2
        event = handler.handle_favorite_change.call_args.args[0]
        assert event.change_type.value == "DELETED"
        assert event.favorite.name == "Home"

    def test_invalid_favorite_payload(self, handler) -> None:
        result = process_favorite_change({"changeType": "MOVED"})

        assert "error" in result
        handler.handle_favorite_change.assert_not_called()

    def test_preferences_change_returns_task_id(self, handler) -> None:
        handler.handle_preferences_changed.return_value = MagicMock(id="task-9")

        assert process_preferences_change({"userId": "user-1"}) == {"task_id": "task-9"}

    def test_import_completed_without_task(self, handler) -> None:
        handler.handle_import_completed.return_value = None

        result = process_import_completed({"userId": "user-1", "startDate": "2024-08-01", "endDate": "2024-08-05"})

        assert result == {"task_id": None}
