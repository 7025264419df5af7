"""Celery application configuration."""

import ssl
from pathlib import Path

from celery import Celery
from dotenv import load_dotenv

# Load .env before importing settings so worker and beat see the same values as the API
env_file = Path(__file__).parent.parent.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

from app.core.config import get_settings

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "geotimeline_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["app.workers.tasks.timeline_tasks"],
)

# SSL configuration for managed Redis (rediss:// protocol)
# Only apply SSL settings if using TLS connection
_uses_tls = settings.celery_broker_url.startswith("rediss://")
_ssl_config = {"ssl_cert_reqs": ssl.CERT_REQUIRED} if _uses_tls else {}

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,  # Explicit: ack failed/timed-out tasks to prevent infinite redelivery
    # Result backend settings
    result_expires=3600,  # 1 hour
    # Worker settings
    # One gevent pool process per worker: the invalidation queue is
    # in-process state shared by the change tasks and the drain ticks
    worker_pool="gevent",
    worker_prefetch_multiplier=1,
    worker_concurrency=20,
    # Heartbeat and health settings
    broker_heartbeat=30,
    broker_heartbeat_checkrate=2,
    worker_send_task_events=True,
    task_time_limit=1800,  # Hard timeout: 30 minutes per task
    task_soft_time_limit=1700,
    # Priority queues configuration
    task_queues={
        "default": {"exchange": "default", "binding_key": "default"},
        "high": {"exchange": "high", "binding_key": "high"},
        "low": {"exchange": "low", "binding_key": "low"},
    },
    task_default_queue="default",
    task_routes={
        "app.workers.tasks.timeline_tasks.drain_invalidation_queue": {"queue": "high"},
        "app.workers.tasks.timeline_tasks.process_high_priority_regenerations": {"queue": "high"},
        "app.workers.tasks.timeline_tasks.process_favorite_change": {"queue": "high"},
        "app.workers.tasks.timeline_tasks.process_low_priority_regenerations": {"queue": "low"},
        "app.workers.tasks.timeline_tasks.process_preferences_change": {"queue": "low"},
        "app.workers.tasks.timeline_tasks.process_import_completed": {"queue": "low"},
        "app.workers.tasks.timeline_tasks.cleanup_regeneration_tasks": {"queue": "low"},
    },
    # CRITICAL: visibility_timeout must exceed task_time_limit to prevent duplicate execution
    broker_transport_options={
        "visibility_timeout": 3600,
        **(_ssl_config if _uses_tls else {}),
    },
    # Result backend resilience for Redis connection drops
    result_backend_transport_options={
        "socket_timeout": 30,
        "socket_connect_timeout": 30,
        "retry_on_timeout": True,
    },
    broker_use_ssl=_ssl_config if _uses_tls else None,
    redis_backend_use_ssl=_ssl_config if _uses_tls else None,
    # Celery Beat schedule for periodic tasks
    beat_schedule={
        "drain-invalidation-queue": {
            "task": "app.workers.tasks.timeline_tasks.drain_invalidation_queue",
            "schedule": settings.invalidation_drain_interval_seconds,
            "options": {"queue": "high", "expires": 5},
        },
        "process-high-priority-regenerations": {
            "task": "app.workers.tasks.timeline_tasks.process_high_priority_regenerations",
            "schedule": settings.regeneration_high_priority_interval_seconds,
            "options": {"queue": "high", "expires": 10},
        },
        "process-low-priority-regenerations": {
            "task": "app.workers.tasks.timeline_tasks.process_low_priority_regenerations",
            "schedule": settings.regeneration_low_priority_interval_seconds,
            "options": {"queue": "low", "expires": 30},
        },
        "cleanup-regeneration-tasks": {
            "task": "app.workers.tasks.timeline_tasks.cleanup_regeneration_tasks",
            "schedule": settings.regeneration_cleanup_interval_seconds,
            "options": {"queue": "low"},
        },
    },
)
