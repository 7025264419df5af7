"""Celery tasks module.

Task modules are listed in the Celery app's ``include`` so that the
worker registers them; routing keys off their dotted names.
"""

__all__ = [
    "timeline_tasks",
]
