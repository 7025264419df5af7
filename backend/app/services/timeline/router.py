"""Timeline request routing.

Classifies a requested interval against today (UTC) and hands it to the
matching handler. Future-only requests are answered without storage.
"""

from datetime import datetime
from enum import Enum
from functools import lru_cache

import structlog

from app.models.timeline import MovementTimeline, TimelineDataSource
from app.services.timeline.days import ONE_DAY, start_of_day, utc_now
from app.services.timeline.mixed_handler import MixedRangeHandler, get_mixed_range_handler
from app.services.timeline.past_handler import PastRangeHandler, get_past_range_handler

logger = structlog.get_logger(__name__)


class TimelineRequestType(str, Enum):
    """Request classification relative to today.

    Types:
    - PAST_ONLY: Ends at or before today's midnight
    - MIXED: Touches today
    - FUTURE_ONLY: Starts tomorrow or later
    """

    PAST_ONLY = "PAST_ONLY"
    MIXED = "MIXED"
    FUTURE_ONLY = "FUTURE_ONLY"


def classify_request(now: datetime, start: datetime, end: datetime) -> TimelineRequestType:
    today_start = start_of_day(now)
    if end <= today_start:
        return TimelineRequestType.PAST_ONLY
    if start >= today_start + ONE_DAY:
        return TimelineRequestType.FUTURE_ONLY
    return TimelineRequestType.MIXED


class TimelineRequestRouter:
    """Dispatches timeline requests to the past or mixed handler."""

    def __init__(
        self,
        past_handler: PastRangeHandler | None = None,
        mixed_handler: MixedRangeHandler | None = None,
    ) -> None:
        self._past = past_handler or get_past_range_handler()
        self._mixed = mixed_handler or get_mixed_range_handler()

    def route(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        request_type = classify_request(utc_now(), start, end)
        logger.debug("timeline_request_routed", user_id=user_id, request_type=request_type.value)

        if request_type == TimelineRequestType.PAST_ONLY:
            return self._past.handle(user_id, start, end)
        if request_type == TimelineRequestType.MIXED:
            return self._mixed.handle(user_id, start, end)
        return MovementTimeline.empty(user_id, TimelineDataSource.LIVE)


@lru_cache(maxsize=1)
def get_timeline_request_router() -> TimelineRequestRouter:
    """Get singleton TimelineRequestRouter instance."""
    return TimelineRequestRouter()
