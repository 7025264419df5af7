"""Mixed (past + today) request handling.

The range is split at today's UTC midnight. History goes through the
past-range handler; today is generated live over [today 00:00, now)
and never cached. Anything after ``now`` is left out, so an open data
gap for today ends at ``now`` even when the caller asked for more.
"""

from datetime import datetime
from functools import lru_cache

import structlog

from app.models.timeline import MovementTimeline, TimelineDataSource
from app.services.exceptions import DetectionEngineError
from app.services.timeline.assembler import TimelineAssembler, get_timeline_assembler
from app.services.timeline.days import start_of_day, utc_now
from app.services.timeline.generation import (
    TimelineGenerationService,
    get_timeline_generation_service,
)
from app.services.timeline.past_handler import PastRangeHandler, get_past_range_handler

logger = structlog.get_logger(__name__)


class MixedRangeHandler:
    """Combines cached history with live data for today."""

    def __init__(
        self,
        past_handler: PastRangeHandler | None = None,
        generator: TimelineGenerationService | None = None,
        assembler: TimelineAssembler | None = None,
    ) -> None:
        self._past = past_handler or get_past_range_handler()
        self._generator = generator or get_timeline_generation_service()
        self._assembler = assembler or get_timeline_assembler()

    def handle(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        """Timeline of a range that includes today.

        Returns:
            Snapshot tagged MIXED, or LIVE when there is no past portion
            or it is empty.

        Raises:
            TimelineStorageError: If the past portion cannot be read or written.
        """
        now = utc_now()
        today_start = start_of_day(now)

        past = MovementTimeline.empty(user_id, TimelineDataSource.CACHED)
        if start < today_start:
            past = self._past.handle(user_id, start, today_start)

        today = self._generate_today(user_id, max(start, today_start), min(end, now))
        combined = self._assembler.combine(user_id, past, today)

        if start >= today_start:
            combined = self._assembler.enhance(combined, start)
        return combined

    def _generate_today(self, user_id: str, start: datetime, end: datetime) -> MovementTimeline:
        if end <= start:
            return MovementTimeline.empty(user_id, TimelineDataSource.LIVE)
        try:
            return self._generator.generate(user_id, start, end)
        except DetectionEngineError as e:
            logger.warning(
                "live_timeline_detection_failed",
                user_id=user_id,
                start=start.isoformat(),
                end=end.isoformat(),
                error=str(e),
            )
            return MovementTimeline.empty(user_id, TimelineDataSource.LIVE)


@lru_cache(maxsize=1)
def get_mixed_range_handler() -> MixedRangeHandler:
    """Get singleton MixedRangeHandler instance."""
    return MixedRangeHandler()
