"""Timeline assembly: combining partial snapshots and adding context.

Two operations:
- combine(): join a cached past snapshot with a live today snapshot and
  record the gap between them when it passes the user's thresholds
- enhance(): prepend a copy of the last event before the request so that
  adjacent queries never show a hole at their seam
"""

from datetime import UTC, datetime
from functools import lru_cache

import structlog

from app.models.timeline import (
    MovementTimeline,
    TimelineDataGap,
    TimelineDataSource,
    TimelineEvent,
    TimelineEventType,
    TimelinePreferences,
)
from app.services.exceptions import ServiceError
from app.services.timeline.collaborators import PreferenceStore, get_preference_store
from app.services.timeline.event_store import TimelineEventStore, get_timeline_event_store
from app.services.timeline.gaps import merge_data_gaps

logger = structlog.get_logger(__name__)


def find_cross_boundary_gap(
    user_id: str,
    past: MovementTimeline,
    today: MovementTimeline,
    preferences: TimelinePreferences,
) -> TimelineDataGap | None:
    """Gap between the last past activity and the first activity of today.

    Returns:
        The gap when it passes the thresholds, otherwise None. Also None
        when either side has no stays or trips.
    """
    if not preferences.is_gap_detection_enabled:
        return None

    last_past_end = max(
        (e.end_time for e in past.events() if e.event_type != TimelineEventType.DATA_GAP), default=None
    )
    first_today_start = min(
        (e.start_time for e in today.events() if e.event_type != TimelineEventType.DATA_GAP), default=None
    )
    if last_past_end is None or first_today_start is None:
        return None

    delta = (first_today_start - last_past_end).total_seconds()
    if delta <= 0 or not preferences.should_record_gap(delta):
        return None
    return TimelineDataGap(user_id=user_id, start_time=last_past_end, end_time=first_today_start)


class TimelineAssembler:
    """Merges partial timelines and stitches continuity across requests."""

    def __init__(
        self,
        event_store: TimelineEventStore | None = None,
        preference_store: PreferenceStore | None = None,
    ) -> None:
        self._store = event_store or get_timeline_event_store()
        self._preferences = preference_store or get_preference_store()

    def combine(self, user_id: str, past: MovementTimeline, today: MovementTimeline) -> MovementTimeline:
        """Concatenate past and today, adding the cross-boundary gap if any.

        Overlapping or touching gaps in the result are merged.

        Returns:
            Combined snapshot tagged MIXED, or LIVE when past is empty.
        """
        data_gaps = [*past.data_gaps, *today.data_gaps]
        boundary_gap = find_cross_boundary_gap(user_id, past, today, self._preferences.get_preferences(user_id))
        if boundary_gap is not None:
            logger.info(
                "cross_boundary_gap_detected",
                user_id=user_id,
                start=boundary_gap.start_time.isoformat(),
                end=boundary_gap.end_time.isoformat(),
            )
            data_gaps.append(boundary_gap)

        return MovementTimeline(
            user_id=user_id,
            stays=[*past.stays, *today.stays],
            trips=[*past.trips, *today.trips],
            data_gaps=merge_data_gaps(data_gaps),
            data_source=TimelineDataSource.LIVE if past.is_empty else TimelineDataSource.MIXED,
            last_updated=datetime.now(UTC),
            is_stale=past.is_stale or today.is_stale,
        ).chronological()

    def enhance(self, timeline: MovementTimeline, request_start: datetime) -> MovementTimeline:
        """Prepend the most recent event before request_start, stretched to the timeline.

        The copy ends at the first event of the timeline, or at
        request_start when the timeline is empty. Nothing is prepended
        for gap-only timelines, when an event already spans
        request_start, or when the previous event ends exactly where the
        timeline begins.

        Storage failures here are logged and the timeline is returned
        unchanged.
        """
        if timeline.is_gap_only:
            return timeline

        try:
            previous = self._store.find_latest_event_before(timeline.user_id, request_start)
        except ServiceError as e:
            logger.warning("previous_context_lookup_failed", user_id=timeline.user_id, error=str(e))
            return timeline

        if previous is None:
            return timeline

        context_end = min((e.start_time for e in timeline.events()), default=request_start)
        # An event carried over the request start already covers the seam
        if context_end < request_start or previous.end_time >= context_end:
            return timeline

        return self._prepend(timeline, previous, context_end)

    @staticmethod
    def _prepend(timeline: MovementTimeline, previous: TimelineEvent, context_end: datetime) -> MovementTimeline:
        entity = previous.with_end_time(context_end)
        logger.debug(
            "previous_context_prepended",
            user_id=timeline.user_id,
            event_type=previous.event_type.value,
            event_id=previous.id,
            context_end=context_end.isoformat(),
        )
        if previous.event_type == TimelineEventType.STAY:
            return timeline.model_copy(update={"stays": [entity, *timeline.stays]})
        if previous.event_type == TimelineEventType.TRIP:
            return timeline.model_copy(update={"trips": [entity, *timeline.trips]})
        return timeline.model_copy(update={"data_gaps": [entity, *timeline.data_gaps]})


@lru_cache(maxsize=1)
def get_timeline_assembler() -> TimelineAssembler:
    """Get singleton TimelineAssembler instance."""
    return TimelineAssembler()
