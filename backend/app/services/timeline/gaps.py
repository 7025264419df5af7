"""Data gap detection and merging."""

from datetime import datetime

from app.models.gps import GpsPoint
from app.models.timeline import TimelineDataGap, TimelinePreferences


def detect_data_gaps(
    user_id: str,
    points: list[GpsPoint],
    start: datetime,
    end: datetime,
    preferences: TimelinePreferences,
) -> list[TimelineDataGap]:
    """Find intervals of [start, end) without GPS coverage.

    Spacing between consecutive points is checked, and so is the
    stretch from ``start`` to the first point and from the last point to
    ``end``. With no points at all the whole range is one candidate gap.

    Args:
        user_id: Owning user.
        points: GPS points in chronological order.
        start: Range start.
        end: Range end. Callers generating today pass min(end, now).
        preferences: Provides the gap thresholds.

    Returns:
        Merged gaps that pass the user's thresholds.
    """
    if not preferences.is_gap_detection_enabled or end <= start:
        return []

    boundaries = [start, *(p.timestamp for p in points if start <= p.timestamp < end), end]
    gaps = [
        TimelineDataGap(user_id=user_id, start_time=prev, end_time=nxt)
        for prev, nxt in zip(boundaries, boundaries[1:])
        if preferences.should_record_gap((nxt - prev).total_seconds())
    ]
    return merge_data_gaps(gaps)


def merge_data_gaps(gaps: list[TimelineDataGap]) -> list[TimelineDataGap]:
    """Merge gaps that overlap or touch into single gaps, in chronological order."""
    merged: list[TimelineDataGap] = []
    for gap in sorted(gaps, key=lambda g: g.start_time):
        if merged and gap.start_time <= merged[-1].end_time:
            last = merged[-1]
            if gap.end_time > last.end_time:
                merged[-1] = last.model_copy(update={"end_time": gap.end_time})
            continue
        merged.append(gap)
    return merged
