"""Tests for the Supabase-backed timeline event store."""

from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from app.models.timeline import TimelineEvent, TimelineEventType
from app.services.exceptions import SupabaseNotConfiguredError, TimelineStorageError
from app.services.timeline.event_store import (
    GAPS_TABLE,
    STAYS_TABLE,
    TRIPS_TABLE,
    TimelineEventStore,
    row_to_stay,
)

START = datetime(2024, 8, 15, tzinfo=UTC)
END = datetime(2024, 8, 16, tzinfo=UTC)

STAY_ROW = {
    "id": 1,
    "user_id": "user-1",
    "timestamp": "2024-08-15T08:00:00+00:00",
    "stay_duration": 7200,
    "latitude": 52.52,
    "longitude": 13.405,
    "location_name": "Home",
    "location_source": "FAVORITE",
    "favorite_id": 3,
    "is_stale": False,
    "timeline_version": "v1",
}

GAP_ROW = {
    "id": 2,
    "user_id": "user-1",
    "start_time": "2024-08-15T09:00:00+00:00",
    "end_time": "2024-08-15T10:00:00+00:00",
}


def _chain(data=None, count=None) -> MagicMock:
    """Query builder mock whose filter methods all return itself."""
    chain = MagicMock()
    for method in ("select", "eq", "lt", "lte", "gt", "gte", "order", "limit", "insert", "update", "delete", "in_"):
        getattr(chain, method).return_value = chain
    chain.execute.return_value = MagicMock(data=data or [], count=count)
    return chain


@pytest.fixture
def tables() -> dict[str, MagicMock]:
    return {STAYS_TABLE: _chain(), TRIPS_TABLE: _chain(), GAPS_TABLE: _chain()}


@pytest.fixture
def store(tables) -> TimelineEventStore:
    client = MagicMock()
    client.table.side_effect = lambda name: tables[name]
    return TimelineEventStore(client)


class TestRowMapping:
    def test_naive_timestamp_is_utc(self) -> None:
        stay = row_to_stay({**STAY_ROW, "timestamp": "2024-08-15T08:00:00"})

        assert stay.timestamp == datetime(2024, 8, 15, 8, tzinfo=UTC)
        assert stay.end_time == datetime(2024, 8, 15, 10, tzinfo=UTC)

    def test_missing_source_is_historical(self) -> None:
        stay = row_to_stay({**STAY_ROW, "location_source": None})

        assert stay.location_source.value == "HISTORICAL"


class TestCoverage:
    def test_overlapping_stay_covers_range(self, store, tables) -> None:
        tables[STAYS_TABLE].execute.return_value = MagicMock(data=[{"id": 1}])

        assert store.has_complete_data("user-1", START, END)
        tables[STAYS_TABLE].lt.assert_called_with("timestamp", END.isoformat())
        tables[STAYS_TABLE].gt.assert_called_with("end_time", START.isoformat())
        tables[GAPS_TABLE].select.assert_not_called()

    def test_gap_must_span_whole_range(self, store, tables) -> None:
        tables[GAPS_TABLE].execute.return_value = MagicMock(data=[{"id": 2}])

        assert store.has_complete_data("user-1", START, END)
        tables[GAPS_TABLE].lte.assert_called_with("start_time", START.isoformat())
        tables[GAPS_TABLE].gte.assert_called_with("end_time", END.isoformat())

    def test_nothing_persisted(self, store) -> None:
        assert not store.has_complete_data("user-1", START, END)


class TestRetrieval:
    def test_get_existing_events_maps_rows(self, store, tables) -> None:
        tables[STAYS_TABLE].execute.return_value = MagicMock(data=[STAY_ROW])
        tables[GAPS_TABLE].execute.return_value = MagicMock(data=[GAP_ROW])

        timeline = store.get_existing_events("user-1", START, END)

        assert timeline.data_source.value == "CACHED"
        assert timeline.stays[0].favorite_id == 3
        assert timeline.stays[0].duration_seconds == 7200
        assert timeline.data_gaps[0].duration_seconds == 3600
        assert timeline.trips == []
        tables[GAPS_TABLE].lt.assert_called_with("start_time", END.isoformat())

    def test_latest_event_tie_goes_to_later_start(self, store, tables) -> None:
        tables[STAYS_TABLE].execute.return_value = MagicMock(data=[STAY_ROW])
        tables[GAPS_TABLE].execute.return_value = MagicMock(data=[GAP_ROW])

        latest = store.find_latest_event_before("user-1", datetime(2024, 8, 15, 12, tzinfo=UTC))

        assert latest.event_type == TimelineEventType.DATA_GAP
        assert latest.id == 2
        tables[STAYS_TABLE].lte.assert_called_with("end_time", "2024-08-15T12:00:00+00:00")

    def test_latest_event_none(self, store) -> None:
        assert store.find_latest_event_before("user-1", START) is None


class TestWrites:
    def test_delete_uses_start_column_per_table(self, store, tables) -> None:
        store.delete_timeline_data("user-1", START, END)

        tables[STAYS_TABLE].gte.assert_called_with("timestamp", START.isoformat())
        tables[TRIPS_TABLE].lt.assert_called_with("timestamp", END.isoformat())
        tables[GAPS_TABLE].gte.assert_called_with("start_time", START.isoformat())
        for chain in tables.values():
            chain.delete.assert_called_once()

    def test_save_events_skips_empty_tables(self, store, tables) -> None:
        tables[STAYS_TABLE].execute.return_value = MagicMock(data=[STAY_ROW])
        stay = row_to_stay({**STAY_ROW, "id": None})

        saved = store.save_events("user-1", [stay], [], [])

        assert saved.stays[0].id == 1
        row = tables[STAYS_TABLE].insert.call_args.args[0][0]
        assert row["end_time"] == "2024-08-15T10:00:00+00:00"
        tables[TRIPS_TABLE].insert.assert_not_called()
        tables[GAPS_TABLE].insert.assert_not_called()

    def test_update_event_end_recomputes_duration(self, store, tables) -> None:
        tables[STAYS_TABLE].execute.return_value = MagicMock(data=[{"id": 1}])
        event = TimelineEvent.of(row_to_stay(STAY_ROW))

        assert store.update_event_end(event, datetime(2024, 8, 15, 11, tzinfo=UTC)) == 1

        data = tables[STAYS_TABLE].update.call_args.args[0]
        assert data["stay_duration"] == 3 * 3600
        assert data["end_time"] == "2024-08-15T11:00:00+00:00"
        tables[STAYS_TABLE].eq.assert_called_with("id", 1)

    def test_update_versions_leaves_staleness_alone(self, store, tables) -> None:
        store.update_versions("user-1", START, END, "v2")

        data = tables[STAYS_TABLE].update.call_args.args[0]
        assert data["timeline_version"] == "v2"
        assert "is_stale" not in data
        tables[GAPS_TABLE].update.assert_not_called()


class TestErrors:
    def test_driver_failure_is_wrapped(self, store, tables) -> None:
        tables[STAYS_TABLE].execute.side_effect = Exception("connection reset")

        with pytest.raises(TimelineStorageError) as exc_info:
            store.has_complete_data("user-1", START, END)

        assert "connection reset" in exc_info.value.message
        assert exc_info.value.is_retryable

    def test_missing_configuration(self) -> None:
        with patch("app.services.timeline.event_store.get_service_client", return_value=None):
            store = TimelineEventStore()

            with pytest.raises(SupabaseNotConfiguredError):
                store.get_existing_events("user-1", START, END)

