"""Tests for favorite, preference and import change handling."""

from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from app.models.favorite import FavoriteLocation, FavoriteLocationType, LocationResolution
from app.models.regeneration import (
    FavoriteChangeEvent,
    FavoriteChangeType,
    ImportCompletedEvent,
    PreferencesChangedEvent,
)
from app.models.timeline import LocationSource
from app.services.exceptions import ServiceError
from app.services.timeline.days import day_bounds
from app.services.timeline.favorite_changes import FavoriteChangeHandler, FavoriteDeletionHandler


@pytest.fixture
def scheduler() -> MagicMock:
    return MagicMock()


@pytest.fixture
def invalidation_queue() -> MagicMock:
    queue = MagicMock()
    queue.mark_stale_and_queue.return_value = 1
    return queue


@pytest.fixture
def handler_factory(stay_repository, invalidation_queue, scheduler, location_resolver, settings):
    def _build(**overrides) -> FavoriteChangeHandler:
        handler_settings = settings.model_copy(update=overrides) if overrides else settings
        return FavoriteChangeHandler(
            stay_repository=stay_repository,
            invalidation_queue=invalidation_queue,
            scheduler=scheduler,
            deletion_handler=FavoriteDeletionHandler(stay_repository, location_resolver),
            settings=handler_settings,
        )

    return _build


@pytest.fixture
def handler(handler_factory) -> FavoriteChangeHandler:
    return handler_factory()


def _home(**kwargs) -> FavoriteLocation:
    defaults = dict(id=1, user_id="user-1", name="Home", latitude=52.52, longitude=13.405)
    defaults.update(kwargs)
    return FavoriteLocation(**defaults)


def _event(change_type: FavoriteChangeType, favorite: FavoriteLocation, old_name: str | None = None):
    return FavoriteChangeEvent(change_type=change_type, user_id="user-1", favorite=favorite, old_name=old_name)


# =============================================================================
# Deletion
# =============================================================================


class TestFavoriteDeleted:
    @pytest.fixture
    def home_stays(self, event_store, make_stay, past_day):
        start = day_bounds(past_day)[0]
        return [
            event_store.add_stay(make_stay(start + timedelta(hours=8), favorite_id=1, name="Home")),
            event_store.add_stay(
                make_stay(start + timedelta(hours=20), favorite_id=1, name="Home", latitude=52.6, longitude=13.5)
            ),
        ]

    def test_revert_to_geocoding(
        self, handler, event_store, location_resolver, scheduler, home_stays, user_id, past_day
    ) -> None:
        location_resolver.geocoded[(52.52, 13.405)] = LocationResolution(
            name="Main Street 1", source=LocationSource.GEOCODED, geocoding_id=5
        )

        result = handler.handle_favorite_change(_event(FavoriteChangeType.DELETED, _home()))

        assert result["affected_stays"] == 2
        assert result["structural"] is True
        geocoded, unresolved = sorted(event_store.stays, key=lambda s: s.timestamp)
        assert (geocoded.location_name, geocoded.location_source, geocoded.geocoding_id) == (
            "Main Street 1",
            LocationSource.GEOCODED,
            5,
        )
        assert (unresolved.location_name, unresolved.location_source) == ("Home", LocationSource.HISTORICAL)
        assert all(s.favorite_id is None for s in event_store.stays)
        assert all(s.is_stale for s in event_store.stays)
        scheduler.enqueue_high_priority.assert_called_once_with(user_id, [past_day])

    def test_preserve_historical(self, handler_factory, event_store, location_resolver, home_stays) -> None:
        location_resolver.geocoded[(52.52, 13.405)] = LocationResolution(
            name="Main Street 1", source=LocationSource.GEOCODED, geocoding_id=5
        )
        handler = handler_factory(favorite_deletion_strategy="PRESERVE_HISTORICAL")

        handler.handle_favorite_change(_event(FavoriteChangeType.DELETED, _home()))

        assert all(s.location_name == "Home" for s in event_store.stays)
        assert all(s.location_source == LocationSource.HISTORICAL for s in event_store.stays)
        assert all(s.favorite_id is None for s in event_store.stays)

    def test_geocoding_failure_keeps_name(self, handler, event_store, location_resolver, home_stays) -> None:
        location_resolver.geocode_error = ServiceError("geocoder down")

        handler.handle_favorite_change(_event(FavoriteChangeType.DELETED, _home()))

        assert all(s.location_name == "Home" for s in event_store.stays)
        assert all(s.favorite_id is None for s in event_store.stays)

    def test_today_is_not_scheduled(self, handler, event_store, scheduler, make_stay, user_id, today) -> None:
        event_store.add_stay(make_stay(day_bounds(today)[0] + timedelta(minutes=5), favorite_id=1, name="Home"))

        result = handler.handle_favorite_change(_event(FavoriteChangeType.DELETED, _home()))

        assert result["affected_dates"] == []
        scheduler.enqueue_high_priority.assert_called_once_with(user_id, [])


# =============================================================================
# Addition and Rename
# =============================================================================


class TestFavoriteAddedOrRenamed:
    def test_added_favorite_flags_nearby_stays(self, handler, event_store, scheduler, make_stay, user_id, past_day) -> None:
        start = day_bounds(past_day)[0]
        event_store.add_stay(make_stay(start + timedelta(hours=8)))
        event_store.add_stay(make_stay(start + timedelta(hours=12), latitude=48.1, longitude=11.5))

        result = handler.handle_favorite_change(_event(FavoriteChangeType.ADDED, _home()))

        assert result["affected_stays"] == 1
        near, far = sorted(event_store.stays, key=lambda s: s.timestamp)
        assert near.is_stale
        assert not far.is_stale
        scheduler.enqueue_high_priority.assert_called_once_with(user_id, [past_day])

    def test_added_favorite_without_matches(self, handler, scheduler) -> None:
        result = handler.handle_favorite_change(_event(FavoriteChangeType.ADDED, _home()))

        assert result == {"affected_stays": 0, "structural": True}
        scheduler.enqueue_high_priority.assert_not_called()

    def test_point_rename_updates_names_in_place(
        self, handler, event_store, invalidation_queue, scheduler, make_stay, past_day
    ) -> None:
        start = day_bounds(past_day)[0]
        event_store.add_stay(make_stay(start + timedelta(hours=8), favorite_id=1, name="Home"))

        result = handler.handle_favorite_change(
            _event(FavoriteChangeType.RENAMED, _home(name="Old Home"), old_name="Home")
        )

        assert result["structural"] is False
        assert event_store.stays[0].location_name == "Old Home"
        renamed = invalidation_queue.mark_stale_and_queue.call_args.args[0]
        assert [s.location_name for s in renamed] == ["Old Home"]
        scheduler.enqueue_high_priority.assert_not_called()

    def test_area_rename_is_structural(self, handler, event_store, invalidation_queue, scheduler, make_stay, past_day) -> None:
        start = day_bounds(past_day)[0]
        event_store.add_stay(make_stay(start + timedelta(hours=8), favorite_id=1, name="Campus"))
        area = _home(
            name="Main Campus",
            type=FavoriteLocationType.AREA,
            north_east_latitude=52.53,
            north_east_longitude=13.42,
            south_west_latitude=52.51,
            south_west_longitude=13.39,
        )

        result = handler.handle_favorite_change(_event(FavoriteChangeType.RENAMED, area, old_name="Campus"))

        assert result["structural"] is True
        assert event_store.stays[0].is_stale
        invalidation_queue.mark_stale_and_queue.assert_not_called()
        scheduler.enqueue_high_priority.assert_called_once()


# =============================================================================
# Preferences and Imports
# =============================================================================


class TestPreferencesAndImports:
    def test_preferences_change_covers_the_last_year(self, handler, scheduler, user_id, today) -> None:
        handler.handle_preferences_changed(PreferencesChangedEvent(user_id=user_id))

        yesterday = today - timedelta(days=1)
        scheduler.enqueue_low_priority.assert_called_once_with(user_id, yesterday - timedelta(days=364), yesterday)

    def test_import_is_clamped_to_yesterday(self, handler, scheduler, user_id, today) -> None:
        handler.handle_import_completed(
            ImportCompletedEvent(user_id=user_id, start_date=date(2024, 1, 1), end_date=today + timedelta(days=2))
        )

        scheduler.enqueue_low_priority.assert_called_once_with(user_id, date(2024, 1, 1), today - timedelta(days=1))

    def test_import_of_today_only_is_ignored(self, handler, scheduler, user_id, today) -> None:
        result = handler.handle_import_completed(ImportCompletedEvent(user_id=user_id, start_date=today, end_date=today))

        assert result is None
        scheduler.enqueue_low_priority.assert_not_called()
