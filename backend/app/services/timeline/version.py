"""Timeline version fingerprints.

A version fingerprints every input that shapes a user's timeline for one
day. It has two SHA-256 parts joined by ``:``:

- generation: the user, the date and the effective generation
  preferences. These decide which stays and trips exist.
- locations: all favorite locations (sorted by ID). These decide how
  stays are named.

The version is stored on each persisted stay and trip and compared on
read; a mismatch, or a missing version, means the cached day is stale.
A day whose generation part still matches only needs its names and
stamps refreshed; any other mismatch means the day is derived again.
"""

import hashlib
from datetime import date
from functools import lru_cache

import structlog

from app.models.favorite import FavoriteLocation
from app.models.timeline import TimelinePreferences
from app.services.timeline.collaborators import (
    FavoriteRegistry,
    PreferenceStore,
    get_favorite_registry,
    get_preference_store,
)

logger = structlog.get_logger(__name__)

_FIELD_SEPARATOR = "|"
VERSION_SEPARATOR = ":"


def _digest(values: list[object]) -> str:
    digest = hashlib.sha256()
    for value in values:
        digest.update("" if value is None else str(value).encode("utf-8"))
        digest.update(_FIELD_SEPARATOR.encode("utf-8"))
    return digest.hexdigest()


def compute_version(
    user_id: str,
    day: date,
    favorites: list[FavoriteLocation],
    preferences: TimelinePreferences,
) -> str:
    """Fingerprint the generation inputs of one user-day.

    Args:
        user_id: Owning user.
        day: UTC date the events belong to.
        favorites: All of the user's favorite locations, any order.
        preferences: Effective generation preferences.

    Returns:
        ``<generation digest>:<locations digest>``, both hex SHA-256.
    """
    generation = _digest([user_id, day.isoformat(), *preferences.fingerprint_fields()])
    locations: list[object] = []
    for favorite in sorted(favorites, key=lambda f: f.id):
        locations.extend(
            [
                favorite.id,
                favorite.name,
                favorite.type.value,
                favorite.geometry_wkt(),
                favorite.city,
                favorite.country,
            ]
        )
    return f"{generation}{VERSION_SEPARATOR}{_digest(locations)}"


def generation_part(version: str | None) -> str | None:
    """The generation digest of a stored version, or None if it has none."""
    if not version or VERSION_SEPARATOR not in version:
        return None
    return version.split(VERSION_SEPARATOR, 1)[0]


def same_generation(stored: str | None, current: str) -> bool:
    """Whether a stored version was generated with the current preferences."""
    stored_part = generation_part(stored)
    return stored_part is not None and stored_part == generation_part(current)


class TimelineVersionService:
    """Computes and checks version fingerprints against current inputs."""

    def __init__(
        self,
        favorite_registry: FavoriteRegistry | None = None,
        preference_store: PreferenceStore | None = None,
    ) -> None:
        self._favorites = favorite_registry or get_favorite_registry()
        self._preferences = preference_store or get_preference_store()

    def compute(self, user_id: str, day: date) -> str:
        return compute_version(
            user_id,
            day,
            self._favorites.list_favorites(user_id),
            self._preferences.get_preferences(user_id),
        )

    def compute_many(self, user_id: str, days: list[date]) -> dict[date, str]:
        """Versions for several days, loading favorites and preferences once."""
        favorites = self._favorites.list_favorites(user_id)
        preferences = self._preferences.get_preferences(user_id)
        return {day: compute_version(user_id, day, favorites, preferences) for day in days}

    def is_current(self, user_id: str, day: date, version: str | None) -> bool:
        """Whether a stored version still matches the current inputs."""
        if not version or not version.strip():
            return False
        current = self.compute(user_id, day)
        if version != current:
            logger.debug("timeline_version_mismatch", user_id=user_id, day=day.isoformat())
            return False
        return True


@lru_cache(maxsize=1)
def get_timeline_version_service() -> TimelineVersionService:
    """Get singleton TimelineVersionService instance."""
    return TimelineVersionService()
