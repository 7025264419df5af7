"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "GeoTimeline Backend"
    debug: bool = False
    api_version: str = "v1"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""  # anon key for client operations
    supabase_service_key: str = ""  # service role key for backend operations

    # Celery
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    # Detection service (staypoint/trip detection collaborator)
    detection_service_url: str = "http://localhost:8081/detect"
    detection_timeout_seconds: float = 30.0
    detection_max_retries: int = 3

    # Timeline generation defaults, overridden per user by stored preferences
    timeline_staypoint_detection_algorithm: str = "enhanced"
    timeline_staypoint_velocity_threshold: float = 8.0
    timeline_staypoint_max_accuracy_threshold: float = 60.0
    timeline_staypoint_radius_meters: int = 50
    timeline_staypoint_min_duration_minutes: int = 7
    timeline_trip_detection_algorithm: str = "single"
    timeline_trip_min_distance_meters: int = 50
    timeline_trip_min_duration_minutes: int = 7
    timeline_merge_enabled: bool = True
    timeline_merge_max_distance_meters: int = 400
    timeline_merge_max_time_gap_minutes: int = 15
    # Unset or 0 disables data gap recording
    timeline_data_gap_threshold_seconds: int | None = None
    timeline_data_gap_min_duration_seconds: int | None = None

    # Invalidation queue (in-process, drained by Celery beat)
    invalidation_max_batch_size: int = 20
    invalidation_max_retries: int = 3
    invalidation_retry_delay_seconds: int = 300
    invalidation_drain_interval_seconds: float = 1.0

    # Background regeneration scheduler
    regeneration_high_priority_batch_size: int = 5
    regeneration_low_priority_batch_size: int = 10
    regeneration_high_priority_interval_seconds: float = 2.0
    regeneration_low_priority_interval_seconds: float = 5.0
    regeneration_max_retries: int = 3
    regeneration_retry_delay_seconds: int = 300
    regeneration_task_retention_days: int = 7
    regeneration_cleanup_interval_seconds: float = 3600.0
    preferences_regeneration_days: int = 365

    # Regeneration strategy selection
    selective_merge_max_stays: int = 10
    merge_opportunity_window_hours: int = 2

    # Location resolution and favorite impact analysis
    favorite_point_match_radius_meters: float = 75.0
    favorite_point_impact_radius_meters: float = 75.0
    favorite_area_impact_buffer_meters: float = 15.0
    geocoding_match_radius_meters: float = 50.0
    favorite_deletion_strategy: str = "REVERT_TO_GEOCODING"

    @property
    def is_configured(self) -> bool:
        """Check if essential configuration is present."""
        return bool(self.supabase_url and self.supabase_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
