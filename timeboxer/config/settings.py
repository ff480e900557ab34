from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    app_name: str = "Timeboxer"
    debug: bool = False
    database_url: str = Field("sqlite:///./timeboxer.db", validation_alias="DATABASE_URL")
    redis_url: str = Field("redis://localhost:6379/0", validation_alias="REDIS_URL")
    timezone: str = Field("UTC", validation_alias="TIMEZONE")

    # Engine tuning
    slot_rounding_minutes: int = 15
    min_horizon_weeks: int = 8
    horizon_margin_weeks: int = 2
    reschedule_horizon_days: int = 30
    safety_horizon_days: int = 365

    # Recalculation triggers
    auto_recalculate: bool = True
    recalc_debounce_seconds: float = 1.0
    recalc_lock_timeout_seconds: int = 60

    # Calendar sync
    sync_max_workers: int = 4
    calendar_api_base_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_id: str = "primary"
    calendar_access_token: str = Field("", validation_alias="CALENDAR_ACCESS_TOKEN")
    calendar_lookahead_days: int = 90
    calendar_timeout_seconds: float = 10.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
