"""Engine settings loaded from environment variables (prefix ``CADENCE_``)."""

from enum import Enum

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OverlapPolicy(str, Enum):
    SKIP = "skip"     # previous run still in flight → record a skip
    ALLOW = "allow"   # dispatch overlapping runs


class CatchUpPolicy(str, Enum):
    SINGLE = "single"   # one catch-up fire, next occurrence from "now"
    REPLAY = "replay"   # replay missed occurrences, bounded by max_replays
    DROP = "drop"       # fire nothing, record the miss as a skip


class EngineSettings(BaseSettings):
    """Cadence configuration. Every field can be overridden from the environment."""

    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    database_url: str = Field(default="sqlite+aiosqlite:///cadence.db")

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False)

    # Monitoring
    monitor_enabled: bool = Field(default=True)
    history_capacity: int = Field(default=100, ge=1)
    monitor_thread_safe: bool = Field(default=True)

    # Scheduler loop
    overlap_policy: OverlapPolicy = Field(default=OverlapPolicy.SKIP)
    catch_up_policy: CatchUpPolicy = Field(default=CatchUpPolicy.SINGLE)
    max_replays: int = Field(default=5, ge=1)
    misfire_grace_ms: int = Field(default=60_000, ge=0)
    max_timer_delay_ms: int = Field(default=24 * 60 * 60 * 1000, ge=1)

    # Instance generation horizon
    horizon_max_count: int | None = Field(default=100, ge=1)
    horizon_max_days: int | None = Field(default=100, ge=1)
    refill_threshold: float = Field(default=0.2, gt=0, le=1)

    @model_validator(mode="after")
    def check_horizon(self):
        if self.horizon_max_count is None and self.horizon_max_days is None:
            raise ValueError("At least one of horizon_max_count / horizon_max_days must be set")
        return self
