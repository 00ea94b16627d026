"""Application configuration via environment variables and .env file."""

from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode
from pydantic_settings.sources import DotEnvSettingsSource, PydanticBaseSettingsSource

# Path to .env file (patch in tests to use tmp_path / ".env")
_ENV_FILE: Path = Path(".env")


class Settings(BaseSettings):
    model_config = {
        "env_prefix": "TAGWATCH_",
        "env_file_encoding": "utf-8",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Load .env from _ENV_FILE (patchable in tests)
        return (
            init_settings,
            env_settings,
            DotEnvSettingsSource(
                settings_cls,
                env_file=_ENV_FILE,
                env_file_encoding="utf-8",
            ),
            file_secret_settings,
        )

    # Database
    db_path: Path = Path("./data/tagwatch.db")

    # Logging
    log_level: str = "info"

    # Detection thresholds (user-tunable)
    min_location_count: int = Field(default=3, ge=2, le=10)
    min_detection_distance_meters: float = Field(default=100.0, ge=50.0, le=500.0)
    min_threat_score: float = Field(default=0.5, ge=0.0, le=1.0)

    # Identity linking
    rotation_window_seconds: int = 30 * 60  # fingerprint search horizon
    find_my_stale_seconds: int = 20 * 60  # FM fingerprints rotate with the key
    temporal_window_seconds: int = 5 * 60
    temporal_rssi_tolerance: int = 20  # dBm
    # Fastest plausible travel between a vanished MAC and its successor
    temporal_max_speed_mps: float = Field(default=42.0, gt=0.0)

    # Max |sighting - GPS fix| before a sighting is rejected
    correlation_window_seconds: int = 30

    # Scoring weights; must sum to 1.0
    weight_location: float = 0.30
    weight_distance: float = 0.20
    weight_time: float = 0.15
    weight_consistency: float = 0.20
    weight_device_type: float = 0.15

    # Device types treated as trackers when not flagged by fingerprint
    # Env: TAGWATCH_TRACKER_DEVICE_TYPES="TRACKER,TAG"
    tracker_device_types: Annotated[list[str], NoDecode] = ["TRACKER"]

    @field_validator("tracker_device_types", mode="before")
    @classmethod
    def parse_tracker_device_types(cls, v: object) -> list[str]:
        """Parse comma-separated string or list."""
        if isinstance(v, str):
            return [s.strip().upper() for s in v.split(",") if s.strip()]
        if isinstance(v, list):
            return [str(s).upper() for s in v if s]
        return []

    @model_validator(mode="after")
    def check_weights(self) -> "Settings":
        total = (
            self.weight_location
            + self.weight_distance
            + self.weight_time
            + self.weight_consistency
            + self.weight_device_type
        )
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0 (got {total:.3f})")
        return self

    # Shadow profiles (MAC-agnostic detection)
    shadow_detection_enabled: bool = True
    shadow_min_combined_score: float = Field(default=0.3, ge=0.0, le=1.0)
    rotation_max_handoff_gap_seconds: int = 5 * 60

    # Alerts
    alert_throttle_seconds: int = 60 * 60
    webhook_url: str | None = None

    # Periodic detection (0 disables the background loop)
    detection_interval: int = 15 * 60
    detection_workers: int = 1

    # Server
    host: str = "0.0.0.0"
    port: int = 8000


def load_config() -> Settings:
    """Load configuration from .env and environment (env overrides .env)."""
    return Settings()


settings = Settings()
