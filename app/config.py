from dataclasses import dataclass
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./bus_tracking.db"
    SQL_ECHO: bool = False
    CREATE_TABLES_ON_STARTUP: bool = True

    # Redis (empty disables the location cache)
    REDIS_URL: str = ""
    LOCATION_CACHE_TTL_SECONDS: int = 300  # 5 minutes

    # Logging
    LOG_LEVEL: str = "INFO"

    # Speed limits (km/h, school zone defaults)
    SPEED_LIMIT_KMH: float = 50.0
    SPEED_WARNING_KMH: float = 55.0
    SPEED_VIOLATION_KMH: float = 65.0
    SPEED_CRITICAL_KMH: float = 80.0

    # ETA
    ETA_DEFAULT_SPEED_KMH: float = 30.0
    ETA_MINIMUM_SPEED_KMH: float = 10.0
    ETA_SPEED_WINDOW_MINUTES: int = 30
    ETA_SPEED_SAMPLE_LIMIT: int = 50
    ETA_DELAY_THRESHOLD_MINUTES: int = 5
    ETA_SEVERE_DELAY_MINUTES: int = 15
    TRAFFIC_TIMEZONE: str = "UTC"

    # Historical ETA prediction
    PREDICTION_HISTORY_LIMIT: int = 20
    PREDICTION_SCHEDULE_OFFSET_MINUTES: int = 120
    PREDICTION_FALLBACK_CONFIDENCE: float = 0.3

    # Tracking data retention
    TRACKING_RETENTION_DAYS: int = 90

    # Operations webhook (events for the operations room are relayed here)
    OPS_WEBHOOK_URL: str = ""
    OPS_WEBHOOK_TOKEN: str = ""
    OPS_WEBHOOK_TIMEOUT_SECONDS: float = 5.0

    class Config:
        env_file = ".env"

settings = Settings()


@dataclass(frozen=True)
class SpeedThresholds:
    """Tiered speed thresholds in km/h, evaluated lowest to highest"""
    speed_limit: float = 50.0
    warning: float = 55.0
    violation: float = 65.0
    critical: float = 80.0

    @classmethod
    def from_settings(cls, config: Settings) -> "SpeedThresholds":
        return cls(
            speed_limit=config.SPEED_LIMIT_KMH,
            warning=config.SPEED_WARNING_KMH,
            violation=config.SPEED_VIOLATION_KMH,
            critical=config.SPEED_CRITICAL_KMH,
        )


@dataclass(frozen=True)
class ETAParameters:
    default_speed_kmh: float = 30.0
    minimum_speed_kmh: float = 10.0
    speed_window_minutes: int = 30
    speed_sample_limit: int = 50
    delay_threshold_minutes: int = 5
    severe_delay_minutes: int = 15
    traffic_timezone: str = "UTC"

    @classmethod
    def from_settings(cls, config: Settings) -> "ETAParameters":
        return cls(
            default_speed_kmh=config.ETA_DEFAULT_SPEED_KMH,
            minimum_speed_kmh=config.ETA_MINIMUM_SPEED_KMH,
            speed_window_minutes=config.ETA_SPEED_WINDOW_MINUTES,
            speed_sample_limit=config.ETA_SPEED_SAMPLE_LIMIT,
            delay_threshold_minutes=config.ETA_DELAY_THRESHOLD_MINUTES,
            severe_delay_minutes=config.ETA_SEVERE_DELAY_MINUTES,
            traffic_timezone=config.TRAFFIC_TIMEZONE,
        )


@dataclass(frozen=True)
class PredictionParameters:
    history_limit: int = 20
    schedule_offset_minutes: int = 120  # trip start -> assumed scheduled arrival
    fallback_confidence: float = 0.3
    stddev_scale_minutes: float = 30.0
    min_confidence: float = 0.1
    max_confidence: float = 0.9

    @classmethod
    def from_settings(cls, config: Settings) -> "PredictionParameters":
        return cls(
            history_limit=config.PREDICTION_HISTORY_LIMIT,
            schedule_offset_minutes=config.PREDICTION_SCHEDULE_OFFSET_MINUTES,
            fallback_confidence=config.PREDICTION_FALLBACK_CONFIDENCE,
        )
