import os
from dotenv import load_dotenv

load_dotenv()


def _as_bool(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


class Config:
    """
    Settings read straight from environment variables.
    Every time-related constant the attendance engine depends on lives here.
    """
    # Storage
    DATABASE_URL: str = os.environ.get("DATABASE_URL")
    APPLICATION_REDIS_URL: str = os.environ.get("APPLICATION_REDIS_URL")
    APPLY_SCHEMA_ON_STARTUP: bool = _as_bool(os.environ.get("APPLY_SCHEMA_ON_STARTUP", "0"))

    # Rate limiting for device-facing endpoints
    RATE_LIMITER_STORAGE_URI: str = os.environ.get("RATE_LIMITER_STORAGE_URI", "memory://")
    RATE_LIMIT_ENABLED: bool = _as_bool(os.environ.get("RATE_LIMIT_ENABLED", "1"))

    # Clock. Naive device timestamps are shifted by DEVICE_CLOCK_OFFSET_HOURS before bucketing.
    TIMEZONE: str = os.environ.get("TIMEZONE", "Asia/Jakarta")
    DEVICE_CLOCK_OFFSET_HOURS: float = float(os.environ.get("DEVICE_CLOCK_OFFSET_HOURS", 7))

    # Device liveness
    DEVICE_LIVENESS_TIMEOUT_SECONDS: int = int(os.environ.get("DEVICE_LIVENESS_TIMEOUT_SECONDS", 120))
    LIVENESS_SWEEP_INTERVAL_SECONDS: int = int(os.environ.get("LIVENESS_SWEEP_INTERVAL_SECONDS", 60))
    LAST_TAG_TTL_SECONDS: int = int(os.environ.get("LAST_TAG_TTL_SECONDS", 300))

    # Attendance ledger
    DUPLICATE_SCAN_WINDOW_SECONDS: int = int(os.environ.get("DUPLICATE_SCAN_WINDOW_SECONDS", 0))
    STORAGE_TIMEOUT_SECONDS: float = float(os.environ.get("STORAGE_TIMEOUT_SECONDS", 5))
    STORAGE_RETRY_BACKOFF_SECONDS: float = float(os.environ.get("STORAGE_RETRY_BACKOFF_SECONDS", 0.2))
    LOCK_TIMEOUT_SECONDS: float = float(os.environ.get("LOCK_TIMEOUT_SECONDS", 5))

    # Listing
    DEFAULT_PAGE_SIZE: int = int(os.environ.get("DEFAULT_PAGE_SIZE", 10))
    MAX_PAGE_SIZE: int = int(os.environ.get("MAX_PAGE_SIZE", 100))

    # Logging
    LOG_DIR: str = os.environ.get("LOG_DIR", "logs")
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")

# Single importable instance
settings = Config()
