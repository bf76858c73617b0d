from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration for the operations console core.
    Values are read from OPSCONSOLE_* environment variables or a local .env file.
    """
    model_config = SettingsConfigDict(env_prefix="OPSCONSOLE_", env_file=".env", extra="ignore")

    # Remote API
    API_BASE_URL: str = "http://localhost:5000"
    API_TOKEN: Optional[str] = None
    API_TIMEOUT_S: float = 30.0

    # "live" talks to the API (reads fall back to synthetic data on outage),
    # "demo" never touches the network and short-circuits writes to success.
    DATA_SOURCE: Literal["live", "demo"] = "live"

    READ_RETRIES: int = 3
    RETRY_BACKOFF_S: float = 1.0
    RETRY_BACKOFF_MAX_S: float = 30.0

    # Refresh policy
    POLL_INTERVAL_S: float = 10.0
    LIST_REFRESH_S: float = 30.0
    DETAIL_STALE_S: float = 5.0
    LIST_STALE_S: float = 30.0
    NEARBY_STALE_S: float = 5.0
    # Unwatched cache entries older than this are dropped
    CACHE_MAX_AGE_S: float = 300.0

    NEARBY_RADIUS_M: int = 5000
    NEARBY_LIMIT: int = 10
    DEFAULT_PAGE_SIZE: int = 20
    SYNTHETIC_TOTAL: int = 50

    LOG_FORMAT: Literal["text", "json"] = "text"
    LOG_LEVEL: str = "INFO"
    ADMIN_PORT: int = 8001
    OTEL_ENABLED: bool = False


settings = Settings()
