"""Application configuration using pydantic-settings."""
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[3] / ".env"),
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Courier Dispatch API"
    app_mode: str = "demo"
    log_level: str = "INFO"
    log_json: bool = False

    # State
    dispatch_db_path: str = "./data/dispatch.db"
    idempotency_retention: int = Field(default=10000, ge=1)
    timeline_retention: int = Field(default=5000, ge=1)

    # Assignment engine
    # Global ceiling; partner records carry no per-partner capacity.
    capacity_ceiling: int = Field(default=5, ge=1)
    lock_timeout_seconds: float = Field(default=2.0, gt=0)

    # Metrics
    trend_default_bucketing: str = "month"
    trend_max_buckets: int = Field(default=3660, ge=1)

    # Identity boundary
    auth_enabled: bool = False
    api_tokens: str = ""
    default_actor: str = "operator"

    def normalized_app_mode(self) -> str:
        mode = (self.app_mode or "").strip().lower()
        return mode if mode in {"demo", "production"} else "production"

    def is_demo_mode(self) -> bool:
        return self.normalized_app_mode() == "demo"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
