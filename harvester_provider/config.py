from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field(default="sqlite:///./harvester_provider.db")
    credentials_dir: str = Field(default="/var/run/secrets/harvester-provider")
    request_timeout_sec: float = Field(default=10.0, gt=0)

    requeue_short_sec: int = Field(default=10, ge=1)
    requeue_long_sec: int = Field(default=30, ge=1)

    worker_count: int = Field(default=4, ge=1)
    resync_interval_sec: int = Field(default=300, ge=5)
    backoff_base_sec: float = Field(default=1.0, gt=0)
    backoff_max_sec: float = Field(default=300.0, gt=0)

    log_level: str = Field(default="INFO")
    disable_background_loops: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
