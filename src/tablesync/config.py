from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./tablesync.db"
    left_requests_per_second: float = 5.0
    right_requests_per_second: float = 1.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_jitter_seconds: float = 1.0
    cross_reference_ttl_seconds: float = 300.0
    sync_interval_minutes: int = 5
    # "package.module:callable" returning (left_client, right_client) for a config
    client_factory: str = ""

    class Config:
        env_prefix = "TABLESYNC_"
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
