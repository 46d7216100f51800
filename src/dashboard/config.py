from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    gripp_api_url: str = "https://api.gripp.com/public/api3.php"
    gripp_api_key: str = ""
    gripp_timeout_seconds: float = 60.0
    database_url: str = "sqlite:///./dashboard.db"

    # Sync engine
    sync_page_size: int = 250  # upstream maximum
    sync_chunk_days: int = 7
    sync_max_retries: int = 5
    sync_base_delay_seconds: float = 2.0
    sync_page_delay_seconds: float = 0.5
    sync_window_delay_seconds: float = 1.0
    sync_batch_size: int = 100
    sync_fan_out: int = 5
    sync_group_delay_seconds: float = 0.5

    # Scheduled sync
    sync_hour: int = 3
    sync_lookback_days: int = 28

    # Cache
    cache_default_ttl_seconds: int = 3600
    cache_report_ttl_seconds: int = 300
    cache_max_items: int = 1000  # fast tier only

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
