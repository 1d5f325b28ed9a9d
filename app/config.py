"""Application configuration."""

from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str = "sqlite:///./data/hr_sync.db"

    # Durable cache
    redis_url: str = "redis://localhost:6379/0"

    # Encryption (validated at startup by EncryptionService)
    encryption_key: Optional[str] = None

    # Keka
    keka_client_id: Optional[str] = None
    keka_client_secret: Optional[str] = None
    keka_api_key: Optional[str] = None
    keka_company: Optional[str] = None
    keka_environment: Optional[str] = None
    keka_token_url: str = "https://login.keka.com/connect/token"
    keka_target_group_ids: List[str] = [
        "6a216ce7-156b-460e-8172-3b62c0c45381",  # 21 Udayan Industrial Estate
        "d6769f4b-5882-421f-9a5a-0b1d72e3371e",  # PP
    ]

    # Sync pacing
    sync_max_calls_per_minute: int = 40
    sync_rate_window_seconds: float = 60.0
    sync_page_size: int = 100
    sync_page_delay_seconds: float = 0.3
    employee_page_delay_seconds: float = 0.5
    token_ttl_seconds: int = 24 * 60 * 60
    employee_ids_cache_ttl_seconds: int = 60 * 60
    employee_roster_cache_ttl_seconds: int = 23 * 60 * 60
    attendance_backfill_days: int = 14

    # Local clock (IST has no daylight saving, so a fixed offset is exact)
    local_utc_offset_minutes: int = 330
    local_timezone: str = "Asia/Kolkata"

    # Scheduling
    scheduler_enabled: bool = True
    attendance_sync_interval_minutes: int = 5
    employee_sync_times: str = "07:00,07:30,12:00"
    token_refresh_times: str = "06:50,07:00"
    employee_sync_startup_delay_seconds: float = 10.0

    # Name matching table (defaults to the bundled app/data/name_variants.yaml)
    name_variants_path: Optional[str] = None

    # Application
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"


settings = Settings()
