# app/config.py
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # --- DB ---
    DATABASE_URL: str

    # --- Glacier (ICM messages API) ---
    GLACIER_API_BASE: str = "https://glacier-api.avax.network/v1"
    GLACIER_API_KEY: Optional[str] = None
    GLACIER_NETWORK: str = "mainnet"
    GLACIER_PAGE_SIZE: int = 100
    GLACIER_TIMEOUT_SECONDS: float = 30.0

    # pacing / retries por página
    GLACIER_PAGE_DELAY_SECONDS: float = 1.0
    GLACIER_MAX_RETRIES: int = 3
    GLACIER_BACKOFF_BASE_SECONDS: float = 1.0
    GLACIER_BACKOFF_MAX_SECONDS: float = 10.0

    # --- ICM update cycles ---
    ICM_HEARTBEAT_EVERY_PAGES: int = 10
    # True = no cortar la paginación en el primer mensaje viejo
    ICM_FETCH_EXHAUSTIVE: bool = False
    ICM_DAILY_RETENTION_DAYS: int = 90

    # --- Chain registry (nombres para los ids) ---
    CHAIN_REGISTRY_URL: Optional[str] = None
    CHAIN_NAMES_TTL_SECONDS: int = 3600
    CHAIN_NAMES_RETRY_SECONDS: int = 60

    # --- Worker / logging ---
    SCHEDULER_POLL_SECONDS: int = 30
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
