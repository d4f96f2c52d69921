# flightfinder/config.py
from typing import Literal, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # App
    APP_ENV: Literal["dev", "prod", "staging", "test"] = "dev"
    TZ: str = "Europe/London"

    # Amadeus (search backend is disabled when credentials are missing)
    AMADEUS_CLIENT_ID: Optional[str] = None
    AMADEUS_CLIENT_SECRET: Optional[str] = None
    AMADEUS_ENV: str = "sandbox"  # or "production"

    # Cache persistence
    CACHE_BACKEND: Literal["memory", "file", "redis"] = "memory"
    CACHE_FILE_PATH: str = "data/cache/flight_finder_cache.json"
    CACHE_STORAGE_QUOTA_BYTES: Optional[int] = 5 * 1024 * 1024  # browser-like ceiling
    REDIS_URL: str = "redis://localhost:6379/0"

    # Named caches
    RESULTS_CACHE_MAX_SIZE: int = 50
    RESULTS_CACHE_TTL_SECONDS: int = 4 * 60 * 60  # 4 hours
    QUERY_CACHE_MAX_SIZE: int = 100
    QUERY_CACHE_TTL_SECONDS: int = 60 * 60  # 1 hour
    AIRPORT_CACHE_MAX_SIZE: int = 500
    AIRPORT_CACHE_TTL_SECONDS: int = 7 * 24 * 60 * 60  # 1 week

    # Search execution
    SEARCH_MAX_CONCURRENCY: int = 3
    BREAKER_FAILURE_THRESHOLD: int = 5
    BREAKER_RECOVERY_SECONDS: int = 60

    # API rate limiting
    RATE_LIMIT_REQUESTS: int = 20
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # read .env and ignore any extra keys
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

settings = Settings()
