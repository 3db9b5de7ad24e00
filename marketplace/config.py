"""Application configuration."""
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = "development"
    database_url: str

    # Redis (rate limiting, IP blocking and Celery broker)
    redis_url: str = "redis://localhost:6379/0"

    # Auth
    jwt_secret: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"

    # Bulk upload
    bulk_upload_max_rows: int = 200
    bulk_upload_max_file_size_mb: int = 10
    bulk_upload_max_pending_batches: int = 3
    bulk_upload_preview_page_size: int = 50
    staging_retention_hours: int = 48
    price_markup_multiplier: float = 1.0526

    # Product matching policy
    match_min_similarity: float = 0.6
    match_high_confidence: float = 0.85
    match_ambiguity_margin: float = 0.05

    # Rate limiting
    rate_limit_window_seconds: int = 900
    rate_limit_max_requests: int = 100
    bulk_upload_rate_limit_window_seconds: int = 3600
    bulk_upload_rate_limit_max_requests: int = 10
    rate_limit_whitelist: list[str] = []
    # Peers allowed to set X-Forwarded-For (load balancers, reverse proxies)
    trusted_proxies: list[str] = []

    # Progressive blocking
    block_violation_threshold: int = 3
    block_base_duration_seconds: int = 900
    block_max_duration_seconds: int = 86400
    block_multiplier: int = 2
    block_violation_window_seconds: int = 3600

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
