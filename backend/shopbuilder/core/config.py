from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # App
    app_name: str = "Shopify AI App Builder"
    debug: bool = False

    # API
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Anthropic
    anthropic_api_key: str = ""
    generation_model: str = "claude-3-5-sonnet-20241022"
    generation_max_tokens: int = 4000
    generation_temperature: float = 0.7

    # E2B Sandbox
    e2b_api_key: str = ""
    sandbox_timeout_seconds: int = 1800  # sandbox lifetime for CLI jobs and previews

    # Job store: an empty redis_url disables the durable backend (in-process map only)
    redis_url: str = "redis://localhost:6379"
    job_store_retry_seconds: float = 30.0  # durable backend skipped this long after a failed write

    # Project storage (S3). Empty bucket = projects are not persisted
    projects_bucket: str = ""
    aws_region: str = "us-east-1"

    # Code generation pipeline
    preview_port: int = 3000
    preview_grace_seconds: float = 3.0

    # Shopify CLI job monitoring
    job_poll_interval_seconds: float = 8.0
    job_ceiling_seconds: float = 25 * 60
    abandoned_job_seconds: float = 30 * 60
    abandoned_sweep_interval_seconds: float = 10 * 60
    job_retention_seconds: int = 24 * 60 * 60
    cli_probe_timeout_seconds: int = 30
    shopify_cli_template: str = "remix"


@lru_cache
def get_settings() -> Settings:
    return Settings()
