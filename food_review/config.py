from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Settings(BaseSettings):
    # Core
    app_name: str = Field(default="food-review-server")
    environment: str = Field(default="dev")  # dev|staging|prod
    log_json: bool = Field(default=True)
    log_level: str = Field(default="INFO")

    # Auth (Clerk)
    clerk_issuer: str | None = Field(default=None)
    clerk_jwks_url: str | None = Field(default=None)
    clerk_audience: str | None = Field(default=None)
    auth_disable_verification: bool = Field(default=False)
    cron_secret: str | None = Field(default=None)

    # Data
    database_url: str | None = Field(default=None)

    # API
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    admin_emails: List[str] = Field(default_factory=list)
    review_trigger_rate_limit: str = Field(default="5/minute")

    # OpenAI
    openai_api_key: str | None = Field(default=None)
    openai_food_review_model: str = Field(default="gpt-5-mini")
    openai_food_review_top_p: float | None = Field(default=None)
    openai_food_review_reasoning_effort: str = Field(default="low")
    openai_food_review_max_output_tokens: int = Field(default=4000)
    openai_request_timeout_seconds: int = Field(default=90, ge=30, le=300)

    # Food review pipeline
    review_batch_size: int = Field(default=20, ge=1, le=100)
    review_default_limit: int = Field(default=500, ge=1)
    review_max_limit: int = Field(default=2000, ge=1)
    review_stuck_run_timeout_seconds: int = Field(default=600, ge=1)
    review_lookup_concurrency: int = Field(default=4, ge=1, le=32)

    # Observability
    sentry_dsn: str | None = Field(default=None)
    sentry_traces_sample_rate: float = Field(default=0.0)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    @field_validator("cors_allowed_origins", "admin_emails", mode="before")
    @classmethod
    def _csv_to_list(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
