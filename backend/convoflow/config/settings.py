# /convoflow/config/settings.py

import sys
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # MongoDB
    mongo_uri: str
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis (optional; without it execution leases are process-local)
    redis_url: str | None = None

    # Security
    jwt_secret_key: str
    jwt_algorithm: str = "HS256"

    # Workflow engine
    execution_lease_ttl_seconds: int = 300
    checkpoint_max_attempts: int = 5
    checkpoint_backoff_min: float = 0.2
    checkpoint_backoff_max: float = 5.0
    delay_poll_interval_seconds: int = 15
    delay_resume_batch_size: int = 100
    webhook_timeout_seconds: float = 10.0

    # Deployment
    workers: int = 4
    environment: str = Field(default="production")

    # Observability
    alerting_webhook_url: str | None = None

    # App Metadata
    api_version: str = "v1"

    # ---------------- Validators ---------------- #

    @field_validator("jwt_secret_key")
    @classmethod
    def key_length_must_be_sufficient(cls, v):
        if len(v) < 32:
            raise ValueError("JWT secret key must be at least 32 characters long")
        return v

    @field_validator("checkpoint_max_attempts")
    @classmethod
    def at_least_one_attempt(cls, v):
        if v < 1:
            raise ValueError("CHECKPOINT_MAX_ATTEMPTS must be at least 1")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.environment == "production" and not settings_obj.redis_url:
            raise ValueError("REDIS_URL is required in production for execution leases")
        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
validate_environment(settings)
