"""Shared configuration."""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Base settings for all services."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Service info
    service_name: str = "commerce-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "commerce"
    database_url_override: Optional[str] = None

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Redis (basket cache and idempotency keys)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0

    # Auth
    jwt_secret: str = "dev-only-change-me"
    jwt_algorithm: str = "HS256"
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None

    # PayOS
    payos_client_id: str = ""
    payos_api_key: str = ""
    payos_checksum_key: str = "dev-checksum-key"
    payos_base_url: str = "https://api-merchant.payos.vn"
    payos_timeout_seconds: float = 10.0
    payos_web_return_url: str = "http://localhost:3000/payment-success"
    payos_web_cancel_url: str = "http://localhost:3000/payment-cancel"
    payos_mobile_return_url: str = "tripcart://payment-success"
    payos_mobile_cancel_url: str = "tripcart://payment-cancel"

    # Business rules
    payos_min_amount: int = Field(default=2000, gt=0)
    order_code_max: int = Field(default=999999, gt=0)
    order_code_attempts: int = Field(default=3, ge=1)
    basket_ttl_seconds: int = 7 * 24 * 60 * 60
    idempotency_ttl_seconds: int = 24 * 60 * 60

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    def payos_urls(self, platform: str) -> tuple[str, str]:
        """Return the (return_url, cancel_url) pair for a client platform."""
        if platform == "mobile":
            return self.payos_mobile_return_url, self.payos_mobile_cancel_url
        return self.payos_web_return_url, self.payos_web_cancel_url


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings used by request dependencies."""
    return Settings()
