"""Application configuration"""

import enum
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, enum.Enum):
    """Deployment environments recognised by the service."""

    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # API
    API_V1_PREFIX: str = "/api"
    PROJECT_NAME: str = "Billing & Entitlement Core"
    VERSION: str = "0.1.0"
    ENVIRONMENT: Environment = Environment.DEVELOPMENT
    LOG_LEVEL: Optional[str] = None

    # Security
    # WHY: Tokens are issued by the directory; we only verify them
    JWT_SECRET: str
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: Optional[str] = None
    JWT_EXPIRATION_MINUTES: int = 60
    ADMIN_ROLE: str = "administrator"

    # Database
    DATABASE_URL: str

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_VERSION: str = "2023-10-16"
    GATEWAY_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_USER_AGENT_MARKER: str = "Stripe"

    # Directory (identity provider)
    DIRECTORY_BASE_URL: Optional[str] = None
    DIRECTORY_API_TOKEN: Optional[str] = None
    DIRECTORY_TIMEOUT_SECONDS: float = 10.0

    # Redis
    # WHY: Used for single-instance locks on background jobs
    REDIS_URL: str = "redis://localhost:6379/0"
    JOB_LOCK_TTL_SECONDS: int = 600

    # Webhooks
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 1024 * 1024
    WEBHOOK_MAX_EVENT_AGE_SECONDS: int = 300
    WEBHOOK_RECORD_RETENTION_DAYS: int = 30

    # Audit
    AUDIT_RETENTION_DAYS: int = 365
    AUDIT_QUERY_DEFAULT_LIMIT: int = 50
    AUDIT_QUERY_MAX_LIMIT: int = 1000

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    AUDIT_SWEEP_INTERVAL_HOURS: int = 6
    WEBHOOK_SWEEP_INTERVAL_HOURS: int = 1
    TOKEN_SWEEP_INTERVAL_HOURS: int = 24

    # Subscriptions
    DEFAULT_ADMIN_ASSIGN_DAYS: int = 365
    ORGANIZATION_PERIOD_DAYS: int = 365

    # CORS
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == Environment.DEVELOPMENT

    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == Environment.TEST

    @property
    def sql_echo(self) -> bool:
        """
        Whether the engine logs every statement.

        WHY: Verbose store logging only makes sense on a developer machine.
        """
        return self.is_development

    @property
    def scheduler_enabled(self) -> bool:
        return self.SCHEDULER_ENABLED and not self.is_test

    @property
    def log_level(self) -> str:
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.upper()
        return "DEBUG" if self.is_development else "INFO"

    @property
    def async_database_url(self) -> str:
        """Get async database URL"""
        return self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")


settings = Settings()
