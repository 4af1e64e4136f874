"""
Application configuration.

Every field can be overridden from the environment or `.env`
(DB_HOST, JWT_SECRET, EUR_TO_INR_RATE, ...).
"""

from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine.url import URL


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # PostgreSQL
    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "school_ops"
    db_user: str = "postgres"
    db_password: str = "postgres"

    # LLM for analytics insights (any OpenAI-compatible endpoint)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str | None = None

    # Bearer tokens
    jwt_secret: str = "change-me-in-every-deployment-0000"
    jwt_algorithm: str = "HS256"

    # Money. This is the only place the EUR/INR rate is defined.
    eur_to_inr_rate: Decimal = Field(Decimal("104.5"), gt=0)  # 1 EUR = X INR
    max_paid_amount: Decimal = Decimal("100000")
    overdue_after_days: int = 30

    student_id_max_attempts: int = Field(5, ge=1)
    insights_cache_ttl_seconds: int = 3600

    # Shared counters for rate limiting
    redis_url: str = "redis://localhost:6379/0"
    # Only honour X-Forwarded-For when the API sits behind a trusted proxy
    trust_proxy_headers: bool = False

    log_level: str = "INFO"

    @property
    def database_url(self) -> URL:
        return URL.create(
            drivername="postgresql+asyncpg",
            username=self.db_user,
            password=self.db_password,
            host=self.db_host,
            port=self.db_port,
            database=self.db_name,
        )

    @property
    def sql_echo(self) -> bool:
        return self.log_level.upper() == "DEBUG"


settings = Settings()
