import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/facebook_ads"
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_connect_timeout: float = 30.0  # seconds; fail fast when the DB is unreachable

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql://, but asyncpg needs postgresql+asyncpg://."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Required in production; in dev, empty = auth disabled
    encryption_key: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    cron_secret: str = ""

    # Facebook app + Graph API
    facebook_app_id: str = ""
    facebook_app_secret: str = ""
    facebook_api_version: str = "v23.0"
    facebook_graph_url: str = "https://graph.facebook.com"
    facebook_webhook_verify_token: str = ""

    # Graph API resilience
    graph_request_timeout: float = 30.0
    graph_max_retries: int = 3
    graph_retry_base_delay: float = 1.0
    graph_retry_max_delay: float = 30.0

    # Used for ROAS when a shop has no order history
    default_average_order_value: float = 50.0

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.facebook_app_secret:
                raise ValueError("FACEBOOK_APP_SECRET must be set in production.")
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        if not 0 <= self.graph_max_retries <= 3:
            raise ValueError("GRAPH_MAX_RETRIES must be between 0 and 3.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def graph_base_url(self) -> str:
        return f"{self.facebook_graph_url.rstrip('/')}/{self.facebook_api_version}"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
