"""
Storefront Server Settings

Configuration management using pydantic settings.
Loads from environment variables with STOREFRONT_ prefix.
"""

import os
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import computed_field
from typing import List, Optional, Literal


class Settings(BaseSettings):
    """
    Server configuration settings.

    Environment variables:
    - STOREFRONT_STAGE: Deployment stage - 'dev', 'staging' or 'prod' (default: dev)
    - STOREFRONT_AWS_REGION: Region of the Cognito user pool (default: eu-west-3)
    - STOREFRONT_COGNITO_USER_POOL_ID: Cognito user pool that issues tokens
    - STOREFRONT_COGNITO_CLIENT_ID: App client ID expected as token audience
    - STOREFRONT_AUTH_STRATEGY: 'local' (verify in-process) or 'remote' (default: local)
    - STOREFRONT_AUTH_FUNCTION_URL: Authentication function URL for the remote strategy
    - STOREFRONT_JWKS_CACHE_TTL: Seconds a fetched signing key stays cached (default: 600)
    - STOREFRONT_JWKS_CACHE_MAX_ENTRIES: Max cached signing keys (default: 5)
    - STOREFRONT_RATE_LIMIT: Requests per window per client IP (default: 100)
    - STOREFRONT_RATE_LIMIT_WINDOW: Window length in seconds (default: 900)
    - STOREFRONT_LIMITS_ENABLED: Enable rate limiting (default: true)
    - STOREFRONT_CACHE_BACKEND: 'memory' or 'redis' (default: memory)
    - STOREFRONT_REDIS_URL: Redis URL for the shared cache backend
    - STOREFRONT_ALLOWED_ORIGINS_RAW: Comma-separated list of allowed CORS origins
    - STOREFRONT_ORDER_CREATED_TOPIC_ARN: SNS topic for order-created events (optional)
    - DATABASE_URL: PostgreSQL connection string
    """

    model_config = SettingsConfigDict(
        env_prefix="STOREFRONT_",
        env_file=".env",
        extra="ignore",
    )

    stage: Literal["dev", "staging", "prod"] = "dev"

    # Identity provider
    aws_region: str = "eu-west-3"
    cognito_user_pool_id: str = ""
    cognito_client_id: str = ""
    auth_strategy: Literal["local", "remote"] = "local"
    auth_function_url: str = ""
    auth_timeout_seconds: float = 5.0

    # Signing keys are refreshed at most every 10 minutes
    jwks_cache_ttl: int = 600
    jwks_cache_max_entries: int = 5

    # Rate limiting - requests per window per client IP
    rate_limit: int = 100
    rate_limit_window: int = 900
    limits_enabled: bool = True

    # Cache backend shared by the key-set cache and the rate limiter
    cache_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"

    # Database
    db_command_timeout: float = 20.0

    # Raw string fields for comma-separated values
    allowed_origins_raw: str = ""

    # Best-effort order events
    order_created_topic_arn: Optional[str] = None

    # Debug mode
    debug: bool = False

    @computed_field
    @property
    def allowed_origins(self) -> List[str]:
        """Parse comma-separated allowed origins into list."""
        if not self.allowed_origins_raw:
            return []
        return [v.strip() for v in self.allowed_origins_raw.split(",") if v.strip()]

    @property
    def is_production(self) -> bool:
        return self.stage == "prod"

    @property
    def cognito_issuer(self) -> str:
        """Issuer URL that tokens from the configured user pool carry."""
        return f"https://cognito-idp.{self.aws_region}.amazonaws.com/{self.cognito_user_pool_id}"

    @property
    def jwks_url(self) -> str:
        return f"{self.cognito_issuer}/.well-known/jwks.json"


# Database URL (read separately since it doesn't have the STOREFRONT_ prefix)
DATABASE_URL = os.environ.get("DATABASE_URL", "")

# Global settings instance
settings = Settings()
