"""
Reconciliation Engine - Configuration Management

Centralized configuration for environment variables, CORS, matching
defaults and deployment settings.
This module ensures:
- No hardcoded secrets
- Environment-specific settings (dev/staging/prod)
- Matching weights and thresholds are configuration, not code
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== LEDGER ====================
    LEDGER_BACKEND: str = Field(
        default="sql",
        description="Ledger provider: 'sql' (PostgreSQL) or 'memory' (embedded, non-persistent)"
    )
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (required for the sql backend)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="reconciliation")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Primary API key for callers of mutating endpoints"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated additional keys (for key rotation)"
    )

    # ==================== MATCHING ====================
    RECON_WEIGHT_AMOUNT: float = Field(default=0.5, description="Weight of the amount signal")
    RECON_WEIGHT_COUNTERPARTY: float = Field(default=0.3, description="Weight of the counterparty signal")
    RECON_WEIGHT_DATE: float = Field(default=0.2, description="Weight of the date proximity signal")
    RECON_AMOUNT_TOLERANCE: float = Field(
        default=0.15,
        description="Relative amount difference at which the amount signal reaches 0"
    )
    RECON_DATE_WINDOW_DAYS: int = Field(
        default=90,
        description="Days between item date and due date at which the date signal reaches 0"
    )
    RECON_AUTO_ACCEPT_THRESHOLD: float = Field(
        default=0.92,
        description="Minimum score for auto-reconciliation"
    )
    RECON_AMBIGUITY_EPSILON: float = Field(
        default=0.02,
        description="Auto-reconcile skips items whose top two scores are closer than this"
    )
    RECON_RESTRICT_TO_COUNTERPARTY: bool = Field(
        default=True,
        description="Only consider documents of the item's counterparty when it has one"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Payment Allocation & Reconciliation API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def uses_memory_ledger(self) -> bool:
        return self.LEDGER_BACKEND.lower() == "memory"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list.

        Development also allows the usual localhost front-end ports.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:5173",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    @property
    def internal_api_keys(self) -> List[str]:
        keys = []
        if self.INTERNAL_API_KEY.strip():
            keys.append(self.INTERNAL_API_KEY.strip())
        for key in self.INTERNAL_API_KEYS.split(","):
            key = key.strip()
            if key and key not in keys:
                keys.append(key)
        return keys

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    def matching_config_errors(self) -> List[str]:
        """Check the RECON_* values the same way the matcher will."""
        from reconciliation.matching_config import MatchingConfigRegistry

        try:
            MatchingConfigRegistry.from_settings(self)
        except ValueError as e:
            return [str(e)]
        return []

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if self.LEDGER_BACKEND.lower() not in ("sql", "memory"):
            errors.append("LEDGER_BACKEND must be 'sql' or 'memory'")

        if not self.internal_api_keys:
            errors.append("INTERNAL_API_KEY is required")
        elif any(len(key) < 32 for key in self.internal_api_keys):
            errors.append("Internal API keys should be at least 32 characters")

        errors.extend(self.matching_config_errors())

        if self.is_production:
            if self.uses_memory_ledger:
                errors.append("LEDGER_BACKEND cannot be 'memory' in production")

            if not self.DATABASE_URL and not self.POSTGRES_HOST:
                errors.append("DATABASE_URL is required")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            return (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Ledger backend: {settings.LEDGER_BACKEND}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "Origin",
            "X-Requested-With",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-Service-Name",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,  # Cache preflight for 10 minutes
    }
