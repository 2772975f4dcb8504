"""
Church Finance Core - Configuration Management

Centralized configuration for environment variables, CORS, and reconciliation settings.
This module ensures:
- No hardcoded secrets
- Environment-specific settings (dev/staging/prod)
- Reconciliation behaviour is configured, not coded
"""

from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_URL = "sqlite+aiosqlite:///./church_finance.db"


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="SQLAlchemy async URL (postgresql+asyncpg://... in production)"
    )
    DATABASE_SSL: bool = Field(
        default=False,
        description="Require SSL for PostgreSQL connections"
    )
    DATABASE_ECHO: bool = Field(default=False)

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
        default="Church Finance Core API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
    )

    # ==================== RECONCILIATION ====================
    RECON_SUGGESTION_LIMIT: int = Field(
        default=3,
        ge=0,
        description="Maximum suggested rules attached to a review item"
    )
    RECON_SUGGESTION_MIN_OVERLAP: int = Field(
        default=2,
        ge=1,
        description="Shortest common substring that counts as a suggestion"
    )
    RECON_UNCATEGORIZED_INCOME_CODE: int = Field(
        default=19,
        description="Income code assigned to deposits no rule matched"
    )
    RECON_UNCATEGORIZED_INCOME_NAME: str = Field(default="기타헌금")
    RECON_DEFAULT_INCOME_STRATEGY: str = Field(
        default="uncategorized",
        description="uncategorized | amount_heuristic"
    )
    RECON_INTERNAL_TRANSFER_PATTERNS: str = Field(
        default="",
        description="Comma-separated memo patterns of transfers between own accounts"
    )
    RECON_CASH_DEPOSIT_PATTERNS: str = Field(
        default="헌금함,현금입금",
        description="Deposits already recorded through the cash offering sync"
    )
    RECON_CARD_SETTLEMENT_PATTERNS: str = Field(
        default="nh카드,신용카드,체크카드,카드결제,카드대금",
        description="Withdrawals already recorded through the card ledger"
    )
    RECON_LEARNED_RULE_PRIORITY: int = Field(
        default=1000,
        description="Priority given to rules learned from manual classification"
    )
    RECON_CLAIM_STALE_SECONDS: int = Field(
        default=300,
        description="Age after which a committing claim is considered abandoned"
    )

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list with environment-aware defaults.

        Production: Only specified origins
        Development: Include localhost origins
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = _split_csv(self.CORS_ORIGINS)
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    @property
    def internal_transfer_patterns(self) -> List[str]:
        return _split_csv(self.RECON_INTERNAL_TRANSFER_PATTERNS)

    @property
    def cash_deposit_patterns(self) -> List[str]:
        return _split_csv(self.RECON_CASH_DEPOSIT_PATTERNS)

    @property
    def card_settlement_patterns(self) -> List[str]:
        return _split_csv(self.RECON_CARD_SETTLEMENT_PATTERNS)

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if self.RECON_DEFAULT_INCOME_STRATEGY not in ("uncategorized", "amount_heuristic"):
            errors.append(
                f"RECON_DEFAULT_INCOME_STRATEGY must be 'uncategorized' or 'amount_heuristic', "
                f"got '{self.RECON_DEFAULT_INCOME_STRATEGY}'"
            )

        if self.is_production:
            if not self.DATABASE_URL:
                errors.append("DATABASE_URL is required")
            elif self.DATABASE_URL.startswith("sqlite"):
                errors.append("DATABASE_URL cannot use SQLite in production")

            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        if self.is_production:
            raise ValueError("No database configuration found. Set DATABASE_URL.")

        return DEFAULT_SQLITE_URL


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

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
        ],
        "expose_headers": ["X-Request-ID", "X-Process-Time"],
        "max_age": 600,
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate configuration at startup.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    if settings.DATABASE_URL:
        status["variables"]["DATABASE_URL"] = "✓ Set"
    else:
        status["warnings"].append(f"DATABASE_URL not set, using {DEFAULT_SQLITE_URL}")
        status["variables"]["DATABASE_URL"] = "⚠ Not set"

    if settings.SENTRY_DSN:
        status["variables"]["SENTRY_DSN"] = "✓ Set"
    else:
        status["warnings"].append("Error tracking disabled")
        status["variables"]["SENTRY_DSN"] = "⚠ Not set"

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status
