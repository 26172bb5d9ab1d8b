"""
Lodge Identity Core - Configuration Management

Centralized configuration for environment variables, CORS, and deployment settings.
This module ensures:
- No hardcoded secrets
- A missing JWT signing secret stops startup
- Environment-specific settings (dev/staging/prod)
"""

import os
from pathlib import Path
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

from identity.errors import ConfigurationError

logger = logging.getLogger(__name__)

STORAGE_BACKENDS = ("postgres", "file")


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

    # ==================== STORAGE ====================
    STORAGE_BACKEND: str = Field(
        default="postgres",
        description="Document store backend: postgres or file"
    )
    DATA_DIR: str = Field(
        default="",
        description="Directory for the file backend (default: backend/data/membership)"
    )
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (required for the postgres backend)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="lodge_identity")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")

    # ==================== AUTHENTICATION ====================
    JWT_SECRET_KEY: str = Field(
        default="",
        description="Secret key for JWT signing (required)"
    )
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(
        default=24 * 60,
        description="Access token expiry in minutes"
    )
    JWT_ALGORITHM: str = Field(
        default="HS256",
        description="JWT signing algorithm"
    )
    BCRYPT_ROUNDS: int = Field(
        default=12,
        description="bcrypt cost factor for password hashes"
    )

    # ==================== AUTHORIZATION ====================
    DISTRICT_ADMIN_SYSTEM_WIDE: bool = Field(
        default=False,
        description="Treat DISTRICT_ADMIN as system-wide instead of district-scoped"
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
        default="Lodge Identity Core API",
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
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def data_path(self) -> Path:
        if self.DATA_DIR:
            return Path(self.DATA_DIR)
        return Path(__file__).parent / "data" / "membership"

    @property
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list with environment-aware defaults.

        Production: only specified origins
        Development/Staging: localhost origins added
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
        ]

        all_origins = set(origins)
        if not self.is_production:
            all_origins.update(dev_origins)

        return sorted(all_origins)

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for deployment.
        Returns list of validation errors.
        """
        errors = []

        if self.STORAGE_BACKEND not in STORAGE_BACKENDS:
            errors.append(f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}")

        if self.STORAGE_BACKEND == "postgres" and not (self.DATABASE_URL or self.POSTGRES_HOST):
            errors.append("DATABASE_URL is required for the postgres backend")

        if not self.JWT_SECRET_KEY:
            errors.append("JWT_SECRET_KEY is required")
        elif len(self.JWT_SECRET_KEY) < 32:
            errors.append("JWT_SECRET_KEY should be at least 32 characters")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if self.STORAGE_BACKEND == "file":
                errors.append("The file storage backend is not supported in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"

        raise ConfigurationError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Storage backend: {settings.STORAGE_BACKEND}")

    # Validate in production
    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ConfigurationError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


def require_signing_secret(settings: Settings = None) -> str:
    """
    Return the JWT signing secret or fail.

    Called at application startup and by the batch CLI; running without a
    secret is never allowed.
    """
    settings = settings or get_settings()
    if not settings.JWT_SECRET_KEY:
        logger.critical("JWT_SECRET_KEY is not set; refusing to start")
        raise ConfigurationError("JWT_SECRET_KEY is required")
    return settings.JWT_SECRET_KEY


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
        "allow_methods": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Requested-With",
            "X-Request-ID",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,  # Cache preflight for 10 minutes
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate all required environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "storage_backend": settings.STORAGE_BACKEND,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    required_vars = [("JWT_SECRET_KEY", settings.JWT_SECRET_KEY)]
    if settings.STORAGE_BACKEND == "postgres":
        required_vars.append(("DATABASE_URL", settings.DATABASE_URL or settings.POSTGRES_HOST))

    for name, value in required_vars:
        if not value:
            status["errors"].append(f"{name} is not set")
            status["valid"] = False
        else:
            status["variables"][name] = "set"

    if not settings.SENTRY_DSN:
        status["warnings"].append("Error tracking disabled")
        status["variables"]["SENTRY_DSN"] = "not set"
    else:
        status["variables"]["SENTRY_DSN"] = "set"

    if settings.DISTRICT_ADMIN_SYSTEM_WIDE:
        status["warnings"].append("DISTRICT_ADMIN is configured as system-wide")

    for error in settings.validate_production_config():
        if error not in status["errors"]:
            status["errors"].append(error)
        status["valid"] = False

    return status


# Export settings instance for convenience
settings = get_settings()
