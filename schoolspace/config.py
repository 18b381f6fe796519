"""
Application Configuration

Centralized configuration management using Pydantic settings.
Loads from environment variables with fallback to .env file.
"""
from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    get_settings() is cached, so tests that need different settings
    must call get_settings.cache_clear() after changing the environment.
    """

    # Database settings
    # One shared database for every school; each school gets its own schema.
    DATABASE_URL: str = "postgresql://localhost/schoolspace_dev"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40

    # SQLite only: directory holding one database file per school namespace.
    # None keeps namespaces in memory (tests, throwaway dev runs).
    SQLITE_NAMESPACE_DIR: Optional[str] = None

    # Credential settings
    SECRET_KEY: str = "dev-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Redis for rate limiting and the shared resolver cache
    REDIS_URL: str = "redis://localhost:6379/0"

    # Tenant resolution cache
    TENANT_CACHE_BACKEND: str = "memory"  # memory | redis
    TENANT_CACHE_TTL_SECONDS: int = 300

    # Query executor
    QUERY_RETRY_ATTEMPTS: int = 3

    # Run drift reconciliation over every school namespace at startup
    RECONCILE_ON_STARTUP: bool = False

    # Application settings
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Rate limiting (per school)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_PER_MINUTE: int = 120
    RATE_LIMIT_BURST: int = 20

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
