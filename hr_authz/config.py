"""
Environment configuration for hr-authz.

Authorization resolution and policy enforcement service.
Other services call it in-process (AuthorizationEngine) or via REST.
"""

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings

logger = logging.getLogger("hr-authz")


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # ==========================================================================
    # ENVIRONMENT DETECTION
    # ==========================================================================
    ENVIRONMENT: str = "local"  # 'local', 'development', 'test', 'production'
    HOST: str = "0.0.0.0"
    PORT: int = 8010
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL

    # ==========================================================================
    # SERVICE IDENTIFICATION
    # ==========================================================================
    SERVICE_NAME: str = "hr-authz"
    INTER_SERVICE_SECRET: str | None = None  # Shared secret for inter-service auth

    # ==========================================================================
    # RULE STORE
    # 'memory' for local development and tests, 'supabase' for deployments
    # ==========================================================================
    RULE_STORE_BACKEND: str = "memory"

    # Production keys (used when ENVIRONMENT == 'production')
    PROD_SUPABASE_URL: str | None = None
    PROD_SUPABASE_SERVICE_ROLE_KEY: str | None = None

    # Development keys (used when ENVIRONMENT != 'production')
    DEV_SUPABASE_URL: str | None = None
    DEV_SUPABASE_SERVICE_ROLE_KEY: str | None = None

    SUPABASE_TIMEOUT_SECONDS: int = 30

    # ==========================================================================
    # SNAPSHOT / CHANGE NOTIFICATIONS
    # ==========================================================================
    SNAPSHOT_WATCH_ENABLED: bool = True
    SNAPSHOT_RELOAD_DEBOUNCE_MS: int = 250

    # ==========================================================================
    # POLICIES & GUARDS
    # ==========================================================================
    CONFLICT_DETECTION_ENABLED: bool = True
    # Per-guard override of the fallback decision, e.g. {"can_clock_in": false}
    GUARD_FALLBACKS: dict[str, bool] = {}

    # ==========================================================================
    # CORS CONFIGURATION
    # ==========================================================================
    CORS_ORIGINS: str = ""  # Comma-separated list of allowed origins

    class Config:
        env_file = ".env"
        extra = "ignore"

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "production"

    @property
    def is_local(self) -> bool:
        """Check if running in local environment."""
        return self.ENVIRONMENT == "local"

    @property
    def supabase_url(self) -> str | None:
        """Get the appropriate Supabase URL based on environment."""
        if self.is_production:
            return self.PROD_SUPABASE_URL
        return self.DEV_SUPABASE_URL

    @property
    def supabase_key(self) -> str | None:
        """Get the appropriate Supabase service key based on environment."""
        if self.is_production:
            return self.PROD_SUPABASE_SERVICE_ROLE_KEY
        return self.DEV_SUPABASE_SERVICE_ROLE_KEY

    @property
    def allowed_origins(self) -> list[str]:
        """Parse CORS origins; local runs get the dev UI origins."""
        origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        if self.is_local:
            origins.extend(["http://localhost:3000", "http://localhost:5173"])
        return origins

    def log_config(self) -> None:
        """Log the effective configuration (no secrets)."""
        logger.info(f"[CONFIG] Environment: {self.ENVIRONMENT}")
        logger.info(f"[CONFIG] Rule store backend: {self.RULE_STORE_BACKEND}")

        if self.RULE_STORE_BACKEND == "supabase":
            configured = bool(self.supabase_url and self.supabase_key)
            logger.info(f"[CONFIG] Supabase: {'configured' if configured else 'NOT configured'}")

        logger.info(f"[CONFIG] Snapshot watch: {'enabled' if self.SNAPSHOT_WATCH_ENABLED else 'disabled'}")
        logger.info(f"[CONFIG] Conflict detection: {'enabled' if self.CONFLICT_DETECTION_ENABLED else 'disabled'}")
        if self.GUARD_FALLBACKS:
            logger.info(f"[CONFIG] Guard fallback overrides: {sorted(self.GUARD_FALLBACKS)}")

        if not self.INTER_SERVICE_SECRET:
            logger.warning("[CONFIG] INTER_SERVICE_SECRET not set - service auth disabled")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ==========================================================================
# LOGGING HELPERS
# ==========================================================================

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Configure root logger
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format=LOG_FORMAT,
)

# Quiet down noisy third-party loggers
for _logger_name in [
    "httpx", "httpcore", "httpcore.http2", "httpcore.connection",
    "hpack", "hpack.hpack", "hpack.table",
    "realtime", "websockets",
]:
    logging.getLogger(_logger_name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a configured logger instance."""
    return logging.getLogger(name)
