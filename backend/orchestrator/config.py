"""Application configuration management"""

import json
import logging
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

logger = logging.getLogger(__name__)

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Ownprem Orchestrator"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3001
    WORKERS: int = 4

    # Database
    DATABASE_URL: str = ""
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # Security
    SECRET_KEY: str = ""
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    BCRYPT_ROUNDS: int = 12

    # Token/session security
    MAX_SESSION_FAMILIES: int = 5
    SESSION_CLEANUP_INTERVAL_SECONDS: int = 3600

    # Two-factor authentication
    TOTP_ISSUER: str = "Ownprem"
    BACKUP_CODE_COUNT: int = 10

    # Rate Limiting
    LOGIN_RATE_LIMIT_PER_MINUTE: int = 10
    LOGIN_RATE_LIMIT_PER_HOUR: int = 50
    REFRESH_RATE_LIMIT_PER_MINUTE: int = 60

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:5173"]

    # First-run account (development only)
    DEFAULT_ADMIN_USERNAME: str = "admin"
    DEFAULT_ADMIN_PASSWORD: str = "admin"

    # Database initialization discipline
    DB_INIT_MODE: str = "create_all"  # migrate | create_all | off

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated origins from env.

        Examples:
            CORS_ORIGINS=["http://localhost:5173","http://example.com"]
            CORS_ORIGINS=http://localhost:5173,http://example.com
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(origin).strip() for origin in parsed if str(origin).strip()]

        return [origin.strip() for origin in raw.split(",") if origin.strip()]

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "orchestrator.log")
        return p

    def get_database_url(self) -> str:
        """Resolve database URL, falling back to a local SQLite file."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"sqlite:///{_BASE_DIR.parent / 'data' / 'ownprem.sqlite'}"

    def get_jwt_secret(self) -> str:
        """
        Signing secret for access and refresh tokens.

        Development without SECRET_KEY gets an ephemeral random key, so
        sessions do not survive a restart. Everywhere else the key is
        mandatory.

        Raises:
            RuntimeError: If SECRET_KEY is unset outside development.
        """
        if self.SECRET_KEY:
            return self.SECRET_KEY

        if not self.is_development:
            raise RuntimeError(
                "SECRET_KEY environment variable is required outside development. "
                "Generate one with: openssl rand -hex 32"
            )

        self.SECRET_KEY = secrets.token_urlsafe(32)
        logger.warning("SECRET_KEY not set; using an ephemeral development key (sessions will not persist)")
        return self.SECRET_KEY

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if not self.is_production:
            return

        insecure_secret_markers = {
            "",
            "change-me",
            "dev-secret",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if self.BCRYPT_ROUNDS < 10:
            raise ValueError("BCRYPT_ROUNDS must be at least 10 in production.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
