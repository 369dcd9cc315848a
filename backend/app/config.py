"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List
from urllib.parse import quote_plus

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "ScreenWatch API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database (PostgreSQL)
    DATABASE_URL: str = ""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "screenwatch_db"
    POSTGRES_USER: str = "screenwatch"
    POSTGRES_PASSWORD: str = "screenwatch"
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20

    # Token signing
    SECRET_KEY: str = "dev-secret-key-change-in-production-use-openssl-rand-hex-32"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 24 * 60
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Session lifecycle
    TOKEN_ROTATION_GRACE_MINUTES: int = 15
    TOKEN_ROTATION_INTERVAL_HOURS: int = 24
    TOKEN_ROTATION_HINT_MINUTES: int = 60
    SESSION_STRICT_ACCESS_CHECK: bool = False

    # Auth cookies
    ACCESS_COOKIE_NAME: str = "accessToken"
    REFRESH_COOKIE_NAME: str = "refreshToken"
    COOKIE_SAMESITE: str = "lax"
    COOKIE_PATH: str = "/"

    # Login lockout
    MAX_FAILED_LOGIN_ATTEMPTS: int = 5
    LOCKOUT_DURATION_MINUTES: int = 15

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:5173"]

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, value: Any) -> Any:
        """Origins from env may be a JSON array or a comma-separated list"""
        if not isinstance(value, str):
            return value
        raw = value.strip()
        if raw.startswith("["):
            items = json.loads(raw)
        else:
            items = raw.split(",")
        return [str(item).strip() for item in items if str(item).strip()]

    @field_validator("COOKIE_SAMESITE")
    @classmethod
    def _normalize_samesite(cls, value: str) -> str:
        v = (value or "").strip().lower()
        if v not in {"lax", "strict", "none"}:
            return "lax"
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def get_log_file(self) -> str:
        """Resolve log file path; empty means log to stderr only."""
        p = self.LOG_FILE
        if not p:
            return ""
        if p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "app.log")
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Priority:
          1) Explicit DATABASE_URL
          2) Construct from POSTGRES_* parts with safe URL encoding
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = quote_plus(self.POSTGRES_USER)
        password = quote_plus(self.POSTGRES_PASSWORD)
        return (
            f"postgresql://{user}:{password}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if self.ALGORITHM not in {"HS256", "HS384", "HS512"}:
            raise ValueError(f"Unsupported token signing algorithm: {self.ALGORITHM}")

        if not self.is_production:
            return

        insecure_secret_markers = {
            "",
            "dev-secret-key-change-in-production-use-openssl-rand-hex-32",
            "change-me",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
