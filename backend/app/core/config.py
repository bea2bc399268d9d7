"""
Application settings loaded from environment variables.

A .env file next to the backend directory is loaded first, so local
development does not need exported variables.
"""

import os
from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from app.core.exceptions import ConfigurationError

# Load environment variables from .env file
env_path = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), ".env")
load_dotenv(env_path)

DEFAULT_PUBLIC_PATHS = [
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/api/health",
    "/api/status",
    "/api/auth/login",
    "/api/auth/signup",
    "/api/auth/validate",
    "/api/auth/ts",
    "/api/public",
    "/auth/google",
    "/auth/github",
]

# Browser redirects cannot attach a ts header
DEFAULT_FRESHNESS_EXEMPT_PATHS = [
    "/health",
    "/api/auth/ts",
    "/auth/google",
    "/auth/github",
]

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
]

def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]

def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

def _default_database_url() -> str:
    user = os.getenv("POSTGRES_USER", "postgres")
    password = os.getenv("POSTGRES_PASSWORD", "postgres")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    database = os.getenv("POSTGRES_DB", "pixalpedia_dev")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{database}"

class Settings(BaseModel):
    """Runtime configuration for the API"""
    environment: str = "development"
    user_token_secret: str = ""
    auth_token_scheme: str = "embedded"
    database_url: str = Field(default_factory=_default_database_url)
    db_echo: bool = False

    login_ttl_hours: float = 24
    freshness_max_age_seconds: float = 20

    rate_limit_requests: int = 50
    rate_limit_window_seconds: float = 15
    rate_limit_block_seconds: float = 300
    rate_limit_max_multiplier: int = 12
    rate_limit_offense_reset_seconds: float = 86400
    rate_limit_backend: str = "memory"

    public_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_PUBLIC_PATHS))
    freshness_exempt_paths: List[str] = Field(default_factory=lambda: list(DEFAULT_FRESHNESS_EXEMPT_PATHS))
    allow_public_marker: bool = True
    trust_forwarded_for: bool = False
    cors_allowed_origins: List[str] = Field(default_factory=list)

    storage_public_url: str = ""
    image_proxy_url: str = ""

    frontend_url: str = "http://localhost:3000"
    oauth_redirect_base: str = "http://localhost:8000"
    google_client_id: str = ""
    google_client_secret: str = ""
    github_client_id: str = ""
    github_client_secret: str = ""

    max_failed_logins: int = 5
    login_lockout_minutes: float = 30

    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment"""
        return cls(
            environment=os.getenv("ENVIRONMENT", "development"),
            user_token_secret=os.getenv("USER_TOKEN_SECRET", ""),
            auth_token_scheme=os.getenv("AUTH_TOKEN_SCHEME", "embedded"),
            database_url=os.getenv("DATABASE_URL") or _default_database_url(),
            db_echo=_env_bool("DB_ECHO", False),
            login_ttl_hours=float(os.getenv("LOGIN_TTL_HOURS", "24")),
            freshness_max_age_seconds=float(os.getenv("FRESHNESS_MAX_AGE_SECONDS", "20")),
            rate_limit_requests=int(os.getenv("RATE_LIMIT_REQUESTS", "50")),
            rate_limit_window_seconds=float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "15")),
            rate_limit_block_seconds=float(os.getenv("RATE_LIMIT_BLOCK_SECONDS", "300")),
            rate_limit_max_multiplier=int(os.getenv("RATE_LIMIT_MAX_MULTIPLIER", "12")),
            rate_limit_offense_reset_seconds=float(os.getenv("RATE_LIMIT_OFFENSE_RESET_SECONDS", "86400")),
            rate_limit_backend=os.getenv("RATE_LIMIT_BACKEND", "memory"),
            public_paths=_env_list("PUBLIC_PATHS", DEFAULT_PUBLIC_PATHS),
            freshness_exempt_paths=_env_list("FRESHNESS_EXEMPT_PATHS", DEFAULT_FRESHNESS_EXEMPT_PATHS),
            allow_public_marker=_env_bool("ALLOW_PUBLIC_MARKER", True),
            trust_forwarded_for=_env_bool("TRUST_FORWARDED_FOR", False),
            cors_allowed_origins=_env_list("CORS_ALLOWED_ORIGINS", []),
            storage_public_url=os.getenv("STORAGE_PUBLIC_URL", ""),
            image_proxy_url=os.getenv("IMAGE_PROXY_URL", ""),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            oauth_redirect_base=os.getenv("OAUTH_REDIRECT_BASE", "http://localhost:8000"),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID", ""),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET", ""),
            github_client_id=os.getenv("GITHUB_CLIENT_ID", ""),
            github_client_secret=os.getenv("GITHUB_CLIENT_SECRET", ""),
            max_failed_logins=int(os.getenv("MAX_FAILED_LOGINS", "5")),
            login_lockout_minutes=float(os.getenv("LOGIN_LOCKOUT_MINUTES", "30")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )

    def allowed_origins(self) -> List[str]:
        """CORS origins, falling back to localhost defaults in development"""
        if not self.cors_allowed_origins and self.environment == "development":
            return list(DEFAULT_CORS_ORIGINS)
        return list(self.cors_allowed_origins)

    def require_token_secret(self) -> str:
        """Return the shared token secret or fail if it was never provisioned"""
        if not self.user_token_secret:
            raise ConfigurationError("USER_TOKEN_SECRET is not set in environment variables")
        return self.user_token_secret

@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings instance"""
    return Settings.from_env()
