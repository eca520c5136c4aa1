# settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()

# Fixed by design, not read from the environment
MAX_OTP_FAILED_ATTEMPTS = 3
ACCESS_TOKEN_EXPIRE_MINUTES = 15
OTP_CODE_LENGTH = 6

_DEV_ACCESS_SECRET = "dev-access-secret-change-in-production-min-32-chars"
_DEV_REFRESH_SECRET = "dev-refresh-secret-change-in-production-min-32-chars"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    environment: str = "development"

    # Database
    database_url: str = "sqlite+aiosqlite:///./assets_auth.db"
    database_echo: bool = False

    # JWT
    access_token_secret: str = _DEV_ACCESS_SECRET
    refresh_token_secret: str = _DEV_REFRESH_SECRET
    jwt_algorithm: str = "HS256"

    # OTP
    otp_expiry_minutes: int = 10
    otp_max_requests_production: int = 5
    otp_max_requests_development: int = 20
    rate_limit_window_minutes: int = 15

    # Refresh tokens
    refresh_token_days: int = 7
    revoked_token_retention_days: int = 30
    refresh_cookie_name: str = "refreshToken"
    refresh_cookie_path: str = "/auth"

    # HTTP
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])

    # Email
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    email_from: str | None = None

    # Logging
    log_level: str = "INFO"
    log_json: bool | None = None

    def __post_init__(self) -> None:
        if self.is_production:
            if self.access_token_secret == _DEV_ACCESS_SECRET:
                raise RuntimeError("Missing JWT_SECRET environment variable")
            if self.refresh_token_secret == _DEV_REFRESH_SECRET:
                raise RuntimeError("Missing JWT_REFRESH_SECRET environment variable")
        if self.access_token_secret == self.refresh_token_secret:
            raise RuntimeError("JWT_SECRET and JWT_REFRESH_SECRET must differ")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def otp_max_requests(self) -> int:
        # Dev-friendly ceiling so manual testing doesn't lock people out
        if self.is_production:
            return self.otp_max_requests_production
        return self.otp_max_requests_development

    @property
    def debug_echo_otp(self) -> bool:
        return not self.is_production

    @property
    def secure_cookies(self) -> bool:
        return self.is_production

    @property
    def json_logs(self) -> bool:
        if self.log_json is None:
            return self.is_production
        return self.log_json

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ORIGINS", "").strip()
        json_raw = os.getenv("LOG_JSON")
        return cls(
            environment=os.getenv("APP_ENV", "development").strip() or "development",
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            database_echo=_env_bool("DATABASE_ECHO", False),
            access_token_secret=os.getenv("JWT_SECRET", "").strip() or _DEV_ACCESS_SECRET,
            refresh_token_secret=os.getenv("JWT_REFRESH_SECRET", "").strip() or _DEV_REFRESH_SECRET,
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            otp_expiry_minutes=_env_int("OTP_EXPIRY_MINUTES", 10),
            otp_max_requests_production=_env_int("OTP_MAX_REQUESTS_PRODUCTION", 5),
            otp_max_requests_development=_env_int("OTP_MAX_REQUESTS_DEVELOPMENT", 20),
            rate_limit_window_minutes=_env_int("OTP_RATE_LIMIT_WINDOW_MINUTES", 15),
            refresh_token_days=_env_int("REFRESH_TOKEN_DAYS", 7),
            revoked_token_retention_days=_env_int("REFRESH_TOKEN_RETENTION_DAYS", 30),
            refresh_cookie_path=os.getenv("AUTH_COOKIE_PATH", "/auth"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()]
            or ["http://localhost:5173"],
            smtp_host=os.getenv("SMTP_HOST") or None,
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_user=os.getenv("SMTP_USER") or None,
            smtp_password=os.getenv("SMTP_PASSWORD") or None,
            smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
            email_from=os.getenv("EMAIL_FROM") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_json=None if json_raw is None else _env_bool("LOG_JSON", True),
        )
