from __future__ import annotations

import os
from typing import List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict

ENVIRONMENTS = ("development", "production")
LOG_LEVELS = ("debug", "info", "warning", "error")


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str
    environment: str = "development"
    log_level: str = "info"
    version: str = "1.0"
    cors_origins: List[str] = ["http://localhost"]

    db_pool_min_size: int = 1
    db_pool_max_size: int = 20
    db_pool_timeout_seconds: float = 5.0
    db_statement_timeout_ms: int = 5000

    rate_limit_enabled: bool = True
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 120

    mailer_host: str = ""
    mailer_port: int = 587
    mailer_username: str = ""
    mailer_password: str = ""
    mailer_sender_name: str = ""
    mailer_sender_email: str = ""
    mailer_max_attempts: int = 3

    @property
    def mailer_sender(self) -> str:
        return f"{self.mailer_sender_name} <{self.mailer_sender_email}>"


def parse_cors_origins(value: Optional[str]) -> List[str]:
    if value is None or not value.strip():
        return ["http://localhost"]

    origins = [origin.strip() for origin in value.split(",") if origin.strip()]
    if not origins:
        return ["http://localhost"]

    # Keep order while removing accidental duplicates from CSV input.
    return list(dict.fromkeys(origins))


def normalize_database_url(value: str) -> str:
    if value.startswith("postgres://"):
        return "postgresql://" + value[len("postgres://"):]
    return value


def _str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return (env.get(name) or default).strip()


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = _str(env, name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = _str(env, name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number") from None


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _str(env, name).lower()
    if not raw:
        return default
    if raw in ("1", "true", "yes", "on"):
        return True
    if raw in ("0", "false", "no", "off"):
        return False
    raise RuntimeError(f"{name} must be a boolean")


def _choice(env: Mapping[str, str], name: str, choices: Sequence[str], default: str) -> str:
    raw = _str(env, name, default).lower()
    if raw not in choices:
        raise RuntimeError(f"{name} must be one of {', '.join(choices)}")
    return raw


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ

    database_url = _str(env, "DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL env is required")

    settings = Settings(
        database_url=normalize_database_url(database_url),
        environment=_choice(env, "ENVIRONMENT", ENVIRONMENTS, "development"),
        log_level=_choice(env, "LOG_LEVEL", LOG_LEVELS, "info"),
        version=_str(env, "VERSION", "1.0"),
        cors_origins=parse_cors_origins(env.get("CORS_ORIGINS")),
        db_pool_min_size=_int(env, "DB_POOL_MIN_SIZE", 1),
        db_pool_max_size=_int(env, "DB_POOL_MAX_SIZE", 20),
        db_pool_timeout_seconds=_float(env, "DB_POOL_TIMEOUT_SECONDS", 5.0),
        db_statement_timeout_ms=_int(env, "DB_STATEMENT_TIMEOUT_MS", 5000),
        rate_limit_enabled=_bool(env, "RATE_LIMIT_ENABLED", True),
        rate_limit_window_seconds=_int(env, "RATE_LIMIT_WINDOW_SECONDS", 60),
        rate_limit_max_requests=_int(env, "RATE_LIMIT_MAX_REQUESTS", 120),
        mailer_host=_str(env, "MAILER_HOST"),
        mailer_port=_int(env, "MAILER_PORT", 587),
        mailer_username=_str(env, "MAILER_USERNAME"),
        mailer_password=_str(env, "MAILER_PASSWORD"),
        mailer_sender_name=_str(env, "MAILER_SENDER_NAME"),
        mailer_sender_email=_str(env, "MAILER_SENDER_EMAIL"),
        mailer_max_attempts=_int(env, "MAILER_MAX_ATTEMPTS", 3),
    )

    if settings.db_pool_min_size < 1 or settings.db_pool_max_size < settings.db_pool_min_size:
        raise RuntimeError("DB_POOL_MAX_SIZE must be >= DB_POOL_MIN_SIZE >= 1")
    if settings.mailer_max_attempts < 1:
        raise RuntimeError("MAILER_MAX_ATTEMPTS must be at least 1")
    return settings
