"""Runtime settings loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _env_bool(name: str, default: bool) -> bool:
    value = _env_str(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    database_path: Path
    database_busy_timeout_seconds: float
    log_level: str
    admin_token: Optional[str]
    admin_user_id: int
    allocation_max_claim_attempts: int
    audit_log_default_limit: int
    audit_log_max_limit: int
    smtp_host: Optional[str]
    smtp_port: int
    smtp_username: Optional[str]
    smtp_password: Optional[str]
    smtp_sender: str
    smtp_use_tls: bool
    smtp_timeout_seconds: float
    seed_demo_data: bool


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests derive copies via `replace`."""
    return Settings(
        app_name=_env_str("APP_NAME", "Parking Slot Allocation API"),
        app_version=_env_str("APP_VERSION", "1.0.0"),
        database_path=Path(
            _env_str(
                "PARKING_DATABASE_PATH",
                str(PROJECT_ROOT / "data" / "parking.db"),
            )
        ),
        database_busy_timeout_seconds=_env_float("DATABASE_BUSY_TIMEOUT_SECONDS", 10.0),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        admin_token=_env_str("ADMIN_TOKEN"),
        admin_user_id=_env_int("ADMIN_USER_ID", 1),
        allocation_max_claim_attempts=_env_int("ALLOCATION_MAX_CLAIM_ATTEMPTS", 3),
        audit_log_default_limit=_env_int("AUDIT_LOG_DEFAULT_LIMIT", 50),
        audit_log_max_limit=_env_int("AUDIT_LOG_MAX_LIMIT", 200),
        smtp_host=_env_str("SMTP_HOST"),
        smtp_port=_env_int("SMTP_PORT", 587),
        smtp_username=_env_str("SMTP_USERNAME"),
        smtp_password=_env_str("SMTP_PASSWORD"),
        smtp_sender=_env_str("SMTP_SENDER", "no-reply@parking.local"),
        smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
        smtp_timeout_seconds=_env_float("SMTP_TIMEOUT_SECONDS", 10.0),
        seed_demo_data=_env_bool("SEED_DEMO_DATA", True),
    )
