from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field

from pulse.health import HealthPolicy

DATA_DIR = Path(__file__).parent / "data"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings(BaseModel):
    database_path: Path = Field(
        default_factory=lambda: Path(_env("PULSE_DATABASE_PATH") or DATA_DIR / "pulse.db").expanduser()
    )

    secret_key: str = Field(default_factory=lambda: _env("PULSE_SECRET_KEY", "change-me"))
    jwt_algorithm: str = Field(default_factory=lambda: _env("PULSE_JWT_ALGORITHM", "HS256"))
    token_expire_minutes: int = Field(
        default_factory=lambda: int(_env("PULSE_TOKEN_EXPIRE_MINUTES", str(7 * 24 * 60)))
    )

    # Bootstrap admin, created on init_db() when both are set and the email is unused.
    admin_email: str = Field(default_factory=lambda: _env("PULSE_ADMIN_EMAIL"))
    admin_password: str = Field(default_factory=lambda: _env("PULSE_ADMIN_PASSWORD"))

    dashboard_policy: HealthPolicy = Field(
        default_factory=lambda: HealthPolicy(_env("PULSE_DASHBOARD_POLICY", HealthPolicy.MULTIPLICATIVE.value))
    )
    cors_origins: list[str] = Field(default_factory=lambda: _split(_env("PULSE_CORS_ORIGINS", "*")))
    log_level: str = Field(default_factory=lambda: _env("PULSE_LOG_LEVEL", "INFO").upper())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
