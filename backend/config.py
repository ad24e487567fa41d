from __future__ import annotations

import os
import re
from datetime import timedelta

DEFAULT_DATABASE_URL = "sqlite:///./expenses.db"
DEFAULT_JWT_SECRET = "change-this-in-production"
DEFAULT_TOKEN_TTL = timedelta(days=7)
DEFAULT_BCRYPT_ROUNDS = 10

_DURATION_PATTERN = re.compile(r"^(\d+)\s*([smhdw]?)$")
_DURATION_UNITS = {
    "": "seconds",
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(value: str) -> timedelta:
    """Parse durations like ``3600``, ``45m``, ``12h`` or ``7d``."""
    match = _DURATION_PATTERN.match(value.strip().lower())
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    amount, unit = match.groups()
    duration = timedelta(**{_DURATION_UNITS[unit]: int(amount)})
    if duration <= timedelta(0):
        raise ValueError("Duration must be positive.")
    return duration


def get_database_url() -> str:
    return os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)


def get_jwt_secret() -> str:
    return os.getenv("JWT_SECRET") or DEFAULT_JWT_SECRET


def get_token_ttl() -> timedelta:
    raw = os.getenv("JWT_EXPIRES_IN")
    if not raw:
        return DEFAULT_TOKEN_TTL
    try:
        return parse_duration(raw)
    except ValueError:
        return DEFAULT_TOKEN_TTL


def get_bcrypt_rounds() -> int:
    raw = os.getenv("BCRYPT_ROUNDS")
    if not raw:
        return DEFAULT_BCRYPT_ROUNDS
    try:
        rounds = int(raw)
    except ValueError:
        return DEFAULT_BCRYPT_ROUNDS
    if not 4 <= rounds <= 31:
        return DEFAULT_BCRYPT_ROUNDS
    return rounds


def get_allowed_origins() -> list[str]:
    raw = os.getenv("FRONTEND_ORIGIN", "*")
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or ["*"]
