from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from ledger_backend.errors import ValidationFailure
from ledger_backend.models import normalize_currency

DEFAULT_ACCOUNTING_CURRENCY = "USD"
RATE_SOURCES = {"frankfurter", "static"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./ledger.db"
    accounting_currency: str = DEFAULT_ACCOUNTING_CURRENCY
    rate_source: str = "frankfurter"
    rate_source_url: str = "https://api.frankfurter.app"
    rate_cache_ttl_seconds: float = 60 * 60
    rate_timeout_seconds: float = 5
    notification_cooldown_hours: float = 24
    anomaly_ratio: Decimal = Decimal("1.5")
    log_level: str = "INFO"
    frontend_origin: str = "http://localhost:3000"


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./ledger.db"),
        accounting_currency=get_accounting_currency(),
        rate_source=_choice_env("RATE_SOURCE", RATE_SOURCES, "frankfurter"),
        rate_source_url=os.getenv("RATE_SOURCE_URL", "https://api.frankfurter.app").rstrip("/"),
        rate_cache_ttl_seconds=_float_env("RATE_CACHE_TTL_SECONDS", 60 * 60),
        rate_timeout_seconds=_float_env("RATE_TIMEOUT_SECONDS", 5),
        notification_cooldown_hours=_float_env("NOTIFICATION_COOLDOWN_HOURS", 24),
        anomaly_ratio=_decimal_env("ANOMALY_RATIO", Decimal("1.5")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        frontend_origin=os.getenv("FRONTEND_ORIGIN", "http://localhost:3000"),
    )


def get_accounting_currency() -> str:
    raw = os.getenv("ACCOUNTING_CURRENCY", DEFAULT_ACCOUNTING_CURRENCY)
    try:
        return normalize_currency(raw)
    except ValueError:
        return DEFAULT_ACCOUNTING_CURRENCY


def _choice_env(name: str, choices: set, default: str) -> str:
    value = os.getenv(name, default).strip().lower() or default
    if value not in choices:
        raise ValidationFailure(f"{name} must be one of: {', '.join(sorted(choices))}.")
    return value


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValidationFailure(f"{name} must be a number.") from exc
    if value < 0:
        raise ValidationFailure(f"{name} must not be negative.")
    return value


def _decimal_env(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ValidationFailure(f"{name} must be a decimal number.") from exc
    if not value.is_finite() or value <= 0:
        raise ValidationFailure(f"{name} must be greater than zero.")
    return value
