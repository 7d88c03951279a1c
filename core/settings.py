from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

SUPPORTED_PAYMENT_PROVIDERS = ("card", "mobile_money", "multi_rail")
SUPPORTED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

_PROVIDER_REQUIRED_ENV: dict[str, tuple[str, ...]] = {
    "card": ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"),
    "mobile_money": ("PAYSTACK_SECRET_KEY",),
    "multi_rail": ("FLUTTERWAVE_SECRET_KEY", "FLW_WEBHOOK_SECRET_HASH"),
}


def _split_csv(value: str | None) -> tuple[str, ...]:
    if not value:
        return tuple()
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env(name: str) -> str | None:
    raw_value = os.getenv(name)
    if raw_value is None:
        return None
    normalized = raw_value.strip()
    return normalized or None


def _enabled_providers() -> tuple[str, ...]:
    raw = _env("PAYMENT_PROVIDERS")
    if raw is None:
        return SUPPORTED_PAYMENT_PROVIDERS
    return tuple(item.lower() for item in _split_csv(raw))


def _bool_env(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def collect_missing_required_env_vars() -> list[str]:
    missing: list[str] = []

    always_required = (
        "MONGO_URL",
        "DB_NAME",
        "CELERY_BROKER_URL",
    )
    for var_name in always_required:
        if _env(var_name) is None:
            missing.append(var_name)

    for provider in _enabled_providers():
        for var_name in _PROVIDER_REQUIRED_ENV.get(provider, ()):
            if _env(var_name) is None:
                missing.append(var_name)

    return sorted(set(missing))


def _check_positive_number(name: str, *, integer: bool, invalid_values: list[str]) -> None:
    raw = _env(name)
    if raw is None:
        return
    try:
        parsed = int(raw) if integer else float(raw)
        if parsed <= 0:
            raise ValueError("must be positive")
    except ValueError:
        kind = "integer" if integer else "number"
        invalid_values.append(f"{name} must be a positive {kind}")


def collect_invalid_env_values() -> list[str]:
    invalid_values: list[str] = []

    providers = _enabled_providers()
    if not providers:
        invalid_values.append("PAYMENT_PROVIDERS must list at least one provider")
    unknown = [name for name in providers if name not in SUPPORTED_PAYMENT_PROVIDERS]
    if unknown:
        invalid_values.append(
            "PAYMENT_PROVIDERS must only contain: " + ", ".join(SUPPORTED_PAYMENT_PROVIDERS)
        )

    _check_positive_number("PAYMENT_HTTP_TIMEOUT_SECONDS", integer=False, invalid_values=invalid_values)
    _check_positive_number("PAYMENT_RETRY_ATTEMPTS", integer=True, invalid_values=invalid_values)
    _check_positive_number("PAYMENT_RETRY_BASE_DELAY_SECONDS", integer=False, invalid_values=invalid_values)
    _check_positive_number("OUTBOX_RELAY_INTERVAL_SECONDS", integer=True, invalid_values=invalid_values)
    _check_positive_number("RECONCILE_INTERVAL_SECONDS", integer=True, invalid_values=invalid_values)
    _check_positive_number("RECONCILE_STALE_AFTER_SECONDS", integer=True, invalid_values=invalid_values)

    log_level = (_env("LOG_LEVEL") or "INFO").upper()
    if log_level not in SUPPORTED_LOG_LEVELS:
        invalid_values.append("LOG_LEVEL must be one of: " + ", ".join(sorted(SUPPORTED_LOG_LEVELS)))

    return invalid_values


def validate_required_environment() -> None:
    missing_vars = collect_missing_required_env_vars()
    invalid_values = collect_invalid_env_values()
    if not missing_vars and not invalid_values:
        return

    message_lines = ["Application startup blocked by invalid environment configuration."]
    if missing_vars:
        message_lines.append("")
        message_lines.append("Missing required environment variables:")
        message_lines.extend(f"- {name}" for name in missing_vars)
    if invalid_values:
        message_lines.append("")
        message_lines.append("Invalid environment values:")
        message_lines.extend(f"- {message}" for message in invalid_values)
    raise RuntimeError("\n".join(message_lines))


@dataclass(frozen=True)
class Settings:
    env: str
    mongo_url: str | None
    db_name: str | None
    cors_origins: tuple[str, ...]
    debug_include_error_details: bool
    log_level: str
    celery_broker_url: str | None
    celery_result_backend: str | None
    payment_providers: tuple[str, ...]
    stripe_secret_key: str | None
    stripe_webhook_secret: str | None
    paystack_secret_key: str | None
    paystack_callback_url: str | None
    flutterwave_secret_key: str | None
    flutterwave_webhook_secret_hash: str | None
    flutterwave_redirect_url: str | None
    payment_http_timeout_seconds: float
    payment_retry_attempts: int
    payment_retry_base_delay_seconds: float
    outbox_relay_interval_seconds: int
    reconcile_interval_seconds: int
    reconcile_stale_after_seconds: int
    notification_service_url: str | None

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    validate_required_environment()

    return Settings(
        env=os.getenv("ENV", "development"),
        mongo_url=_env("MONGO_URL"),
        db_name=_env("DB_NAME"),
        cors_origins=_split_csv(os.getenv("CORS_ORIGINS")),
        debug_include_error_details=_bool_env("DEBUG_INCLUDE_ERROR_DETAILS"),
        log_level=(_env("LOG_LEVEL") or "INFO").upper(),
        celery_broker_url=_env("CELERY_BROKER_URL"),
        celery_result_backend=_env("CELERY_RESULT_BACKEND"),
        payment_providers=_enabled_providers(),
        stripe_secret_key=_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        paystack_secret_key=_env("PAYSTACK_SECRET_KEY"),
        paystack_callback_url=_env("PAYSTACK_CALLBACK_URL"),
        flutterwave_secret_key=_env("FLUTTERWAVE_SECRET_KEY"),
        flutterwave_webhook_secret_hash=_env("FLW_WEBHOOK_SECRET_HASH"),
        flutterwave_redirect_url=_env("FLUTTERWAVE_REDIRECT_URL"),
        payment_http_timeout_seconds=float(os.getenv("PAYMENT_HTTP_TIMEOUT_SECONDS", "20")),
        payment_retry_attempts=int(os.getenv("PAYMENT_RETRY_ATTEMPTS", "3")),
        payment_retry_base_delay_seconds=float(os.getenv("PAYMENT_RETRY_BASE_DELAY_SECONDS", "0.5")),
        outbox_relay_interval_seconds=int(os.getenv("OUTBOX_RELAY_INTERVAL_SECONDS", "5")),
        reconcile_interval_seconds=int(os.getenv("RECONCILE_INTERVAL_SECONDS", "300")),
        reconcile_stale_after_seconds=int(os.getenv("RECONCILE_STALE_AFTER_SECONDS", "900")),
        notification_service_url=_env("NOTIFICATION_SERVICE_URL"),
    )
