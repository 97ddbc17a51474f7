from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int, *, minimum: int = 1) -> int:
    if value is None:
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "WhatsApp Dispatch"
    api_prefix: str = "/api/v1"
    app_env: str = "local"
    cron_secret: str = ""
    admin_monitor_token: str = ""
    # Outbound provider settings.
    whatsapp_sender_type: str = "stub"
    whatsapp_stub_enabled: bool = True
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from: str = ""
    # Dispatch pipeline settings.
    dispatch_batch_size: int = 50
    default_max_attempts: int = 3
    locker_prefix: str = "cron"
    dispatch_store_backend: str = "inmemory"
    database_url: str = ""
    runtime_secret_guard_mode: str = "warn"

    def twilio_configured(self) -> bool:
        return bool(
            self.twilio_account_sid.strip()
            and self.twilio_auth_token.strip()
            and self.twilio_from.strip()
        )


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("DISPATCH_APP_NAME", "WhatsApp Dispatch"),
        api_prefix=os.getenv("DISPATCH_API_PREFIX", "/api/v1"),
        app_env=os.getenv("VERCEL_ENV", "local"),
        cron_secret=os.getenv("CRON_SECRET", "").strip(),
        admin_monitor_token=os.getenv("ADMIN_MONITOR_TOKEN", "").strip(),
        whatsapp_sender_type=_normalize_mode(
            os.getenv("WHATSAPP_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "twilio"},
        ),
        whatsapp_stub_enabled=_as_bool(os.getenv("WHATSAPP_STUB_ENABLED"), True),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", "").strip(),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", "").strip(),
        twilio_from=os.getenv("TWILIO_FROM", "").strip(),
        dispatch_batch_size=_as_int(os.getenv("WHATSAPP_DISPATCH_BATCH_SIZE"), 50),
        default_max_attempts=_as_int(os.getenv("WHATSAPP_DEFAULT_MAX_ATTEMPTS"), 3),
        locker_prefix=os.getenv("WHATSAPP_LOCKER_PREFIX", "cron").strip() or "cron",
        dispatch_store_backend=os.getenv("DISPATCH_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.cron_secret, defaults={"dev-cron-secret", "change-me-in-production"}):
        issues.append("CRON_SECRET is empty or uses a placeholder value")
    if settings.whatsapp_sender_type == "twilio" and not settings.twilio_configured():
        issues.append(
            "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM are required "
            "when WHATSAPP_SENDER_TYPE=twilio"
        )
    if settings.dispatch_store_backend.strip().lower() == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when DISPATCH_STORE_BACKEND=postgres")
    return tuple(issues)
