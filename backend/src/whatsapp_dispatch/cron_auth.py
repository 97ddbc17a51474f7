from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Mapping

from .config import Settings

SOURCE_VERCEL_CRON = "vercel_cron"
SOURCE_MANUAL = "manual"

LEGACY_SECRET_HEADER = "x-cron-secret"
VERCEL_CRON_HEADER = "x-vercel-cron"
VERCEL_CRON_USER_AGENT = "vercel-cron"


@dataclass(frozen=True)
class CronAuthorization:
    authorized: bool
    reason: str | None = None

    @property
    def misconfigured(self) -> bool:
        return self.reason == "cron_secret_missing"


def _header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def extract_provided_secret(headers: Mapping[str, str]) -> str | None:
    authorization = _header_value(headers, "Authorization")
    if authorization is not None and authorization.lower().startswith("bearer "):
        token = authorization[len("bearer ") :].strip()
        if token:
            return token
    return _header_value(headers, LEGACY_SECRET_HEADER)


def verify_cron_request(*, settings: Settings, headers: Mapping[str, str]) -> CronAuthorization:
    expected = settings.cron_secret.strip()
    if not expected:
        return CronAuthorization(authorized=False, reason="cron_secret_missing")

    provided = extract_provided_secret(headers)
    if provided is None:
        return CronAuthorization(authorized=False, reason="secret_missing")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        return CronAuthorization(authorized=False, reason="secret_mismatch")
    return CronAuthorization(authorized=True)


def detect_source(headers: Mapping[str, str]) -> str:
    if _header_value(headers, VERCEL_CRON_HEADER) is not None:
        return SOURCE_VERCEL_CRON
    user_agent = (_header_value(headers, "User-Agent") or "").lower()
    if VERCEL_CRON_USER_AGENT in user_agent:
        return SOURCE_VERCEL_CRON
    return SOURCE_MANUAL
