from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Protocol

from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

logger = logging.getLogger(__name__)

WHATSAPP_PREFIX = "whatsapp:"


@dataclass(frozen=True)
class SendResult:
    ok: bool
    attempted_at: datetime
    message_id: str | None = None
    error_code: str | None = None
    error: str | None = None


class WhatsAppSender(Protocol):
    @property
    def from_number(self) -> str | None: ...

    def send(self, to: str, body: str) -> SendResult: ...


def as_whatsapp_address(number: str) -> str:
    normalized = number.strip()
    if normalized.startswith(WHATSAPP_PREFIX):
        return normalized
    return f"{WHATSAPP_PREFIX}{normalized}"


def mask_phone(number: str | None) -> str:
    normalized = (number or "").strip().removeprefix(WHATSAPP_PREFIX)
    if not normalized:
        return "***"
    digits = "".join(ch for ch in normalized if ch.isdigit())
    if len(digits) >= 4:
        return f"***{digits[-4:]}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


class StubWhatsAppSender:
    def __init__(self, *, enabled: bool, from_number: str | None = None) -> None:
        self._enabled = enabled
        self._from_number = from_number
        self.sent: list[tuple[str, str]] = []

    @property
    def from_number(self) -> str | None:
        return self._from_number

    def send(self, to: str, body: str) -> SendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._enabled:
            return SendResult(
                ok=False,
                attempted_at=attempted_at,
                error_code="sender_disabled",
                error="WhatsApp live delivery is disabled",
            )

        if "fail" in to.lower():
            return SendResult(
                ok=False,
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error="Stub sender forced failure for destination",
            )

        self.sent.append((to, body))
        digits = "".join(ch for ch in to if ch.isdigit())
        message_id = f"stub-{digits or 'unknown'}-{len(self.sent)}"
        return SendResult(ok=True, attempted_at=attempted_at, message_id=message_id)


class TwilioWhatsAppSender:
    """Delivers WhatsApp messages through the Twilio Messages API."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client_factory: Callable[[str, str], Client] | None = None,
    ) -> None:
        self._account_sid = account_sid.strip()
        self._auth_token = auth_token.strip()
        self._from_number = from_number.strip()
        self._client_factory = client_factory
        self._client: Client | None = None

    @property
    def from_number(self) -> str | None:
        return self._from_number or None

    def _configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    def _get_client(self) -> Client:
        if self._client is None:
            factory = self._client_factory or Client
            self._client = factory(self._account_sid, self._auth_token)
        return self._client

    def send(self, to: str, body: str) -> SendResult:
        attempted_at = datetime.now(timezone.utc)

        if not self._configured():
            return SendResult(
                ok=False,
                attempted_at=attempted_at,
                error_code="twilio_not_configured",
                error="TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN or TWILIO_FROM not configured",
            )

        try:
            message = self._get_client().messages.create(
                to=as_whatsapp_address(to),
                from_=as_whatsapp_address(self._from_number),
                body=body,
            )
        except TwilioRestException as exc:
            logger.warning("twilio rejected message to %s: status=%s code=%s", mask_phone(to), exc.status, exc.code)
            return SendResult(
                ok=False,
                attempted_at=attempted_at,
                error_code=f"http_{exc.status}",
                error=exc.msg or f"Twilio HTTP {exc.status}",
            )
        except (TwilioException, OSError) as exc:
            logger.warning("twilio request failed for %s: %s", mask_phone(to), exc)
            return SendResult(
                ok=False,
                attempted_at=attempted_at,
                error_code="connection_error",
                error=str(exc) or "network error",
            )

        return SendResult(ok=True, attempted_at=attempted_at, message_id=message.sid or "")
