from __future__ import annotations

from typing import Any, Protocol

import httpx

from erpqueue.core.config import Settings
from erpqueue.core.logging import get_logger
from erpqueue.jobs.errors import DeliveryError

log = get_logger(__name__)

TWILIO_API_BASE = "https://api.twilio.com"


class SmsTransport(Protocol):
    async def send(self, to: str, message: str) -> bool: ...


class LogSmsTransport:
    """Development transport: logs instead of delivering."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send(self, to: str, message: str) -> bool:
        self.sent.append((to, message))
        log.info("sms_logged to=%s len=%s", to, len(message or ""))
        return True


class TwilioSmsTransport:
    """Twilio Messages REST API over httpx."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = TWILIO_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = 30.0,
    ) -> None:
        account_sid = (account_sid or "").strip()
        auth_token = (auth_token or "").strip()
        from_number = (from_number or "").strip()
        if not account_sid or not auth_token:
            raise ValueError("Twilio credentials not configured")
        if not from_number:
            raise ValueError("TWILIO_FROM_NUMBER is required")
        self.account_sid = account_sid
        self._auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._timeout_s = float(timeout_s)

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    async def send(self, to: str, message: str) -> bool:
        to = (to or "").strip()
        if not to:
            raise ValueError("sms recipient is required")

        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self._timeout_s, connect=10.0),
            auth=httpx.BasicAuth(self.account_sid, self._auth_token),
        ) as client:
            resp = await client.post(
                self.messages_url,
                data={"To": to, "From": self.from_number, "Body": message or ""},
            )

        if resp.status_code not in (200, 201):
            detail = ""
            try:
                data: Any = resp.json()
                if isinstance(data, dict):
                    detail = str(data.get("message") or "")
            except ValueError:
                detail = ""
            raise DeliveryError(
                f"twilio send failed status={resp.status_code} {detail}".strip(),
                recipient=to,
            )

        sid = ""
        try:
            data = resp.json()
            if isinstance(data, dict):
                sid = str(data.get("sid") or "")
        except ValueError:
            sid = ""
        log.info("sms_sent to=%s sid=%s", to, sid or "-")
        return True


def build_sms_transport(settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None) -> SmsTransport:
    if settings.twilio_configured:
        return TwilioSmsTransport(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            transport=transport,
        )
    if settings.is_prod:
        raise ValueError("Twilio credentials not configured. SMS service disabled.")
    log.warning("sms_transport_log_only reason=Twilio credentials not set")
    return LogSmsTransport()
