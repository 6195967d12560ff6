from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage as MimeMessage
from typing import Protocol

from erpqueue.core.config import Settings
from erpqueue.core.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str | None = None
    attachments: tuple[str, ...] = field(default_factory=tuple)


class EmailTransport(Protocol):
    async def send(self, message: EmailMessage) -> bool: ...


class LogEmailTransport:
    """Development transport: logs instead of delivering."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    async def send(self, message: EmailMessage) -> bool:
        self.sent.append(message)
        log.info(
            "email_logged to=%s subject=%s html_len=%s attachments=%s",
            message.to,
            message.subject,
            len(message.html or ""),
            len(message.attachments),
        )
        return True


class SmtpEmailTransport:
    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str,
        starttls: bool = True,
        timeout_s: float = 30.0,
    ) -> None:
        host = (host or "").strip()
        if not host:
            raise ValueError("SMTP_HOST is required")
        sender = (sender or "").strip()
        if not sender:
            raise ValueError("SMTP_FROM is required")
        self.host = host
        self.port = int(port)
        self.username = username
        self.password = password
        self.sender = sender
        self.starttls = bool(starttls)
        self.timeout_s = float(timeout_s)

    def build_mime(self, message: EmailMessage) -> MimeMessage:
        mime = MimeMessage()
        mime["Subject"] = message.subject
        mime["From"] = self.sender
        mime["To"] = message.to
        mime.set_content(message.text or "This message requires an HTML-capable mail client.")
        mime.add_alternative(message.html or "", subtype="html")
        for path in message.attachments:
            with open(path, "rb") as f:
                data = f.read()
            filename = path.replace("\\", "/").rsplit("/", 1)[-1]
            mime.add_attachment(data, maintype="application", subtype="pdf", filename=filename)
        return mime

    def _deliver(self, mime: MimeMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout_s) as server:
            if self.starttls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(mime)

    async def send(self, message: EmailMessage) -> bool:
        mime = await asyncio.to_thread(self.build_mime, message)
        await asyncio.to_thread(self._deliver, mime)
        log.info("email_sent to=%s subject=%s", message.to, message.subject)
        return True


def build_email_transport(settings: Settings) -> EmailTransport:
    if not settings.smtp_configured:
        if settings.is_prod:
            raise ValueError("SMTP_HOST is not configured")
        log.warning("email_transport_log_only reason=SMTP_HOST not set")
        return LogEmailTransport()
    log.info("email_transport_smtp host=%s port=%s", settings.smtp_host, settings.smtp_port)
    return SmtpEmailTransport(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        sender=settings.smtp_from,
        starttls=settings.smtp_starttls,
    )
