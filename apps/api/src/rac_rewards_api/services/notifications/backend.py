"""Delivery backends for membership lifecycle emails."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr
from typing import Dict, List, Optional, Protocol, Tuple

from rac_rewards_api.core.settings import Settings


@dataclass(frozen=True)
class OutboundEmail:
    """A rendered membership email addressed to one member."""

    recipient: str
    subject: str
    text_body: str
    html_body: str | None = None
    bcc: Tuple[str, ...] = ()
    headers: Dict[str, str] = field(default_factory=dict)

    def to_message(self, sender: str | None = None) -> EmailMessage:
        message = EmailMessage()
        if sender:
            message["From"] = sender
        message["To"] = self.recipient
        message["Subject"] = self.subject
        if self.bcc:
            message["Bcc"] = ", ".join(self.bcc)
        for name, value in self.headers.items():
            message[name] = value
        message.set_content(self.text_body)
        if self.html_body:
            message.add_alternative(self.html_body, subtype="html")
        return message


class EmailBackend(Protocol):
    async def send(self, email: OutboundEmail) -> None:
        ...


class SMTPEmailBackend:
    """Relay through an SMTP server; ``smtplib`` blocks, so each send runs in a thread."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender_email: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        sender_name: str = "RAC Rewards",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._address = (host, port)
        self._credentials = (username, password) if username and password else None
        self._use_tls = use_tls
        self._timeout = timeout_seconds
        self.sender = formataddr((sender_name, sender_email))

    @classmethod
    def from_settings(cls, config: Settings) -> "SMTPEmailBackend | None":
        """Build from the SMTP settings, or ``None`` when no relay is configured."""

        if not config.smtp_host or not config.smtp_sender_email:
            return None
        return cls(
            host=config.smtp_host,
            port=config.smtp_port,
            sender_email=config.smtp_sender_email,
            username=config.smtp_username,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
        )

    async def send(self, email: OutboundEmail) -> None:
        await asyncio.to_thread(self._relay, email.to_message(self.sender))

    def _relay(self, message: EmailMessage) -> None:
        host, port = self._address
        with smtplib.SMTP(host, port, timeout=self._timeout) as smtp:
            if self._use_tls:
                smtp.starttls()
            if self._credentials is not None:
                smtp.login(*self._credentials)
            smtp.send_message(message)


class InMemoryEmailBackend:
    """Keeps every message it is asked to send; used by tests and local runs."""

    def __init__(self) -> None:
        self.outbox: List[OutboundEmail] = []

    @property
    def sent_messages(self) -> List[EmailMessage]:
        return [email.to_message() for email in self.outbox]

    async def send(self, email: OutboundEmail) -> None:
        self.outbox.append(email)
