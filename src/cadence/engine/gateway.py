# src/cadence/engine/gateway.py
"""Send gateway: the per-recipient send primitive, one per channel.

Transports raise ``TransientTransportError`` for failures worth retrying
and ``PermanentTransportError`` for ones that never will succeed (bad
destination). They know nothing about rate limits, retries or records;
that is the send task's job.
"""

from __future__ import annotations

import smtplib
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Protocol

import httpx

from cadence.contracts.enums import Channel
from cadence.contracts.errors import (
    PermanentTransportError,
    SendTimeout,
    TransientTransportError,
)
from cadence.core.config import CadenceSettings, SmsHttpSettings, SmtpSettings
from cadence.core.store.models import Recipient
from cadence.engine.content import Content


@dataclass(frozen=True)
class SendResult:
    """Outcome of a successful hand-off to the provider."""

    provider_message_id: str | None
    success: bool = True
    error: str | None = None


class MessageSender(Protocol):
    """Capability to deliver one message to one recipient on one channel."""

    channel: Channel

    def send(self, recipient: Recipient, content: Content) -> SendResult: ...


class SmtpEmailSender:
    """Email over SMTP (STARTTLS + login when configured).

    Opens one connection per message; a worker's throughput is bounded by
    the channel gate long before connection setup matters.
    """

    channel = Channel.EMAIL

    def __init__(self, settings: SmtpSettings, *, timeout: float = 30.0) -> None:
        self._settings = settings
        self._timeout = timeout

    def _build_message(self, to_address: str, content: Content) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = content.subject or ""
        msg["From"] = formataddr((self._settings.from_name or "", self._settings.from_address))
        msg["To"] = to_address
        msg["Message-ID"] = make_msgid()
        if content.is_html:
            msg.set_content("This message requires an HTML-capable reader.")
            msg.add_alternative(content.body, subtype="html")
        else:
            msg.set_content(content.body)
        return msg

    def send(self, recipient: Recipient, content: Content) -> SendResult:
        to_address = recipient.destination(Channel.EMAIL)
        if to_address is None:
            raise PermanentTransportError("email", f"recipient {recipient.recipient_id} has no email")

        msg = self._build_message(to_address, content)
        try:
            with smtplib.SMTP(
                self._settings.host, self._settings.port, timeout=self._timeout
            ) as server:
                if self._settings.use_tls:
                    server.starttls()
                if self._settings.username and self._settings.password:
                    server.login(self._settings.username, self._settings.password)
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            raise PermanentTransportError("email", f"recipient refused: {e}") from e
        except smtplib.SMTPResponseException as e:
            if 500 <= e.smtp_code < 600:
                raise PermanentTransportError("email", f"{e.smtp_code} {e.smtp_error!r}") from e
            raise TransientTransportError("email", f"{e.smtp_code} {e.smtp_error!r}") from e
        except TimeoutError as e:
            raise SendTimeout("email", self._timeout) from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientTransportError("email", str(e)) from e

        return SendResult(provider_message_id=str(msg["Message-ID"]))


class HttpSmsSender:
    """SMS through a JSON HTTP provider API."""

    channel = Channel.SMS

    def __init__(
        self,
        settings: SmsHttpSettings,
        *,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def send(self, recipient: Recipient, content: Content) -> SendResult:
        phone = recipient.destination(Channel.SMS)
        if phone is None:
            raise PermanentTransportError("sms", f"recipient {recipient.recipient_id} has no phone")

        payload: dict[str, str] = {"to": phone, "body": content.body}
        if self._settings.sender_id:
            payload["from"] = self._settings.sender_id

        try:
            response = self._client.post(
                self._settings.endpoint,
                json=payload,
                headers={"Authorization": f"Bearer {self._settings.api_key}"},
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise SendTimeout("sms", self._timeout) from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429 or status >= 500:
                raise TransientTransportError("sms", f"HTTP {status}") from e
            raise PermanentTransportError("sms", f"HTTP {status}: {e.response.text[:200]}") from e
        except httpx.RequestError as e:
            raise TransientTransportError("sms", str(e)) from e

        # Provider responses are external data; a missing id is not fatal
        data = response.json() if response.content else {}
        message_id = data.get("message_id") or data.get("id") if isinstance(data, dict) else None
        return SendResult(provider_message_id=str(message_id) if message_id else None)

    def close(self) -> None:
        self._client.close()


@dataclass
class FakeSender:
    """In-memory transport for development and tests.

    Records every call. ``failures`` scripts per-recipient errors; a
    callable ``fail_when`` decides failures dynamically.
    """

    channel: Channel
    failures: dict[str, Exception] = field(default_factory=dict)
    fail_when: Callable[[Recipient], Exception | None] | None = None
    sent: list[tuple[str, Content]] = field(default_factory=list)
    calls: int = 0

    def send(self, recipient: Recipient, content: Content) -> SendResult:
        self.calls += 1
        error = self.failures.get(recipient.recipient_id)
        if error is None and self.fail_when is not None:
            error = self.fail_when(recipient)
        if error is not None:
            raise error
        self.sent.append((recipient.recipient_id, content))
        return SendResult(provider_message_id=f"fake-{self.channel.value}-{uuid.uuid4().hex}")

    @property
    def recipients(self) -> list[str]:
        return [recipient_id for recipient_id, _ in self.sent]


def build_senders(settings: CadenceSettings) -> dict[Channel, MessageSender]:
    """Transports per channel from settings; fake senders where none is configured."""
    timeout = settings.retry.send_timeout_seconds
    senders: dict[Channel, MessageSender] = {
        Channel.EMAIL: FakeSender(Channel.EMAIL),
        Channel.SMS: FakeSender(Channel.SMS),
    }
    if settings.smtp is not None:
        senders[Channel.EMAIL] = SmtpEmailSender(settings.smtp, timeout=timeout)
    if settings.sms_http is not None:
        senders[Channel.SMS] = HttpSmsSender(settings.sms_http, timeout=timeout)
    return senders
