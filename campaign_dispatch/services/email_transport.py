"""Email transport interface + SMTP, Resend and dry-run implementations."""

from __future__ import annotations

import asyncio
import html as html_module
import logging
import random
import re
import uuid
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Protocol

import aiosmtplib
import httpx

from campaign_dispatch.core.config import settings
from campaign_dispatch.core.structured_logging import build_log_context, mask_email
from campaign_dispatch.db.models import SenderProfile

logger = logging.getLogger(__name__)

RESEND_MAX_ATTEMPTS = 3
RESEND_RETRY_BASE_DELAY = 0.5
RESEND_RETRY_MAX_DELAY = 4.0
RESEND_TIMEOUT_SECONDS = 20.0
RETRY_STATUSES = {429, 500, 502, 503, 504}
IMPLICIT_TLS_PORT = 465


class TransportError(Exception):
    """Delivery attempt failed; the worker records the task as failed."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class SenderIdentity:
    """Sender credentials attached to every task of a campaign."""

    email: str
    nickname: str | None = None
    profile_id: str | None = None
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_username: str | None = None
    smtp_password: str | None = None
    use_tls: bool = True

    @classmethod
    def from_profile(cls, profile: SenderProfile) -> "SenderIdentity":
        return cls(
            email=profile.email,
            nickname=profile.nickname,
            profile_id=profile.id,
            smtp_host=profile.smtp_host,
            smtp_port=profile.smtp_port,
            smtp_username=profile.smtp_username or profile.email,
            smtp_password=profile.smtp_password,
            use_tls=profile.use_tls,
        )

    @property
    def from_address(self) -> str:
        return formataddr((self.nickname or "", self.email))

    @property
    def domain(self) -> str | None:
        _, _, domain = self.email.partition("@")
        return domain or None


@dataclass(frozen=True)
class SendReceipt:
    message_id: str


class EmailTransport(Protocol):
    key: str

    async def send(
        self,
        sender: SenderIdentity,
        recipient_email: str,
        recipient_name: str | None,
        subject: str,
        html: str,
        *,
        idempotency_key: str | None = None,
    ) -> SendReceipt:
        """Deliver one message or raise TransportError."""


def html_to_text(content: str) -> str:
    """Plain-text alternative for deliverability and inbox previews."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    return html_module.unescape(text)


# =============================================================================
# SMTP
# =============================================================================


class SmtpTransport:
    """Sends through the sender profile's own SMTP server."""

    key = "smtp"

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout or settings.SMTP_TIMEOUT_SECONDS

    def build_message(
        self,
        sender: SenderIdentity,
        recipient_email: str,
        recipient_name: str | None,
        subject: str,
        html: str,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = sender.from_address
        msg["To"] = formataddr((recipient_name or "", recipient_email))
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=sender.domain)
        msg.set_content(html_to_text(html) or " ")
        msg.add_alternative(html, subtype="html")
        return msg

    async def send(
        self,
        sender: SenderIdentity,
        recipient_email: str,
        recipient_name: str | None,
        subject: str,
        html: str,
        *,
        idempotency_key: str | None = None,
    ) -> SendReceipt:
        if not sender.smtp_host:
            raise TransportError("Sender profile has no SMTP host configured")

        msg = self.build_message(sender, recipient_email, recipient_name, subject, html)
        implicit_tls = sender.smtp_port == IMPLICIT_TLS_PORT
        try:
            await aiosmtplib.send(
                msg,
                hostname=sender.smtp_host,
                port=sender.smtp_port,
                username=sender.smtp_username,
                password=sender.smtp_password,
                use_tls=implicit_tls,
                start_tls=sender.use_tls and not implicit_tls,
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPResponseException as exc:
            raise TransportError(f"SMTP {exc.code}: {exc.message}", code=exc.code) from exc
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"SMTP delivery failed: {exc}") from exc

        return SendReceipt(message_id=str(msg["Message-ID"]))


# =============================================================================
# Resend (HTTP API)
# =============================================================================


async def _post_with_retries(
    client: httpx.AsyncClient,
    url: str,
    *,
    headers: dict[str, str],
    payload: dict[str, object],
    max_attempts: int,
    base_delay: float,
    max_delay: float,
) -> httpx.Response:
    """POST with exponential backoff on transport errors and retryable statuses."""
    for attempt in range(max_attempts):
        last_attempt = attempt >= max_attempts - 1
        try:
            response = await client.post(url, headers=headers, json=payload)
        except httpx.RequestError as exc:
            if last_attempt:
                raise
            logger.warning("Resend request failed, retrying", exc_info=exc)
        else:
            if response.status_code not in RETRY_STATUSES or last_attempt:
                return response
            logger.warning("Resend returned %s, retrying", response.status_code)

        delay = min(max_delay, base_delay * (2**attempt))
        if delay:
            await asyncio.sleep(delay + random.uniform(0, delay / 2))

    raise RuntimeError("unreachable")


class ResendTransport:
    """
    Sends through the Resend HTTP API using an idempotency key per task.

    Transient HTTP failures are retried within one send() call. That stays
    at-most-once only because every attempt carries the same Idempotency-Key,
    so Resend delivers a repeated request once; the queue itself never
    retries a failed task.
    """

    key = "resend"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        api_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        max_attempts: int = RESEND_MAX_ATTEMPTS,
        base_delay: float = RESEND_RETRY_BASE_DELAY,
        max_delay: float = RESEND_RETRY_MAX_DELAY,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.api_url = api_url or settings.RESEND_API_URL
        self._client = client
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def build_payload(
        self,
        sender: SenderIdentity,
        recipient_email: str,
        recipient_name: str | None,
        subject: str,
        html: str,
    ) -> dict[str, object]:
        payload: dict[str, object] = {
            "from": sender.from_address,
            "to": [formataddr((recipient_name or "", recipient_email))],
            "subject": subject,
            "html": html,
        }
        text = html_to_text(html)
        if text:
            payload["text"] = text
        return payload

    async def send(
        self,
        sender: SenderIdentity,
        recipient_email: str,
        recipient_name: str | None,
        subject: str,
        html: str,
        *,
        idempotency_key: str | None = None,
    ) -> SendReceipt:
        if not self.api_key:
            raise TransportError("Resend API key is not configured")

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        payload = self.build_payload(sender, recipient_email, recipient_name, subject, html)

        try:
            if self._client is not None:
                response = await self._post(self._client, headers, payload)
            else:
                async with httpx.AsyncClient(timeout=RESEND_TIMEOUT_SECONDS) as client:
                    response = await self._post(client, headers, payload)
        except httpx.TimeoutException as exc:
            raise TransportError("Connection timeout") from exc
        except httpx.RequestError as exc:
            raise TransportError(f"Request error: {exc}") from exc

        if response.status_code == 409 and idempotency_key:
            # Idempotency key already used: the provider accepted this message before
            logger.info(
                "Resend reported duplicate idempotency key; treating as sent",
                extra=build_log_context(task_id=idempotency_key, source="resend"),
            )
            return SendReceipt(message_id=idempotency_key)
        if response.status_code >= 300:
            raise TransportError(
                f"Resend API error {response.status_code}: {response.text[:200]}",
                code=response.status_code,
            )
        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        return SendReceipt(message_id=message_id or idempotency_key or str(uuid.uuid4()))

    async def _post(
        self,
        client: httpx.AsyncClient,
        headers: dict[str, str],
        payload: dict[str, object],
    ) -> httpx.Response:
        return await _post_with_retries(
            client,
            self.api_url,
            headers=headers,
            payload=payload,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )


# =============================================================================
# Dry run
# =============================================================================


class DryRunTransport:
    """Logs instead of sending (local development)."""

    key = "dry_run"

    async def send(
        self,
        sender: SenderIdentity,
        recipient_email: str,
        recipient_name: str | None,
        subject: str,
        html: str,
        *,
        idempotency_key: str | None = None,
    ) -> SendReceipt:
        logger.info(
            "Dry-run send from %s to %s: %s",
            sender.email,
            mask_email(recipient_email),
            subject,
            extra=build_log_context(task_id=idempotency_key, source="dry_run"),
        )
        return SendReceipt(message_id=f"dry-run-{idempotency_key or uuid.uuid4()}")


def build_transport(name: str | None = None) -> EmailTransport:
    """Select the transport named by ``EMAIL_TRANSPORT``."""
    key = (name or settings.EMAIL_TRANSPORT).strip().lower()
    if key == SmtpTransport.key:
        return SmtpTransport()
    if key == ResendTransport.key:
        return ResendTransport()
    if key in (DryRunTransport.key, "dry-run"):
        return DryRunTransport()
    raise ValueError(f"Unknown email transport: {key}")
