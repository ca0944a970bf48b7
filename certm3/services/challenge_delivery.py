"""Out-of-band delivery of identity challenges."""

from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from functools import lru_cache
from typing import Protocol
from urllib.parse import urlencode

import structlog

from certm3.config import get_settings

logger = structlog.get_logger(__name__)


class ChallengeSender(Protocol):
    """Delivers a challenge to the claimed email address."""

    async def send_challenge(
        self, request_id: str, username: str, email: str, challenge: str
    ) -> None:
        """Deliver one challenge."""


@dataclass(frozen=True)
class SMTPChallengeSender:
    """SMTP-backed challenge delivery."""

    host: str
    port: int
    email_from: str
    validation_base_url: str

    async def send_challenge(
        self, request_id: str, username: str, email: str, challenge: str
    ) -> None:
        """Send the challenge email without blocking the event loop."""
        link = self.validation_link(request_id=request_id, challenge=challenge)
        body = (
            f"Hello {username},\n\n"
            "A client certificate was requested for this email address.\n\n"
            f"Request ID: {request_id}\n"
            f"Challenge: {challenge}\n\n"
            f"Validate the request here: {link}\n\n"
            "If you did not request a certificate you can ignore this message.\n"
        )
        await asyncio.to_thread(
            self._send_blocking,
            to_email=email,
            subject="Validate your certificate request",
            body=body,
        )

    def validation_link(self, request_id: str, challenge: str) -> str:
        query = urlencode({"request_id": request_id, "challenge": challenge})
        return f"{self.validation_base_url}?{query}"

    def _send_blocking(self, to_email: str, subject: str, body: str) -> None:
        """Send a plain-text email through SMTP."""
        message = EmailMessage()
        message["From"] = self.email_from
        message["To"] = to_email
        message["Subject"] = subject
        message.set_content(body)
        with smtplib.SMTP(self.host, self.port, timeout=10) as smtp:
            smtp.send_message(message)


async def deliver_challenge(
    sender: ChallengeSender,
    request_id: str,
    username: str,
    email: str,
    challenge: str,
) -> bool:
    """Deliver a challenge, logging rather than raising on transport failure."""
    try:
        await sender.send_challenge(
            request_id=request_id, username=username, email=email, challenge=challenge
        )
    except (OSError, smtplib.SMTPException) as exc:
        logger.warning(
            "challenge_delivery_failed",
            request_id=request_id,
            error_type=type(exc).__name__,
        )
        return False
    logger.info("challenge_delivered", request_id=request_id)
    return True


@lru_cache
def get_challenge_sender() -> ChallengeSender:
    """Build and cache the SMTP challenge sender from settings."""
    email = get_settings().email
    return SMTPChallengeSender(
        host=email.host,
        port=email.port,
        email_from=email.email_from,
        validation_base_url=email.validation_base_url,
    )
