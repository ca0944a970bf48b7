"""Tests for out-of-band challenge delivery."""

from __future__ import annotations

import smtplib
from email.message import EmailMessage
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest

from certm3.services import challenge_delivery as delivery_module
from certm3.services.challenge_delivery import SMTPChallengeSender, deliver_challenge


class _FakeSMTP:
    """Context-managed SMTP stand-in capturing sent messages."""

    sent: list[EmailMessage] = []

    def __init__(self, host: str, port: int, timeout: int) -> None:
        self.host = host
        self.port = port

    def __enter__(self) -> _FakeSMTP:
        return self

    def __exit__(self, *args: Any) -> None:
        return None

    def send_message(self, message: EmailMessage) -> None:
        _FakeSMTP.sent.append(message)


class _BrokenSender:
    def __init__(self, exc: Exception) -> None:
        self._exc = exc

    async def send_challenge(self, request_id: str, username: str, email: str, challenge: str) -> None:
        raise self._exc


def _sender() -> SMTPChallengeSender:
    return SMTPChallengeSender(
        host="mail.internal",
        port=2525,
        email_from="certm3@example.com",
        validation_base_url="https://certm3.example.com/app/validate",
    )


def test_validation_link_carries_request_and_challenge() -> None:
    link = _sender().validation_link(request_id="r-1", challenge="challenge-ab12")
    parsed = urlparse(link)

    assert parsed.path == "/app/validate"
    assert parse_qs(parsed.query) == {"request_id": ["r-1"], "challenge": ["challenge-ab12"]}


@pytest.mark.asyncio
async def test_smtp_sender_emails_the_challenge(monkeypatch: pytest.MonkeyPatch) -> None:
    _FakeSMTP.sent = []
    monkeypatch.setattr(delivery_module.smtplib, "SMTP", _FakeSMTP)

    delivered = await deliver_challenge(
        _sender(),
        request_id="r-1",
        username="alice",
        email="alice@example.com",
        challenge="challenge-ab12",
    )

    assert delivered is True
    assert len(_FakeSMTP.sent) == 1
    message = _FakeSMTP.sent[0]
    assert message["To"] == "alice@example.com"
    assert message["From"] == "certm3@example.com"
    assert "challenge-ab12" in message.get_content()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc", [ConnectionRefusedError("refused"), smtplib.SMTPRecipientsRefused({})]
)
async def test_delivery_failure_is_reported_not_raised(exc: Exception) -> None:
    delivered = await deliver_challenge(
        _BrokenSender(exc),
        request_id="r-1",
        username="alice",
        email="alice@example.com",
        challenge="challenge-ab12",
    )

    assert delivered is False
