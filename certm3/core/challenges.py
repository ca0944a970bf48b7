"""Single-use identity challenge tokens."""

from __future__ import annotations

import hmac
import re
import secrets

CHALLENGE_PREFIX = "challenge-"
CHALLENGE_PATTERN = re.compile(r"^challenge-[a-f0-9-]+$")
_CHALLENGE_BYTES = 32


def generate_challenge() -> str:
    """Return a fresh unguessable challenge with 256 bits of entropy."""
    return f"{CHALLENGE_PREFIX}{secrets.token_hex(_CHALLENGE_BYTES)}"


def is_well_formed(candidate: str) -> bool:
    """Return True when the candidate has the challenge wire format."""
    return bool(CHALLENGE_PATTERN.match(candidate))


def challenges_match(expected: str, candidate: str) -> bool:
    """Compare challenges in constant time."""
    return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))
