"""Short-lived enrollment credentials minted after challenge validation."""

from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any, Literal
from uuid import uuid4

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from certm3.config import get_settings

TokenPurpose = Literal["certificate_request"]
CERTIFICATE_REQUEST_PURPOSE: TokenPurpose = "certificate_request"
JWT_ALGORITHM = "RS256"


class TokenValidationError(Exception):
    """Raised when an enrollment credential fails verification."""

    def __init__(self, detail: str, code: str) -> None:
        super().__init__(detail)
        self.detail = detail
        self.code = code


@dataclass(frozen=True)
class EnrollmentClaims:
    """Verified claims carried by an enrollment credential."""

    user_id: str
    request_id: str
    purpose: str
    expires_at: datetime


class EnrollmentTokenService:
    """Issue and verify RS256 bearer credentials bound to one approved request."""

    def __init__(
        self,
        private_key_pem: str,
        public_key_pem: str,
        issuer: str,
        audience: str,
        ttl_seconds: int,
    ) -> None:
        self._private_key_pem = private_key_pem
        self._public_key_pem = public_key_pem
        self._issuer = issuer
        self._audience = audience
        self._ttl_seconds = ttl_seconds
        self._kid = self._calculate_kid(public_key_pem)

    @property
    def ttl_seconds(self) -> int:
        """Lifetime of newly issued credentials."""
        return self._ttl_seconds

    def issue(
        self,
        user_id: str,
        request_id: str,
        purpose: TokenPurpose = CERTIFICATE_REQUEST_PURPOSE,
        expires_in_seconds: int | None = None,
    ) -> str:
        """Issue a signed credential for the next enrollment step."""
        issued_at = datetime.now(UTC)
        lifetime = self._ttl_seconds if expires_in_seconds is None else expires_in_seconds
        expires_at = issued_at + timedelta(seconds=lifetime)
        payload: dict[str, Any] = {
            "jti": str(uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self._issuer,
            "aud": self._audience,
            "sub": user_id,
            "request_id": request_id,
            "purpose": purpose,
        }
        return jwt.encode(
            payload,
            self._private_key_pem,
            algorithm=JWT_ALGORITHM,
            headers={"kid": self._kid},
        )

    def verify(
        self,
        token: str,
        expected_purpose: TokenPurpose = CERTIFICATE_REQUEST_PURPOSE,
    ) -> EnrollmentClaims:
        """Verify signature, expiry, issuer, audience, and purpose."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise TokenValidationError("Invalid token.", "invalid_token") from exc
        algorithm = str(header.get("alg", ""))
        if not hmac.compare_digest(algorithm, JWT_ALGORITHM):
            raise TokenValidationError("Invalid token algorithm.", "invalid_token")

        try:
            payload = jwt.decode(
                token,
                self._public_key_pem,
                algorithms=[JWT_ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={
                    "require_jti": True,
                    "require_iat": True,
                    "require_exp": True,
                    "require_sub": True,
                },
            )
        except ExpiredSignatureError as exc:
            raise TokenValidationError("Token has expired.", "token_expired") from exc
        except JWTError as exc:
            raise TokenValidationError("Invalid token.", "invalid_token") from exc

        purpose = str(payload.get("purpose", ""))
        if not hmac.compare_digest(purpose, expected_purpose):
            raise TokenValidationError("Invalid token purpose.", "invalid_token")
        request_id = str(payload.get("request_id", "")).strip()
        if not request_id:
            raise TokenValidationError("Invalid token.", "invalid_token")

        return EnrollmentClaims(
            user_id=str(payload["sub"]),
            request_id=request_id,
            purpose=purpose,
            expires_at=datetime.fromtimestamp(int(payload["exp"]), UTC),
        )

    @staticmethod
    def _calculate_kid(public_key_pem: str) -> str:
        """Derive a deterministic key ID from the public key."""
        digest = hashlib.sha256(public_key_pem.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(digest[:16]).rstrip(b"=").decode("ascii")


@lru_cache
def get_enrollment_token_service() -> EnrollmentTokenService:
    """Build and cache the enrollment credential service from settings."""
    settings = get_settings()
    return EnrollmentTokenService(
        private_key_pem=settings.jwt.private_key_pem.get_secret_value(),
        public_key_pem=settings.jwt.public_key_pem.get_secret_value(),
        issuer=settings.jwt.issuer,
        audience=settings.jwt.audience,
        ttl_seconds=settings.jwt.enrollment_token_ttl_seconds,
    )
