"""Certificate authority signer.

The CA certificate and private key are loaded once per process from file-based
secrets. Signing converts a verified CSR into an end-entity client certificate whose
identity is bound to the server-side request record:

- the CSR contributes only its public key and proof of possession;
- subject CN and emailAddress come from the verified identity;
- group authorizations ride in a private extension as a DER ``SEQUENCE OF UTF8String``;
- the username rides in a second private extension as a DER ``UTF8String``.

Key material never appears in exceptions or log events.
"""

from __future__ import annotations

import re
import secrets
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache

import structlog
from asn1crypto import core as asn1
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed448, ed25519, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from certm3.config import CASettings, get_settings
from certm3.core.errors import InternalError, InvalidInputError

logger = structlog.get_logger(__name__)

SERIAL_NUMBER_BYTES = 16
MAX_SERIAL_NUMBER_BITS = 159
_HEX_PATTERN = re.compile(r"[0-9a-fA-F]+")


class CAConfigurationError(RuntimeError):
    """Raised at startup when CA material cannot be loaded."""


class _GroupList(asn1.SequenceOf):
    _child_spec = asn1.UTF8String


@dataclass(frozen=True)
class SubjectIdentity:
    """Verified identity the issued certificate is bound to."""

    username: str
    email: str


@dataclass(frozen=True)
class IssuedCertificate:
    """Signed certificate and the attributes recorded for lifecycle tracking."""

    certificate_pem: str
    serial_number: str
    fingerprint: str
    common_name: str
    email: str
    not_before: datetime
    not_after: datetime
    groups: tuple[str, ...]


@dataclass(frozen=True)
class RevokedEntry:
    """Revocation list entry."""

    serial_number: str
    revoked_at: datetime


def public_key_fingerprint(public_key: object) -> str:
    """Return the hex SHA-256 digest of a public key's SubjectPublicKeyInfo."""
    spki = public_key.public_bytes(  # type: ignore[attr-defined]
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    digest = hashes.Hash(hashes.SHA256())
    digest.update(spki)
    return digest.finalize().hex()


def encode_group_extension(groups: Iterable[str]) -> bytes:
    """DER-encode group names as a SEQUENCE OF UTF8String."""
    return _GroupList([asn1.UTF8String(group) for group in groups]).dump()


def decode_group_extension(value: bytes) -> list[str]:
    """Decode a group extension value back into group names."""
    return [item.native for item in _GroupList.load(value)]


def encode_username_extension(username: str) -> bytes:
    """DER-encode a username as a UTF8String."""
    return asn1.UTF8String(username).dump()


def normalize_serial_number(value: str) -> str:
    """Canonical lowercase hex of a serial that certificates and CRLs can carry.

    Leading zeros are dropped. Zero, negative and over-long values are rejected.
    """
    if not _HEX_PATTERN.fullmatch(value):
        raise InvalidInputError("Serial number must be hexadecimal.", "invalid_serial")
    serial = int(value, 16)
    if serial <= 0 or serial.bit_length() > MAX_SERIAL_NUMBER_BITS:
        raise InvalidInputError(
            f"Serial number must be positive and at most {MAX_SERIAL_NUMBER_BITS} bits.",
            "invalid_serial",
        )
    return format(serial, "x")


def _generate_serial_number() -> int:
    while True:
        serial = int.from_bytes(secrets.token_bytes(SERIAL_NUMBER_BYTES), "big")
        # X.509 serials must be positive and fit in 20 octets.
        serial >>= 1
        if serial:
            return serial


class CertificateAuthority:
    """Owns the CA key and performs every signing operation."""

    def __init__(
        self,
        certificate: x509.Certificate,
        private_key: rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey,
        settings: CASettings,
    ) -> None:
        self._certificate = certificate
        self._private_key = private_key
        self._settings = settings
        self._group_oid = x509.ObjectIdentifier(settings.group_extension_oid)
        self._username_oid = x509.ObjectIdentifier(settings.username_extension_oid)

    @classmethod
    def load(cls, settings: CASettings) -> CertificateAuthority:
        """Load CA material from disk, failing fast on any problem."""
        try:
            cert_bytes = settings.cert_path.read_bytes()
            key_bytes = settings.key_path.read_bytes()
        except OSError as exc:
            raise CAConfigurationError(
                f"CA material is unreadable: {exc.strerror or type(exc).__name__}."
            ) from None

        try:
            certificate = x509.load_pem_x509_certificate(cert_bytes)
        except ValueError:
            raise CAConfigurationError("CA certificate is not a valid PEM certificate.") from None

        passphrase = (
            settings.key_passphrase.get_secret_value().encode("utf-8")
            if settings.key_passphrase is not None
            else None
        )
        try:
            private_key = serialization.load_pem_private_key(key_bytes, password=passphrase)
        except (TypeError, ValueError, UnsupportedAlgorithm):
            raise CAConfigurationError(
                "CA private key could not be loaded; check the key file and passphrase."
            ) from None

        if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
            raise CAConfigurationError("CA private key must be RSA or EC.")
        if public_key_fingerprint(private_key.public_key()) != public_key_fingerprint(
            certificate.public_key()
        ):
            raise CAConfigurationError("CA private key does not match the CA certificate.")

        logger.info(
            "ca_loaded",
            ca_subject=certificate.subject.rfc4514_string(),
            ca_serial_number=format(certificate.serial_number, "x"),
            ca_not_after=certificate.not_valid_after_utc.isoformat(),
        )
        return cls(certificate=certificate, private_key=private_key, settings=settings)

    @property
    def certificate(self) -> x509.Certificate:
        """The CA certificate."""
        return self._certificate

    @property
    def certificate_pem(self) -> str:
        """PEM encoding of the CA certificate."""
        return self._certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def parse_csr(self, csr_pem: str) -> x509.CertificateSigningRequest:
        """Parse a CSR, verify proof of possession and the key policy."""
        try:
            csr = x509.load_pem_x509_csr(csr_pem.encode("utf-8"))
        except (ValueError, UnicodeEncodeError):
            raise InvalidInputError(
                "CSR is not a valid PEM certificate request.", "invalid_csr"
            ) from None
        try:
            public_key = csr.public_key()
        except (ValueError, UnsupportedAlgorithm):
            raise InvalidInputError("CSR public key could not be parsed.", "invalid_csr") from None
        try:
            signature_valid = csr.is_signature_valid
        except (InvalidSignature, UnsupportedAlgorithm, ValueError):
            signature_valid = False
        if not signature_valid:
            raise InvalidInputError("CSR signature is invalid.", "invalid_csr")

        if isinstance(public_key, rsa.RSAPublicKey):
            if public_key.key_size < self._settings.min_rsa_key_size:
                raise InvalidInputError(
                    f"RSA keys must be at least {self._settings.min_rsa_key_size} bits.",
                    "invalid_csr",
                )
        elif not isinstance(
            public_key,
            (ec.EllipticCurvePublicKey, ed25519.Ed25519PublicKey, ed448.Ed448PublicKey),
        ):
            raise InvalidInputError("CSR key type is not supported.", "invalid_csr")
        return csr

    def sign(
        self,
        csr_pem: str,
        identity: SubjectIdentity,
        groups: Sequence[str],
        now: datetime | None = None,
    ) -> IssuedCertificate:
        """Sign a client certificate for a verified identity."""
        csr = self.parse_csr(csr_pem)
        public_key = csr.public_key()
        issued_at = (now or datetime.now(UTC)).replace(microsecond=0)
        not_after = issued_at + timedelta(days=self._settings.cert_validity_days)
        serial = _generate_serial_number()
        group_names = tuple(dict.fromkeys(groups))

        builder = (
            x509.CertificateBuilder()
            .subject_name(self._subject_name(identity))
            .issuer_name(self._certificate.subject)
            .public_key(public_key)
            .serial_number(serial)
            .not_valid_before(issued_at)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=True,
                    key_encipherment=True,
                    data_encipherment=True,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=False,
            )
            .add_extension(
                x509.SubjectAlternativeName([x509.RFC822Name(identity.email)]),
                critical=False,
            )
            .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(self._private_key.public_key()),
                critical=False,
            )
            .add_extension(
                x509.UnrecognizedExtension(self._group_oid, encode_group_extension(group_names)),
                critical=False,
            )
            .add_extension(
                x509.UnrecognizedExtension(
                    self._username_oid, encode_username_extension(identity.username)
                ),
                critical=False,
            )
        )

        try:
            certificate = builder.sign(private_key=self._private_key, algorithm=hashes.SHA256())
        except (TypeError, ValueError, UnsupportedAlgorithm) as exc:
            logger.error(
                "certificate_signing_failed",
                username=identity.username,
                error_type=type(exc).__name__,
            )
            raise InternalError("Certificate signing failed.") from None

        return IssuedCertificate(
            certificate_pem=certificate.public_bytes(serialization.Encoding.PEM).decode("ascii"),
            serial_number=format(serial, "x"),
            fingerprint=public_key_fingerprint(public_key),
            common_name=identity.username,
            email=identity.email,
            not_before=issued_at,
            not_after=not_after,
            groups=group_names,
        )

    def build_crl(self, revoked: Iterable[RevokedEntry], now: datetime | None = None) -> str:
        """Build a PEM CRL of revoked certificates; unencodable serials are logged and skipped."""
        issued_at = (now or datetime.now(UTC)).replace(microsecond=0)
        builder = (
            x509.CertificateRevocationListBuilder()
            .issuer_name(self._certificate.subject)
            .last_update(issued_at)
            .next_update(issued_at + timedelta(hours=self._settings.crl_validity_hours))
        )
        for entry in revoked:
            try:
                revoked_certificate = (
                    x509.RevokedCertificateBuilder()
                    .serial_number(int(normalize_serial_number(entry.serial_number), 16))
                    .revocation_date(entry.revoked_at)
                    .build()
                )
            except (InvalidInputError, ValueError):
                logger.warning("crl_entry_skipped", serial_number=entry.serial_number)
                continue
            builder = builder.add_revoked_certificate(revoked_certificate)
        crl = builder.sign(private_key=self._private_key, algorithm=hashes.SHA256())
        return crl.public_bytes(serialization.Encoding.PEM).decode("ascii")

    def _subject_name(self, identity: SubjectIdentity) -> x509.Name:
        attributes = [x509.NameAttribute(NameOID.COMMON_NAME, identity.username)]
        optional_fields = (
            (NameOID.ORGANIZATION_NAME, self._settings.subject_o),
            (NameOID.ORGANIZATIONAL_UNIT_NAME, self._settings.subject_ou),
            (NameOID.LOCALITY_NAME, self._settings.subject_l),
            (NameOID.STATE_OR_PROVINCE_NAME, self._settings.subject_st),
            (NameOID.COUNTRY_NAME, self._settings.subject_c),
        )
        attributes.extend(x509.NameAttribute(oid, value) for oid, value in optional_fields if value)
        attributes.append(x509.NameAttribute(NameOID.EMAIL_ADDRESS, identity.email))
        return x509.Name(attributes)


@lru_cache
def get_certificate_authority() -> CertificateAuthority:
    """Load and cache the process-wide CA signer."""
    return CertificateAuthority.load(get_settings().ca)
