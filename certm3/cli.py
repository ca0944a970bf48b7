"""CLI entrypoints for certm3 operational tasks."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence

from certm3.config import configure_structlog, get_settings
from certm3.core.ca import CAConfigurationError, RevokedEntry, get_certificate_authority
from certm3.db.session import dispose_engine, get_session_factory
from certm3.services.certificate_service import get_certificate_service


def _run_check_ca() -> int:
    """Load the CA material and describe it."""
    try:
        certificate = get_certificate_authority().certificate
    except CAConfigurationError as exc:
        print(json.dumps({"ok": False, "error": str(exc)}), file=sys.stderr)
        return 1

    print(
        json.dumps(
            {
                "ok": True,
                "subject": certificate.subject.rfc4514_string(),
                "serial_number": format(certificate.serial_number, "x"),
                "not_before": certificate.not_valid_before_utc.isoformat(),
                "not_after": certificate.not_valid_after_utc.isoformat(),
            }
        )
    )
    return 0


async def _run_export_crl() -> int:
    """Print the current CRL as PEM."""
    try:
        certificate_authority = get_certificate_authority()
    except CAConfigurationError as exc:
        print(json.dumps({"ok": False, "error": str(exc)}), file=sys.stderr)
        return 1

    session_factory = get_session_factory()
    try:
        async with session_factory() as db_session:
            revoked = await get_certificate_service().list_revoked(db_session)
    finally:
        await dispose_engine()

    entries = [
        RevokedEntry(serial_number=item.serial_number, revoked_at=item.revoked_at)
        for item in revoked
        if item.revoked_at is not None
    ]
    sys.stdout.write(certificate_authority.build_crl(entries))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    """Build command-line parser for supported operational commands."""
    parser = argparse.ArgumentParser(prog="certm3")
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("check-ca", help="Load the CA certificate and key and describe them.")
    subcommands.add_parser("export-crl", help="Print the current certificate revocation list.")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run CLI command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_structlog(get_settings(), log_file=sys.stderr)
    if args.command == "check-ca":
        return _run_check_ca()
    if args.command == "export-crl":
        return asyncio.run(_run_export_crl())
    parser.error("Unsupported command")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
