"""Pre-flight check for the relay's Daraja configuration.

``check`` loads the settings from an env file and refuses missing credentials
and Daraja portal placeholders (``your_...``). ``record`` and ``verify`` also
pin the env file to a SHA-256 baseline so credential edits are noticed before
a restart::

    python -m scripts.check_env check --env-file /srv/relay/.env
    python -m scripts.check_env record --env-file /srv/relay/.env --hash-file /srv/relay/.env.sha256
    python -m scripts.check_env verify --env-file /srv/relay/.env --hash-file /srv/relay/.env.sha256
"""

from __future__ import annotations

import argparse
import hashlib
import sys
from pathlib import Path

from pydantic import ValidationError

from mpesa_relay.core.config import AppSettings, MpesaSettings

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_CHECKSUM_ERROR = 3
EXIT_RUNTIME_ERROR = 5

PLACEHOLDER_MARKER = "your_"
SIGNING_CREDENTIALS = {
    "MPESA_CONSUMER_KEY": "consumer_key",
    "MPESA_CONSUMER_SECRET": "consumer_secret",
    "MPESA_SHORTCODE": "short_code",
    "MPESA_PASSKEY": "pass_key",
}


class PlaceholderCredentialError(Exception):
    """Raised when a credential still carries a Daraja portal placeholder."""


def load_settings(env_file: Path) -> AppSettings:
    """Build settings from ``env_file`` alone, ignoring the default ``.env``."""
    mpesa = MpesaSettings(_env_file=str(env_file))  # type: ignore[call-arg]
    placeholders = [
        env_name
        for env_name, field_name in SIGNING_CREDENTIALS.items()
        if PLACEHOLDER_MARKER in getattr(mpesa, field_name)
    ]
    if placeholders:
        raise PlaceholderCredentialError(
            "Placeholder values detected for: " + ", ".join(placeholders)
        )
    return AppSettings(_env_file=str(env_file), mpesa=mpesa)  # type: ignore[call-arg]


def _digest(env_file: Path) -> str:
    return hashlib.sha256(env_file.read_bytes()).hexdigest()


def run_check(settings: AppSettings, args: argparse.Namespace) -> int:
    mpesa = settings.mpesa
    print(
        f"Settings OK: environment={mpesa.environment} base_url={mpesa.base_url} "
        f"callbacks={mpesa.callback_base_url}"
    )
    if not mpesa.initiator_name or not mpesa.security_credential:
        print("Warning: B2C initiator credentials are not set; payouts will fail.")
    return EXIT_OK


def run_record(settings: AppSettings, args: argparse.Namespace) -> int:
    digest = _digest(args.env_file)
    args.hash_file.write_text(f"{digest}\n", encoding="utf-8")
    print(f"Baseline {digest} written to {args.hash_file}")
    return EXIT_OK


def run_verify(settings: AppSettings, args: argparse.Namespace) -> int:
    if not args.hash_file.exists():
        print(
            f"No baseline at {args.hash_file}; run 'record' first.", file=sys.stderr
        )
        return EXIT_RUNTIME_ERROR

    expected = args.hash_file.read_text(encoding="utf-8").strip()
    actual = _digest(args.env_file)
    if expected != actual:
        print(
            f"{args.env_file} changed since the baseline was recorded "
            f"(expected {expected}, found {actual}).",
            file=sys.stderr,
        )
        return EXIT_CHECKSUM_ERROR
    print("Environment checksum OK.")
    return EXIT_OK


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Validate M-Pesa relay settings and detect .env drift."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, handler, needs_baseline in (
        ("check", run_check, False),
        ("record", run_record, True),
        ("verify", run_verify, True),
    ):
        subparser = subparsers.add_parser(name)
        subparser.add_argument("--env-file", type=Path, default=Path(".env"))
        if needs_baseline:
            subparser.add_argument("--hash-file", type=Path, required=True)
        subparser.set_defaults(handler=handler)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    if not args.env_file.exists():
        print(f"Environment file {args.env_file} does not exist.", file=sys.stderr)
        return EXIT_RUNTIME_ERROR

    try:
        settings = load_settings(args.env_file)
    except ValidationError as exc:
        print(f"Settings validation failed:\n{exc}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR
    except PlaceholderCredentialError as exc:
        print(f"Settings validation failed. {exc}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR

    return args.handler(settings, args)


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
