"""Tests for the environment drift detection script."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from scripts import check_env

REQUIRED_ENV_KEYS = [
    "MPESA_CONSUMER_KEY",
    "MPESA_CONSUMER_SECRET",
    "MPESA_SHORTCODE",
    "MPESA_PASSKEY",
]


def _write_env(env_path: Path, **values: str) -> None:
    contents = "\n".join(f"{key}={value}" for key, value in values.items())
    env_path.write_text(contents + "\n", encoding="utf-8")


def _clear_required_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in REQUIRED_ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


@pytest.mark.parametrize("command", ["record", "verify", "check"])
def test_main_requires_existing_env_file(tmp_path: Path, command: str) -> None:
    env_file = tmp_path / ".missing-env"
    hash_file = tmp_path / ".env.sha256"

    argv = [command, "--env-file", str(env_file)]
    if command != "check":
        argv.extend(["--hash-file", str(hash_file)])

    exit_code = check_env.main(argv)
    assert exit_code == check_env.EXIT_RUNTIME_ERROR


def test_record_and_verify_detects_mismatched_checksum(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / ".env"
    hash_file = tmp_path / ".env.sha256"

    _clear_required_env(monkeypatch)
    _write_env(
        env_file,
        MPESA_CONSUMER_KEY="abc",
        MPESA_CONSUMER_SECRET="secret",
        MPESA_SHORTCODE="174379",
        MPESA_PASSKEY="passkey",
    )

    exit_code = check_env.main(
        [
            "record",
            "--env-file",
            str(env_file),
            "--hash-file",
            str(hash_file),
        ]
    )
    assert exit_code == check_env.EXIT_OK
    baseline = hash_file.read_text(encoding="utf-8").strip()
    assert baseline

    _clear_required_env(monkeypatch)
    exit_code = check_env.main(
        [
            "verify",
            "--env-file",
            str(env_file),
            "--hash-file",
            str(hash_file),
        ]
    )
    assert exit_code == check_env.EXIT_OK

    _write_env(
        env_file,
        MPESA_CONSUMER_KEY="abc",
        MPESA_CONSUMER_SECRET="different",
        MPESA_SHORTCODE="174379",
        MPESA_PASSKEY="passkey",
    )

    _clear_required_env(monkeypatch)
    exit_code = check_env.main(
        [
            "verify",
            "--env-file",
            str(env_file),
            "--hash-file",
            str(hash_file),
        ]
    )
    assert exit_code == check_env.EXIT_CHECKSUM_ERROR


def test_validation_failure_for_missing_required_values(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / ".env"
    hash_file = tmp_path / ".env.sha256"

    _clear_required_env(monkeypatch)
    _write_env(
        env_file,
        MPESA_CONSUMER_KEY="abc",
        MPESA_SHORTCODE="174379",
        MPESA_PASSKEY="passkey",
    )

    exit_code = check_env.main(
        [
            "record",
            "--env-file",
            str(env_file),
            "--hash-file",
            str(hash_file),
        ]
    )
    assert exit_code == check_env.EXIT_VALIDATION_ERROR
    assert not hash_file.exists()


def test_placeholder_credentials_fail_validation(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    env_file = tmp_path / ".env"

    _clear_required_env(monkeypatch)
    _write_env(
        env_file,
        MPESA_CONSUMER_KEY="your_consumer_key",
        MPESA_CONSUMER_SECRET="secret",
        MPESA_SHORTCODE="174379",
        MPESA_PASSKEY="your_passkey",
    )

    exit_code = check_env.main(["check", "--env-file", str(env_file)])

    assert exit_code == check_env.EXIT_VALIDATION_ERROR
    err = capsys.readouterr().err
    assert "MPESA_CONSUMER_KEY" in err
    assert "MPESA_PASSKEY" in err


def test_check_warns_when_initiator_is_missing(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture
) -> None:
    env_file = tmp_path / ".env"

    _clear_required_env(monkeypatch)
    monkeypatch.delenv("MPESA_INITIATOR_NAME", raising=False)
    monkeypatch.delenv("MPESA_SECURITY_CREDENTIAL", raising=False)
    _write_env(
        env_file,
        MPESA_CONSUMER_KEY="abc",
        MPESA_CONSUMER_SECRET="secret",
        MPESA_SHORTCODE="174379",
        MPESA_PASSKEY="passkey",
    )

    exit_code = check_env.main(["check", "--env-file", str(env_file)])

    assert exit_code == check_env.EXIT_OK
    out = capsys.readouterr().out
    assert "environment=sandbox" in out
    assert "payouts will fail" in out


def test_env_file_values_do_not_leak_into_process_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / ".env"

    _clear_required_env(monkeypatch)
    _write_env(
        env_file,
        MPESA_CONSUMER_KEY="abc",
        MPESA_CONSUMER_SECRET="secret",
        MPESA_SHORTCODE="600000",
        MPESA_PASSKEY="passkey",
    )

    settings = check_env.load_settings(env_file)

    assert settings.mpesa.short_code == "600000"
    assert "MPESA_CONSUMER_KEY" not in os.environ
