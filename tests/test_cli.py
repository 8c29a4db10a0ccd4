"""Tests for aumai_bundleseal.cli: Click command group."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner
from cryptography import x509

from aumai_bundleseal.certificates import KeyPair, certificate_to_pem
from aumai_bundleseal.cli import main
from aumai_bundleseal.models import (
    CERTIFICATE_FILENAME,
    MANIFEST_FILENAME,
    MANIFEST_SIGNATURE_FILENAME,
)

from conftest import private_key_pem

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep key material from the developer's environment out of the CLI."""
    for name in (
        "JDEPLOY_PRIVATE_KEY",
        "JDEPLOY_PUBLIC_KEY",
        "JDEPLOY_CERTIFICATE",
        "JDEPLOY_ROOT_CERTIFICATE",
        "JDEPLOY_DEVELOPER_ID",
        "JDEPLOY_KEYSTORE_PASSWORD",
        "JDEPLOY_WORKERS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("JDEPLOY_KEYSTORE_PATH", str(tmp_path / "no-keystore.p12"))


@pytest.fixture()
def key_files(
    tmp_path: Path,
    signing_key_pair: KeyPair,
    signing_certificate: x509.Certificate,
) -> tuple[Path, Path]:
    """Write the signing key and certificate. Return (private, certificate) paths."""
    keys_dir = tmp_path / "keys"
    keys_dir.mkdir()
    private_file = keys_dir / "private.pem"
    cert_file = keys_dir / "certificate.pem"
    private_file.write_bytes(private_key_pem(signing_key_pair.private_key))
    cert_file.write_text(certificate_to_pem(signing_certificate), encoding="ascii")
    return private_file, cert_file


def _sign(bundle: Path, key_files: tuple[Path, Path], version: str = "1.0.0"):
    private_file, cert_file = key_files
    return CliRunner().invoke(
        main,
        [
            "sign", str(bundle),
            "--version", version,
            "--key", str(private_file),
            "--certificate", str(cert_file),
        ],
    )


# ===========================================================================
# Global --version flag
# ===========================================================================


class TestCliVersion:
    def test_version_flag_exits_zero(self) -> None:
        runner = CliRunner()
        with patch("importlib.metadata.version", return_value="0.1.0"):
            result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0

    def test_version_flag_reports_0_1_0(self) -> None:
        runner = CliRunner()
        with patch("importlib.metadata.version", return_value="0.1.0"):
            result = runner.invoke(main, ["--version"])
        assert "0.1.0" in result.output

    def test_help_shows_subcommands(self) -> None:
        result = CliRunner().invoke(main, ["--help"])
        assert result.exit_code == 0
        for cmd in ("keygen", "sign", "verify", "inspect"):
            assert cmd in result.output


# ===========================================================================
# keygen command
# ===========================================================================


class TestKeygenCommand:
    def test_keygen_writes_key_material(self, tmp_path: Path) -> None:
        keys_dir = tmp_path / "out"
        result = CliRunner().invoke(
            main,
            ["keygen", "--output", str(keys_dir), "--name", "Jane", "--key-size", "2048"],
        )
        assert result.exit_code == 0, result.output
        for name in ("private.pem", "public.pem", "certificate.pem"):
            assert (keys_dir / name).exists()

    def test_keygen_reports_subject(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main,
            [
                "keygen", "--output", str(tmp_path / "out"),
                "--name", "Jane", "--organization", "Acme", "--country", "FR",
                "--key-size", "2048",
            ],
        )
        assert "CN=Jane,O=Acme,C=FR" in result.output

    def test_keygen_certificate_loads(self, tmp_path: Path) -> None:
        keys_dir = tmp_path / "out"
        CliRunner().invoke(
            main,
            ["keygen", "--output", str(keys_dir), "--name", "Jane", "--key-size", "2048"],
        )
        cert = x509.load_pem_x509_certificate((keys_dir / "certificate.pem").read_bytes())
        assert cert.subject.rfc4514_string() == "CN=Jane"

    def test_keygen_requires_name(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(main, ["keygen", "--output", str(tmp_path / "out")])
        assert result.exit_code != 0

    def test_keygen_keystore_requires_password(self, tmp_path: Path) -> None:
        result = CliRunner().invoke(
            main,
            [
                "keygen", "--output", str(tmp_path / "out"), "--name", "Jane",
                "--keystore", str(tmp_path / "ks.p12"),
            ],
        )
        assert result.exit_code != 0

    def test_keygen_keystore_then_sign(self, tmp_path: Path, bundle_dir: Path) -> None:
        keystore = tmp_path / "ks.p12"
        runner = CliRunner()
        result = runner.invoke(
            main,
            [
                "keygen", "--output", str(tmp_path / "out"), "--name", "Jane",
                "--key-size", "2048", "--keystore", str(keystore),
                "--alias", "jane", "--password", "secret",
            ],
        )
        assert result.exit_code == 0, result.output
        assert keystore.exists()

        result = runner.invoke(
            main,
            [
                "sign", str(bundle_dir), "--version", "1.0.0",
                "--keystore", str(keystore), "--alias", "jane", "--password", "secret",
            ],
        )
        assert result.exit_code == 0, result.output
        assert (bundle_dir / MANIFEST_FILENAME).exists()


# ===========================================================================
# sign command
# ===========================================================================


class TestSignCommand:
    def test_sign_exits_zero(self, bundle_dir: Path, key_files: tuple[Path, Path]) -> None:
        result = _sign(bundle_dir, key_files)
        assert result.exit_code == 0, result.output

    def test_sign_writes_artifacts(
        self, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        _sign(bundle_dir, key_files)
        for name in (MANIFEST_FILENAME, MANIFEST_SIGNATURE_FILENAME, CERTIFICATE_FILENAME):
            assert (bundle_dir / name).exists()

    def test_sign_reports_file_count(
        self, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        result = _sign(bundle_dir, key_files)
        assert "Files  : 2" in result.output

    def test_sign_with_workers(
        self, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        private_file, cert_file = key_files
        result = CliRunner().invoke(
            main,
            [
                "sign", str(bundle_dir), "--version", "1.0.0",
                "--key", str(private_file), "--certificate", str(cert_file),
                "--workers", "1",
            ],
        )
        assert result.exit_code == 0, result.output

    def test_sign_from_environment(
        self,
        monkeypatch: pytest.MonkeyPatch,
        bundle_dir: Path,
        key_files: tuple[Path, Path],
    ) -> None:
        private_file, cert_file = key_files
        monkeypatch.setenv("JDEPLOY_PRIVATE_KEY", str(private_file))
        monkeypatch.setenv("JDEPLOY_CERTIFICATE", str(cert_file))
        result = CliRunner().invoke(main, ["sign", str(bundle_dir), "--version", "1.0.0"])
        assert result.exit_code == 0, result.output

    def test_sign_without_key_material_fails(self, bundle_dir: Path) -> None:
        result = CliRunner().invoke(main, ["sign", str(bundle_dir), "--version", "1.0.0"])
        assert result.exit_code == 1
        assert "Error" in result.output
        assert not (bundle_dir / MANIFEST_FILENAME).exists()

    def test_sign_key_requires_certificate(
        self, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        private_file, _ = key_files
        result = CliRunner().invoke(
            main,
            ["sign", str(bundle_dir), "--version", "1.0.0", "--key", str(private_file)],
        )
        assert result.exit_code != 0

    def test_sign_missing_bundle(self, tmp_path: Path, key_files: tuple[Path, Path]) -> None:
        result = _sign(tmp_path / "nope", key_files)
        assert result.exit_code != 0


# ===========================================================================
# verify command
# ===========================================================================


class TestVerifyCommand:
    def test_verify_signed_bundle(
        self, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        _sign(bundle_dir, key_files)
        result = CliRunner().invoke(
            main,
            ["verify", str(bundle_dir), "--version", "1.0.0", "--trusted", str(key_files[1])],
        )
        assert result.exit_code == 0, result.output
        assert "Package verified successfully" in result.output

    def test_verify_wrong_version_exits_92(
        self, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        _sign(bundle_dir, key_files)
        result = CliRunner().invoke(
            main,
            ["verify", str(bundle_dir), "--version", "1.0.1", "--trusted", str(key_files[1])],
        )
        assert result.exit_code == 92
        assert "SIGNATURE_MISMATCH" in result.output

    def test_verify_unsigned_exits_91(
        self, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        result = CliRunner().invoke(
            main,
            ["verify", str(bundle_dir), "--version", "1.0.0", "--trusted", str(key_files[1])],
        )
        assert result.exit_code == 91
        assert "The package is not signed" in result.output

    def test_verify_untrusted_exits_93(
        self,
        tmp_path: Path,
        bundle_dir: Path,
        key_files: tuple[Path, Path],
        other_certificate: x509.Certificate,
    ) -> None:
        _sign(bundle_dir, key_files)
        other = tmp_path / "other.pem"
        other.write_text(certificate_to_pem(other_certificate), encoding="ascii")
        result = CliRunner().invoke(
            main,
            ["verify", str(bundle_dir), "--version", "1.0.0", "--trusted", str(other)],
        )
        assert result.exit_code == 93

    def test_verify_bad_trusted_source_exits_1(
        self, tmp_path: Path, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        _sign(bundle_dir, key_files)
        result = CliRunner().invoke(
            main,
            [
                "verify", str(bundle_dir), "--version", "1.0.0",
                "--trusted", str(tmp_path / "missing.pem"),
            ],
        )
        assert result.exit_code == 1
        assert "Package verification failed" in result.output


# ===========================================================================
# inspect command
# ===========================================================================


class TestInspectCommand:
    def test_inspect_shows_signer_and_files(
        self, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        _sign(bundle_dir, key_files)
        result = CliRunner().invoke(main, ["inspect", str(bundle_dir)])
        assert result.exit_code == 0, result.output
        assert "CN=Jane Developer" in result.output
        assert "Chain length : 1" in result.output
        assert "a.txt" in result.output
        assert "sub/b.txt" in result.output

    def test_inspect_json_output(
        self, bundle_dir: Path, key_files: tuple[Path, Path]
    ) -> None:
        _sign(bundle_dir, key_files)
        result = CliRunner().invoke(main, ["inspect", str(bundle_dir), "--json-output"])
        parsed = json.loads(result.output)
        assert "timestamp" in parsed
        assert set(parsed["a.txt"]) == {"hash", "signature"}

    def test_inspect_unsigned_bundle_fails(self, bundle_dir: Path) -> None:
        result = CliRunner().invoke(main, ["inspect", str(bundle_dir)])
        assert result.exit_code == 1
