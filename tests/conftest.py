"""Shared test fixtures for aumai-bundleseal."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import keyring
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from keyring.backend import KeyringBackend

from aumai_bundleseal.certificates import CertificateIssuer, KeyPair
from aumai_bundleseal.keys import KeyProvider
from aumai_bundleseal.models import DeveloperIdentity

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class StaticKeyProvider(KeyProvider):
    """Key provider returning fixed material."""

    def __init__(
        self, private_key: rsa.RSAPrivateKey, chain: list[x509.Certificate]
    ) -> None:
        self._private_key = private_key
        self._chain = chain

    def get_private_key(self) -> rsa.RSAPrivateKey:
        return self._private_key

    def get_certificate_chain(self) -> list[x509.Certificate]:
        return list(self._chain)


class FailingKeyProvider(KeyProvider):
    """Key provider whose every call fails."""

    def __init__(self, message: str = "backend unavailable") -> None:
        self.message = message
        self.calls = 0

    def get_private_key(self) -> rsa.RSAPrivateKey:
        self.calls += 1
        raise RuntimeError(self.message)

    def get_certificate_chain(self) -> list[x509.Certificate]:
        self.calls += 1
        raise RuntimeError(self.message)


class InMemoryKeyring(KeyringBackend):
    """Keyring backend holding passwords in a dict."""

    priority = 1  # type: ignore[assignment]

    def __init__(self) -> None:
        super().__init__()
        self.entries: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.entries.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.entries[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        self.entries.pop((service, username), None)


def private_key_pem(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def private_key_der(private_key: rsa.RSAPrivateKey) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def public_key_der(public_key: rsa.RSAPublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def certificate_pem(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.PEM)


# ---------------------------------------------------------------------------
# Identities, keys and certificates
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def issuer() -> CertificateIssuer:
    """A shared CertificateIssuer (stateless, safe to share)."""
    return CertificateIssuer()


@pytest.fixture(scope="session")
def identity() -> DeveloperIdentity:
    return DeveloperIdentity(
        name="Jane Developer",
        organization="Acme Apps",
        city="Vancouver",
        country_code="CA",
        identity_url="https://acme.example/jane",
    )


@pytest.fixture(scope="session")
def signing_key_pair(issuer: CertificateIssuer) -> KeyPair:
    """The RSA-4096 publisher key."""
    return issuer.generate_key_pair(4096)


@pytest.fixture(scope="session")
def signing_certificate(
    issuer: CertificateIssuer,
    identity: DeveloperIdentity,
    signing_key_pair: KeyPair,
) -> x509.Certificate:
    return issuer.issue_self_signed(identity, signing_key_pair)


@pytest.fixture(scope="session")
def other_key_pair(issuer: CertificateIssuer) -> KeyPair:
    return issuer.generate_key_pair(2048)


@pytest.fixture(scope="session")
def other_certificate(
    issuer: CertificateIssuer, other_key_pair: KeyPair
) -> x509.Certificate:
    return issuer.issue_self_signed(DeveloperIdentity(name="Mallory"), other_key_pair)


@pytest.fixture(scope="session")
def ca_key_pair(issuer: CertificateIssuer) -> KeyPair:
    return issuer.generate_key_pair(2048)


@pytest.fixture(scope="session")
def ca_certificate(
    issuer: CertificateIssuer, ca_key_pair: KeyPair
) -> x509.Certificate:
    return issuer.issue_self_signed(
        DeveloperIdentity(name="Acme Root CA", organization="Acme Apps"),
        ca_key_pair,
        ca=True,
    )


@pytest.fixture(scope="session")
def ca_issued_key_pair(issuer: CertificateIssuer) -> KeyPair:
    return issuer.generate_key_pair(2048)


@pytest.fixture(scope="session")
def ca_issued_certificate(
    issuer: CertificateIssuer,
    identity: DeveloperIdentity,
    ca_issued_key_pair: KeyPair,
    ca_key_pair: KeyPair,
    ca_certificate: x509.Certificate,
) -> x509.Certificate:
    return issuer.issue_certificate(
        identity,
        ca_issued_key_pair.public_key,
        ca_key_pair.private_key,
        ca_certificate,
    )


@pytest.fixture()
def key_provider(
    signing_key_pair: KeyPair, signing_certificate: x509.Certificate
) -> StaticKeyProvider:
    return StaticKeyProvider(signing_key_pair.private_key, [signing_certificate])


# ---------------------------------------------------------------------------
# Bundle directories
# ---------------------------------------------------------------------------


@pytest.fixture()
def bundle_dir(tmp_path: Path) -> Path:
    """A small bundle.

    Structure:
        a.txt       "hello"
        sub/
            b.txt   "world"
    """
    bundle = tmp_path / "bundle"
    (bundle / "sub").mkdir(parents=True)
    (bundle / "a.txt").write_text("hello", encoding="utf-8")
    (bundle / "sub" / "b.txt").write_text("world", encoding="utf-8")
    return bundle


# ---------------------------------------------------------------------------
# Keyring
# ---------------------------------------------------------------------------


@pytest.fixture()
def memory_keyring() -> Iterator[InMemoryKeyring]:
    """Install an in-memory keyring backend for the duration of a test."""
    previous = keyring.get_keyring()
    backend = InMemoryKeyring()
    keyring.set_keyring(backend)
    try:
        yield backend
    finally:
        keyring.set_keyring(previous)
