"""Key pair generation, certificate issuance and certificate encoding."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from aumai_bundleseal.errors import CertificateChainError
from aumai_bundleseal.models import DeveloperIdentity

logger = logging.getLogger(__name__)

DEFAULT_KEY_SIZE = 4096
DEFAULT_NOT_BEFORE = datetime(2000, 1, 1, tzinfo=UTC)
DEFAULT_NOT_AFTER = datetime(3000, 1, 1, tzinfo=UTC)

_PEM_MARKER = b"-----BEGIN"
_DER_SEQUENCE_TAG = 0x30


# ---------------------------------------------------------------------------
# Key pairs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeyPair:
    """An RSA key pair owned by whichever provider produced it."""

    private_key: rsa.RSAPrivateKey
    public_key: rsa.RSAPublicKey

    @classmethod
    def from_private_key(cls, private_key: rsa.RSAPrivateKey) -> KeyPair:
        return cls(private_key=private_key, public_key=private_key.public_key())


def build_subject(identity: DeveloperIdentity) -> x509.Name:
    """Build the X.500 name matching :meth:`DeveloperIdentity.subject_string`."""
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, identity.name)]
    if identity.organization is not None:
        attributes.append(
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, identity.organization)
        )
    if identity.city is not None:
        attributes.append(x509.NameAttribute(NameOID.LOCALITY_NAME, identity.city))
    if identity.country_code is not None:
        attributes.append(
            x509.NameAttribute(NameOID.COUNTRY_NAME, identity.country_code)
        )
    return x509.Name(attributes)


# ---------------------------------------------------------------------------
# CertificateIssuer
# ---------------------------------------------------------------------------


class CertificateIssuer:
    """Generate RSA key pairs and issue X.509 certificates for identities."""

    def generate_key_pair(self, key_size: int = DEFAULT_KEY_SIZE) -> KeyPair:
        """Generate a fresh RSA key pair (4096 bits unless told otherwise)."""
        private_key = rsa.generate_private_key(
            public_exponent=65537, key_size=key_size
        )
        return KeyPair.from_private_key(private_key)

    def issue_self_signed(
        self,
        identity: DeveloperIdentity,
        key_pair: KeyPair,
        not_before: datetime = DEFAULT_NOT_BEFORE,
        not_after: datetime = DEFAULT_NOT_AFTER,
        ca: bool = False,
        path_length: int | None = None,
    ) -> x509.Certificate:
        """Issue a self-signed SHA256withRSA certificate for *identity*.

        The default validity window (2000 to 3000) never expires in practice;
        freshness comes from binding signatures to a release version instead.
        Pass ``ca=True`` to mark the certificate as a root that can issue
        signing certificates via :meth:`issue_certificate`, and *path_length* to
        cap the number of intermediate CAs beneath it.
        """
        name = build_subject(identity)
        builder = (
            x509.CertificateBuilder()
            .serial_number(x509.random_serial_number())
            .issuer_name(name)
            .subject_name(name)
            .public_key(key_pair.public_key)
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(
                    ca=ca, path_length=path_length if ca else None
                ),
                critical=True,
            )
        )
        certificate = builder.sign(
            private_key=key_pair.private_key, algorithm=hashes.SHA256()
        )
        logger.debug("Issued self-signed certificate for %s", identity.subject_string())
        return certificate

    def issue_certificate(
        self,
        identity: DeveloperIdentity,
        public_key: rsa.RSAPublicKey,
        issuer_key: rsa.RSAPrivateKey,
        issuer_certificate: x509.Certificate,
        not_before: datetime | None = None,
        not_after: datetime | None = None,
        ca: bool = False,
        path_length: int | None = None,
    ) -> x509.Certificate:
        """Issue a certificate for *public_key* signed by an issuing CA.

        The validity window defaults to the issuer's own window.
        """
        builder = (
            x509.CertificateBuilder()
            .serial_number(x509.random_serial_number())
            .issuer_name(issuer_certificate.subject)
            .subject_name(build_subject(identity))
            .public_key(public_key)
            .not_valid_before(not_before or issuer_certificate.not_valid_before_utc)
            .not_valid_after(not_after or issuer_certificate.not_valid_after_utc)
            .add_extension(
                x509.BasicConstraints(
                    ca=ca, path_length=path_length if ca else None
                ),
                critical=True,
            )
        )
        return builder.sign(private_key=issuer_key, algorithm=hashes.SHA256())


# ---------------------------------------------------------------------------
# Certificate chain codec
# ---------------------------------------------------------------------------


def encode_certificate_chain(chain: Iterable[x509.Certificate]) -> bytes:
    """Concatenate the DER encodings of *chain*, leaf first."""
    return b"".join(
        cert.public_bytes(serialization.Encoding.DER) for cert in chain
    )


def _der_element_length(data: bytes, offset: int) -> int:
    """Return the total length (header + body) of the DER SEQUENCE at *offset*."""
    if data[offset] != _DER_SEQUENCE_TAG:
        raise CertificateChainError(
            f"Expected a DER SEQUENCE at byte {offset}, found 0x{data[offset]:02x}"
        )
    if offset + 1 >= len(data):
        raise CertificateChainError(f"Truncated DER header at byte {offset}")
    first = data[offset + 1]
    if first < 0x80:
        return 2 + first
    num_octets = first & 0x7F
    if num_octets == 0 or num_octets > 4:
        raise CertificateChainError(
            f"Unsupported DER length encoding at byte {offset}"
        )
    start = offset + 2
    if start + num_octets > len(data):
        raise CertificateChainError(f"Truncated DER header at byte {offset}")
    body_length = int.from_bytes(data[start : start + num_octets], "big")
    return 2 + num_octets + body_length


def decode_certificate_chain(data: bytes) -> list[x509.Certificate]:
    """Split concatenated DER certificates (no framing) into a chain.

    Each iteration consumes exactly one certificate's worth of bytes, as
    given by its ASN.1 length header.

    Raises:
        CertificateChainError: if *data* is empty or any element is malformed.
    """
    chain: list[x509.Certificate] = []
    offset = 0
    while offset < len(data):
        end = offset + _der_element_length(data, offset)
        if end > len(data):
            raise CertificateChainError(
                f"Certificate at byte {offset} runs past the end of the data"
            )
        try:
            chain.append(x509.load_der_x509_certificate(data[offset:end]))
        except ValueError as exc:
            raise CertificateChainError(
                f"Malformed certificate at byte {offset}: {exc}"
            ) from exc
        offset = end
    if not chain:
        raise CertificateChainError("Certificate chain is empty")
    return chain


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def is_pem(data: bytes | str) -> bool:
    """True if *data* contains a ``-----BEGIN ...-----`` header."""
    if isinstance(data, str):
        data = data.encode("utf-8", errors="replace")
    return _PEM_MARKER in data


def load_certificates(data: bytes) -> list[x509.Certificate]:
    """Load one or more certificates from a PEM bundle or concatenated DER."""
    if is_pem(data):
        try:
            return x509.load_pem_x509_certificates(data)
        except ValueError as exc:
            raise CertificateChainError(f"Malformed PEM certificate: {exc}") from exc
    return decode_certificate_chain(data)


def load_private_key(
    data: bytes, password: bytes | None = None
) -> rsa.RSAPrivateKey:
    """Load a PKCS#8 (PEM or DER) RSA private key.

    Raises:
        ValueError: if the bytes are not a key or the password is wrong.
        TypeError: if the key is not RSA.
    """
    if is_pem(data):
        key = serialization.load_pem_private_key(data, password=password)
    else:
        key = serialization.load_der_private_key(data, password=password)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise TypeError(
            f"Unsupported private key type: {type(key).__name__}. Only RSA is supported."
        )
    return key


def load_public_key(data: bytes) -> rsa.RSAPublicKey:
    """Load an X.509 SubjectPublicKeyInfo (PEM or DER) RSA public key.

    A PEM certificate is also accepted; its public key is returned.
    """
    if is_pem(data):
        if b"CERTIFICATE-----" in data:
            key = x509.load_pem_x509_certificate(data).public_key()
        else:
            key = serialization.load_pem_public_key(data)
    else:
        key = serialization.load_der_public_key(data)
    if not isinstance(key, rsa.RSAPublicKey):
        raise TypeError(
            f"Unsupported public key type: {type(key).__name__}. Only RSA is supported."
        )
    return key


def rsa_public_key(certificate: x509.Certificate) -> rsa.RSAPublicKey:
    """Return the RSA public key of *certificate*.

    Raises:
        CertificateChainError: if the certificate carries a non-RSA key.
    """
    key = certificate.public_key()
    if not isinstance(key, rsa.RSAPublicKey):
        raise CertificateChainError(
            f"Unsupported certificate key type: {type(key).__name__}"
        )
    return key


def same_public_key(a: rsa.RSAPublicKey, b: rsa.RSAPublicKey) -> bool:
    return a.public_numbers() == b.public_numbers()


def certificate_to_pem(certificate: x509.Certificate) -> str:
    return certificate.public_bytes(serialization.Encoding.PEM).decode("ascii")


def certificate_fingerprint(certificate: x509.Certificate) -> str:
    """Lowercase hex SHA-256 over the certificate's DER encoding."""
    der = certificate.public_bytes(serialization.Encoding.DER)
    return hashlib.sha256(der).hexdigest()


__all__ = [
    "CertificateIssuer",
    "DEFAULT_KEY_SIZE",
    "DEFAULT_NOT_AFTER",
    "DEFAULT_NOT_BEFORE",
    "KeyPair",
    "build_subject",
    "certificate_fingerprint",
    "certificate_to_pem",
    "decode_certificate_chain",
    "encode_certificate_chain",
    "is_pem",
    "load_certificates",
    "load_private_key",
    "load_public_key",
    "rsa_public_key",
    "same_public_key",
]
