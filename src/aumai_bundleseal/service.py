"""Installer-facing package verification."""

from __future__ import annotations

import logging
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12
from pydantic import BaseModel

from aumai_bundleseal.certificates import load_certificates
from aumai_bundleseal.core import FileVerifier
from aumai_bundleseal.errors import BundleSealError
from aumai_bundleseal.models import VerificationResult
from aumai_bundleseal.trust import rooted

logger = logging.getLogger(__name__)

_PEM_SUFFIXES = (".pem",)
_DER_SUFFIXES = (".der", ".cer", ".crt")
_PKCS12_SUFFIXES = (".p12", ".pfx")
_PKCS7_SUFFIXES = (".p7b", ".p7c")

_MESSAGES = {
    VerificationResult.NOT_SIGNED_AT_ALL: "The package is not signed",
    VerificationResult.UNTRUSTED_CERTIFICATE: (
        "The package is signed with an untrusted certificate"
    ),
    VerificationResult.SIGNATURE_MISMATCH: (
        "The package signature does not match the contents"
    ),
}


class PackageVerification(BaseModel):
    """Outcome of :meth:`VerifyPackageService.verify_package`."""

    verified: bool
    error_message: str | None = None
    verification_result: VerificationResult | None = None


def load_trusted_certificates(
    source: str, password: bytes | None = None
) -> list[x509.Certificate]:
    """Load trusted certificates from an inline PEM string or a file.

    Supported files: ``.pem``; ``.der``/``.cer``/``.crt``; PKCS#12
    ``.p12``/``.pfx`` (all certificates in the store); PKCS#7
    ``.p7b``/``.p7c``.

    Raises:
        ValueError: if *source* is not a recognised format.
    """
    if source.lstrip().startswith("-----BEGIN CERTIFICATE-----"):
        return load_certificates(source.encode("ascii"))

    path = Path(source)
    suffix = path.suffix.lower()
    if not path.is_file():
        raise ValueError(f"Trusted certificate source not found: {source}")
    data = path.read_bytes()

    if suffix in _PEM_SUFFIXES or suffix in _DER_SUFFIXES:
        return load_certificates(data)
    if suffix in _PKCS12_SUFFIXES:
        bundle = pkcs12.load_pkcs12(data, password)
        entries = ([bundle.cert] if bundle.cert is not None else []) + list(
            bundle.additional_certs
        )
        return [entry.certificate for entry in entries]
    if suffix in _PKCS7_SUFFIXES:
        if b"-----BEGIN" in data:
            return pkcs7.load_pem_pkcs7_certificates(data)
        return pkcs7.load_der_pkcs7_certificates(data)
    raise ValueError(f"Invalid key store format: {source}")


class VerifyPackageService:
    """Verify a bundle against a set of trusted certificates.

    Trusted certificates act as roots: a bundle signed directly by one of
    them, or by a certificate they issued, is trusted.
    """

    def __init__(self, verifier: FileVerifier | None = None) -> None:
        self._verifier = verifier or FileVerifier()

    def verify_package(
        self,
        version: str,
        bundle_path: str,
        trusted: str,
        password: bytes | None = None,
    ) -> PackageVerification:
        """Verify *bundle_path* as *version*; never raises."""
        try:
            if not bundle_path:
                raise ValueError("bundle_path is required")
            if not trusted:
                raise ValueError("trusted certificates are required")
            certificates = load_trusted_certificates(trusted, password)
            result = self._verifier.verify_directory(
                version, bundle_path, rooted(*certificates)
            )
        except (OSError, ValueError, BundleSealError) as exc:
            logger.warning("Package verification error: %s", exc)
            return PackageVerification(verified=False, error_message=str(exc))

        if result is VerificationResult.SIGNED_CORRECTLY:
            return PackageVerification(verified=True, verification_result=result)
        return PackageVerification(
            verified=False,
            error_message=_MESSAGES[result],
            verification_result=result,
        )


__all__ = [
    "PackageVerification",
    "VerifyPackageService",
    "load_trusted_certificates",
]
