"""Signing and verification of bundle directories."""

from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from aumai_bundleseal.certificates import (
    decode_certificate_chain,
    encode_certificate_chain,
    rsa_public_key,
    same_public_key,
)
from aumai_bundleseal.errors import KeyProviderError, SigningError
from aumai_bundleseal.keys import KeyProvider
from aumai_bundleseal.models import (
    CERTIFICATE_FILENAME,
    MANIFEST_FILENAME,
    MANIFEST_SIGNATURE_FILENAME,
    SIGNING_ARTIFACTS,
    TIMESTAMP_KEY,
    FileEntry,
    FileFailure,
    Manifest,
    VerificationReport,
    VerificationResult,
)
from aumai_bundleseal.trust import CertificateVerifier

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _sha256_file(file_path: Path) -> bytes:
    """Return the raw SHA-256 digest of *file_path*."""
    hasher = hashlib.sha256()
    with file_path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            hasher.update(chunk)
    return hasher.digest()


def _sign(data: bytes, private_key: rsa.RSAPrivateKey) -> bytes:
    """SHA256withRSA (PKCS#1 v1.5) signature over *data*."""
    return private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())


def _verify(data: bytes, signature: bytes, public_key: rsa.RSAPublicKey) -> bool:
    try:
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


def _version_bound(manifest_bytes: bytes, version: str) -> bytes:
    return manifest_bytes + version.encode("utf-8")


def _bundle_files(root: Path) -> list[Path]:
    """Regular files under *root*, sorted, excluding the signing artifacts."""
    return [
        path
        for path in sorted(root.rglob("*"))
        if path.is_file() and path.name not in SIGNING_ARTIFACTS
    ]


# ---------------------------------------------------------------------------
# FileSigner
# ---------------------------------------------------------------------------


class FileSigner:
    """Hash and sign every file of a bundle and write a version-bound manifest.

    Per-file work runs on a thread pool of *max_workers* threads (the
    executor default when ``None``). *clock* supplies the manifest timestamp
    and must return timezone-aware datetimes; naive values are rejected.
    """

    def __init__(
        self,
        max_workers: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._max_workers = max_workers
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def sign_directory(
        self,
        version: str,
        directory_path: str | Path,
        key_provider: KeyProvider,
    ) -> Manifest:
        """Sign *directory_path* for release *version*.

        Writes ``jdeploy.mf``, ``jdeploy.mf.sig`` and ``jdeploy.cer`` into the
        directory, and only after every file has been hashed and signed: a
        failure part-way leaves the bundle unsigned rather than half-signed.

        Raises:
            ValueError: if *directory_path* is not a directory
                or the clock returns a naive datetime.
            KeyProviderError: if key or certificate material is unavailable.
            SigningError: if a file cannot be read or the key does not match
                the certificate.
        """
        root = Path(directory_path)
        if not root.is_dir():
            raise ValueError(
                f"directory_path does not exist or is not a directory: {directory_path}"
            )

        private_key = key_provider.get_private_key()
        chain = key_provider.get_certificate_chain()
        if not chain:
            raise KeyProviderError(
                "KeyProvider failed to find any certificates in the signing certificate chain"
            )
        if not same_public_key(rsa_public_key(chain[0]), private_key.public_key()):
            raise SigningError(
                "The signing key does not match the leaf certificate's public key"
            )

        files = _bundle_files(root)
        relative_paths = [path.relative_to(root).as_posix() for path in files]
        if TIMESTAMP_KEY in relative_paths:
            raise SigningError(
                f"A top-level file named '{TIMESTAMP_KEY}' collides with the manifest timestamp key"
            )

        def sign_file(path: Path) -> FileEntry:
            try:
                digest = _sha256_file(path)
            except OSError as exc:
                raise SigningError(f"Unable to read {path}: {exc}") from exc
            logger.debug("Signed %s", path)
            return FileEntry(
                hash=digest.hex(), signature=_sign(digest, private_key).hex()
            )

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            entries = list(pool.map(sign_file, files))

        signed_at = self._clock()
        if signed_at.tzinfo is None or signed_at.utcoffset() is None:
            raise ValueError("clock must return a timezone-aware datetime")
        manifest = Manifest(
            timestamp=signed_at.replace(microsecond=0),
            entries=dict(zip(relative_paths, entries)),
        )
        manifest_bytes = manifest.to_json_bytes()
        manifest_signature = _sign(_version_bound(manifest_bytes, version), private_key)

        (root / MANIFEST_FILENAME).write_bytes(manifest_bytes)
        (root / MANIFEST_SIGNATURE_FILENAME).write_text(
            manifest_signature.hex(), encoding="ascii"
        )
        (root / CERTIFICATE_FILENAME).write_bytes(encode_certificate_chain(chain))

        logger.info(
            "Signed %d files in %s for version %s", len(entries), root, version
        )
        return manifest


# ---------------------------------------------------------------------------
# FileVerifier
# ---------------------------------------------------------------------------


def _safe_relative(path: str) -> bool:
    pure = PurePosixPath(path)
    return bool(path) and not pure.is_absolute() and ".." not in pure.parts


class FileVerifier:
    """Verify a signed bundle against a version and a trust policy.

    Verification is read-only. Integrity problems, missing files and
    untrusted certificates become a :class:`VerificationResult`; malformed
    certificate bytes and unsupported key types raise.

    Only files listed in the manifest are checked. Extra files in the bundle
    are not inspected.

    Args:
        max_workers: Thread pool size for per-file checks.
        check_validity: Require the manifest timestamp to fall inside the
            leaf certificate's validity window.
        require_timestamp: Treat a manifest without a timestamp as a
            signature mismatch instead of skipping the validity check.
    """

    def __init__(
        self,
        max_workers: int | None = None,
        check_validity: bool = True,
        require_timestamp: bool = False,
    ) -> None:
        self._max_workers = max_workers
        self._check_validity = check_validity
        self._require_timestamp = require_timestamp

    def verify_directory(
        self,
        version: str,
        directory_path: str | Path,
        trust_policy: CertificateVerifier,
    ) -> VerificationResult:
        """Return the verdict for *directory_path* signed as *version*."""
        return self.verify_directory_report(
            version, directory_path, trust_policy
        ).result

    def verify_directory_report(
        self,
        version: str,
        directory_path: str | Path,
        trust_policy: CertificateVerifier,
    ) -> VerificationReport:
        """Verify and return the verdict with signer and per-file failures."""
        root = Path(directory_path)

        def report(
            result: VerificationResult,
            signer: str | None = None,
            failures: list[FileFailure] | None = None,
        ) -> VerificationReport:
            logger.info("Verification of %s (%s): %s", root, version, result.value)
            return VerificationReport(
                result=result,
                version=version,
                signer=signer,
                failures=failures or [],
            )

        certificate_path = root / CERTIFICATE_FILENAME
        certificate_bytes = _read_optional(certificate_path)
        if certificate_bytes is None:
            return report(VerificationResult.NOT_SIGNED_AT_ALL)

        chain = decode_certificate_chain(certificate_bytes)
        leaf = chain[0]
        signer = leaf.subject.rfc4514_string()

        if not trust_policy.is_trusted(chain):
            return report(VerificationResult.UNTRUSTED_CERTIFICATE, signer)

        public_key = rsa_public_key(leaf)

        manifest_bytes = _read_optional(root / MANIFEST_FILENAME)
        signature_bytes = _read_optional(root / MANIFEST_SIGNATURE_FILENAME)
        if manifest_bytes is None or signature_bytes is None:
            return report(VerificationResult.NOT_SIGNED_AT_ALL, signer)

        try:
            manifest_signature = bytes.fromhex(signature_bytes.decode("ascii").strip())
        except (UnicodeDecodeError, ValueError):
            logger.warning("Manifest signature of %s is not hex", root)
            return report(VerificationResult.SIGNATURE_MISMATCH, signer)
        if not _verify(
            _version_bound(manifest_bytes, version), manifest_signature, public_key
        ):
            logger.warning("Manifest signature mismatch for %s", root)
            return report(VerificationResult.SIGNATURE_MISMATCH, signer)

        manifest = Manifest.from_json_bytes(manifest_bytes)

        timestamp_result = self._check_timestamp(manifest, leaf)
        if timestamp_result is not None:
            return report(timestamp_result, signer)

        failures = self._verify_entries(root, manifest, public_key)
        if failures:
            first = failures[0]
            logger.warning("First failing file %s: %s", first.path, first.reason)
            return report(VerificationResult.SIGNATURE_MISMATCH, signer, failures)
        return report(VerificationResult.SIGNED_CORRECTLY, signer)

    def _check_timestamp(
        self, manifest: Manifest, leaf: x509.Certificate
    ) -> VerificationResult | None:
        if not self._check_validity:
            return None
        if manifest.timestamp is None:
            if self._require_timestamp:
                logger.warning("Manifest carries no timestamp")
                return VerificationResult.SIGNATURE_MISMATCH
            logger.debug("Manifest carries no timestamp; skipping validity check")
            return None
        if not (
            leaf.not_valid_before_utc <= manifest.timestamp <= leaf.not_valid_after_utc
        ):
            logger.warning(
                "Manifest timestamp %s outside certificate validity %s - %s",
                manifest.timestamp,
                leaf.not_valid_before_utc,
                leaf.not_valid_after_utc,
            )
            return VerificationResult.UNTRUSTED_CERTIFICATE
        return None

    def _verify_entries(
        self, root: Path, manifest: Manifest, public_key: rsa.RSAPublicKey
    ) -> list[FileFailure]:
        items: Sequence[tuple[str, FileEntry]] = sorted(manifest.entries.items())

        def check(item: tuple[str, FileEntry]) -> FileFailure | None:
            relative_path, entry = item
            reason = _check_entry(root, relative_path, entry, public_key)
            return FileFailure(path=relative_path, reason=reason) if reason else None

        # pool.map yields in input order, so the first failure is deterministic
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            results = list(pool.map(check, items))
        return [failure for failure in results if failure is not None]


def _read_optional(path: Path) -> bytes | None:
    """Bytes of *path*, or None when it is missing or unreadable."""
    try:
        return path.read_bytes()
    except OSError:
        return None


def _check_entry(
    root: Path, relative_path: str, entry: FileEntry, public_key: rsa.RSAPublicKey
) -> str | None:
    """Return why *entry* fails verification, or None when it passes."""
    if not _safe_relative(relative_path):
        return "path escapes the bundle"
    file_path = root / relative_path
    try:
        actual = _sha256_file(file_path)
    except FileNotFoundError:
        return "file not found"
    except OSError as exc:
        return f"unreadable: {exc}"

    if not hmac.compare_digest(actual.hex(), entry.hash):
        return f"hash mismatch (expected {entry.hash}, actual {actual.hex()})"
    if not _verify(actual, bytes.fromhex(entry.signature), public_key):
        return "signature mismatch"
    logger.debug("Verified %s", relative_path)
    return None


__all__ = ["FileSigner", "FileVerifier"]
