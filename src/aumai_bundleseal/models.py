"""Pydantic models for aumai-bundleseal."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, ValidationError

from aumai_bundleseal.errors import ManifestError

MANIFEST_FILENAME = "jdeploy.mf"
MANIFEST_SIGNATURE_FILENAME = "jdeploy.mf.sig"
CERTIFICATE_FILENAME = "jdeploy.cer"

SIGNING_ARTIFACTS = frozenset(
    {MANIFEST_FILENAME, MANIFEST_SIGNATURE_FILENAME, CERTIFICATE_FILENAME}
)

TIMESTAMP_KEY = "timestamp"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class DeveloperIdentity(BaseModel):
    """Publisher identity used to build certificate subjects."""

    name: str
    organization: str | None = None
    city: str | None = None
    country_code: str | None = None
    identity_url: str | None = None
    alias_urls: list[str] = Field(default_factory=list)

    def subject_string(self) -> str:
        """Return the X.500 subject, e.g. ``CN=Jane,O=Acme,L=Paris,C=FR``."""
        parts = [f"CN={self.name}"]
        if self.organization is not None:
            parts.append(f"O={self.organization}")
        if self.city is not None:
            parts.append(f"L={self.city}")
        if self.country_code is not None:
            parts.append(f"C={self.country_code}")
        return ",".join(parts)

    def keystore_aliases(self) -> list[str]:
        """Aliases under which this identity's key may be stored."""
        aliases = [self.identity_url or self.name]
        aliases.extend(a for a in self.alias_urls if a not in aliases)
        return aliases


class FileEntry(BaseModel):
    """Hash and signature recorded for a single bundle file."""

    hash: str = Field(pattern=r"^[0-9a-f]{64}$")
    signature: str = Field(pattern=r"^(?:[0-9a-f]{2})+$")


class Manifest(BaseModel):
    """Per-file hash and signature ledger for a bundle.

    On disk the manifest is one flat JSON object: the reserved ``timestamp``
    key plus one key per bundle-relative POSIX path.
    """

    timestamp: datetime | None = None
    entries: dict[str, FileEntry] = Field(default_factory=dict)

    def to_json_bytes(self) -> bytes:
        """Serialise to the on-disk form (4-space indent, sorted keys)."""
        data: dict[str, object] = {
            path: entry.model_dump() for path, entry in self.entries.items()
        }
        if self.timestamp is not None:
            data[TIMESTAMP_KEY] = self.timestamp.astimezone(UTC).strftime(
                TIMESTAMP_FORMAT
            )
        return json.dumps(data, indent=4, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json_bytes(cls, raw: bytes) -> Manifest:
        """Parse the on-disk form.

        Raises:
            ManifestError: if the bytes are not a manifest JSON object.
        """
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ManifestError(f"Manifest is not valid UTF-8 JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestError("Manifest must be a JSON object.")

        timestamp: datetime | None = None
        raw_timestamp = data.pop(TIMESTAMP_KEY, None)
        if raw_timestamp is not None:
            try:
                timestamp = datetime.strptime(
                    str(raw_timestamp), TIMESTAMP_FORMAT
                ).replace(tzinfo=UTC)
            except ValueError as exc:
                raise ManifestError(
                    f"Malformed manifest timestamp: {raw_timestamp!r}"
                ) from exc

        try:
            entries = {path: FileEntry(**entry) for path, entry in data.items()}
        except (TypeError, ValidationError) as exc:
            raise ManifestError(f"Malformed manifest entry: {exc}") from exc
        return cls(timestamp=timestamp, entries=entries)


class VerificationResult(str, Enum):
    """Terminal verdict of a bundle verification run."""

    SIGNED_CORRECTLY = "SIGNED_CORRECTLY"
    NOT_SIGNED_AT_ALL = "NOT_SIGNED_AT_ALL"
    SIGNATURE_MISMATCH = "SIGNATURE_MISMATCH"
    UNTRUSTED_CERTIFICATE = "UNTRUSTED_CERTIFICATE"

    @property
    def exit_code(self) -> int:
        """Process exit status for this verdict (0, or 90 + ordinal)."""
        if self is VerificationResult.SIGNED_CORRECTLY:
            return 0
        return 90 + list(VerificationResult).index(self)


class FileFailure(BaseModel):
    """A manifest entry that failed verification."""

    path: str
    reason: str


class VerificationReport(BaseModel):
    """Verdict plus the details gathered while reaching it."""

    result: VerificationResult
    version: str
    signer: str | None = None
    failures: list[FileFailure] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return self.result is VerificationResult.SIGNED_CORRECTLY


class TrustedPublisher(BaseModel):
    """A publisher whose certificate has been added to the trust registry."""

    publisher_id: str
    name: str
    certificate_pem: str
    trusted_since: datetime


__all__ = [
    "CERTIFICATE_FILENAME",
    "DeveloperIdentity",
    "FileEntry",
    "FileFailure",
    "MANIFEST_FILENAME",
    "MANIFEST_SIGNATURE_FILENAME",
    "Manifest",
    "SIGNING_ARTIFACTS",
    "TIMESTAMP_FORMAT",
    "TIMESTAMP_KEY",
    "TrustedPublisher",
    "VerificationReport",
    "VerificationResult",
]
