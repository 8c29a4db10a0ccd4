"""Trusted publisher registry for aumai-bundleseal."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509

from aumai_bundleseal.certificates import certificate_fingerprint, certificate_to_pem
from aumai_bundleseal.core import FileVerifier
from aumai_bundleseal.models import TrustedPublisher, VerificationResult
from aumai_bundleseal.trust import PinnedCertificatePolicy


class TrustedPublisherRegistry:
    """Trusted publisher certificates with JSON file persistence.

    Maintain a set of trusted publishers and verify bundles against them.
    All mutating operations persist the change immediately.

    Security note: The registry file is stored as plain JSON without integrity
    protection.  An attacker with write access to the registry file can add
    their own certificate and have their bundles pass verification.  Protect
    the registry file with filesystem-level access controls.
    """

    def __init__(self, registry_path: str | Path | None = None) -> None:
        self._registry_path = Path(registry_path) if registry_path else None
        self._publishers: dict[str, TrustedPublisher] = {}

        if self._registry_path and self._registry_path.exists():
            self._load()

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def add_publisher(self, publisher: TrustedPublisher) -> None:
        """Add or replace a trusted publisher entry."""
        self._publishers[publisher.publisher_id] = publisher
        self._save()

    def trust_certificate(
        self, certificate: x509.Certificate, name: str | None = None
    ) -> TrustedPublisher:
        """Add *certificate* as a publisher keyed by its SHA-256 fingerprint."""
        publisher = TrustedPublisher(
            publisher_id=certificate_fingerprint(certificate),
            name=name or certificate.subject.rfc4514_string(),
            certificate_pem=certificate_to_pem(certificate),
            trusted_since=datetime.now(tz=UTC),
        )
        self.add_publisher(publisher)
        return publisher

    def remove_publisher(self, publisher_id: str) -> None:
        """Remove a publisher from the trust registry.

        Raises:
            KeyError: if the publisher_id is not in the registry.
        """
        if publisher_id not in self._publishers:
            raise KeyError(f"Publisher not found: {publisher_id}")
        del self._publishers[publisher_id]
        self._save()

    def get_publisher(self, publisher_id: str) -> TrustedPublisher | None:
        """Return the :class:`TrustedPublisher` for *publisher_id*, or None."""
        return self._publishers.get(publisher_id)

    def list_publishers(self) -> list[TrustedPublisher]:
        """Return all trusted publishers."""
        return list(self._publishers.values())

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def to_trust_policy(self) -> PinnedCertificatePolicy:
        """A policy pinning every registered publisher certificate."""
        return PinnedCertificatePolicy(
            certificates=[p.certificate_pem for p in self._publishers.values()]
        )

    def verify_bundle(
        self, version: str, directory_path: str | Path
    ) -> VerificationResult:
        """Verify a bundle, trusting only registered publishers.

        Returns:
            ``UNTRUSTED_CERTIFICATE`` when the bundle's signer is not
            registered, otherwise the verifier's verdict.
        """
        return FileVerifier().verify_directory(
            version, directory_path, self.to_trust_policy()
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self) -> None:
        if self._registry_path is None:
            return
        self._registry_path.parent.mkdir(parents=True, exist_ok=True)
        data = [p.model_dump(mode="json") for p in self._publishers.values()]
        self._registry_path.write_text(
            json.dumps(data, indent=2, default=str), encoding="utf-8"
        )

    def _load(self) -> None:
        if self._registry_path is None or not self._registry_path.exists():
            return
        raw = json.loads(self._registry_path.read_text(encoding="utf-8"))
        for entry in raw:
            publisher = TrustedPublisher(**entry)
            self._publishers[publisher.publisher_id] = publisher


__all__ = ["TrustedPublisherRegistry"]
