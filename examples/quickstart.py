"""aumai-bundleseal quickstart: working demonstrations of the major features.

Run this file directly to verify your installation and see the features in action:

    python examples/quickstart.py

Each demo function is self-contained and creates temporary files in the system
temp directory, cleaning up after itself.
"""

from __future__ import annotations

import tempfile
from pathlib import Path

from aumai_bundleseal import (
    CertificateIssuer,
    DeveloperIdentity,
    DeveloperKeyStore,
    FileSigner,
    FileVerifier,
    TrustedPublisherRegistry,
    VerificationResult,
    VerifyPackageService,
)
from aumai_bundleseal.certificates import certificate_to_pem
from aumai_bundleseal.keys import KeyProvider
from aumai_bundleseal.trust import pinned, rooted


def _make_bundle(root: Path) -> Path:
    bundle = root / "my-app"
    (bundle / "lib").mkdir(parents=True)
    (bundle / "package.json").write_text('{"name": "my-app"}', encoding="utf-8")
    (bundle / "lib" / "index.js").write_text("console.log('hi');", encoding="utf-8")
    return bundle


# ---------------------------------------------------------------------------
# Demo 1: Developer keystore, signing, and verification
# ---------------------------------------------------------------------------

def demo_sign_and_verify() -> None:
    """Generate a developer identity, sign a bundle, and verify it."""

    print("\n=== Demo 1: Sign & Verify ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        bundle = _make_bundle(tmp)

        identity = DeveloperIdentity(
            name="Demo Developer",
            organization="AumAI",
            identity_url="https://aumai.example/demo",
        )
        store = DeveloperKeyStore(tmp / "keystore.p12", "demo-password")
        store.get_key_pair(identity, generate=True)
        provider = store.key_provider(identity)
        print(f"  Developer key stored in: {store.path}")

        manifest = FileSigner().sign_directory("1.0.0", bundle, provider)
        print(f"  Signed {len(manifest.entries)} files at {manifest.timestamp}")

        policy = pinned(*provider.get_certificate_chain()[:1])
        report = FileVerifier().verify_directory_report("1.0.0", bundle, policy)
        print(f"  Result: {report.result.value}  (signer: {report.signer})")
        assert report.valid

        wrong = FileVerifier().verify_directory("1.0.1", bundle, policy)
        print(f"  Verifying as 1.0.1: {wrong.value}  (expected SIGNATURE_MISMATCH)")
        assert wrong is VerificationResult.SIGNATURE_MISMATCH

        print("  Demo 1 passed.")


# ---------------------------------------------------------------------------
# Demo 2: Tamper detection
# ---------------------------------------------------------------------------

def demo_tamper_detection() -> None:
    """Show that modifying a file after signing is detected."""

    print("\n=== Demo 2: Tamper Detection ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        bundle = _make_bundle(tmp)

        identity = DeveloperIdentity(name="Alice")
        store = DeveloperKeyStore(tmp / "keystore.p12", "pw")
        store.get_key_pair(identity, generate=True)
        provider = store.key_provider(identity)
        FileSigner().sign_directory("2.0.0", bundle, provider)

        (bundle / "lib" / "index.js").write_text("steal();", encoding="utf-8")
        print("  lib/index.js modified (simulated tamper)")

        report = FileVerifier().verify_directory_report(
            "2.0.0", bundle, pinned(*provider.get_certificate_chain()[:1])
        )
        for failure in report.failures:
            print(f"  FAIL: {failure.path} ({failure.reason[:40]}...)")
        assert report.result is VerificationResult.SIGNATURE_MISMATCH

        print("  Demo 2 passed.")


# ---------------------------------------------------------------------------
# Demo 3: Certificate authority chains
# ---------------------------------------------------------------------------

def demo_ca_chain() -> None:
    """Sign with a CA-issued certificate and trust only the CA root."""

    print("\n=== Demo 3: CA-issued Signing Certificate ===")

    issuer = CertificateIssuer()
    ca_keys = issuer.generate_key_pair(2048)
    ca_cert = issuer.issue_self_signed(
        DeveloperIdentity(name="AumAI Root CA"), ca_keys, ca=True
    )
    dev_keys = issuer.generate_key_pair(2048)
    dev_cert = issuer.issue_certificate(
        DeveloperIdentity(name="Bob"), dev_keys.public_key, ca_keys.private_key, ca_cert
    )

    class ChainProvider(KeyProvider):
        def get_private_key(self):
            return dev_keys.private_key

        def get_certificate_chain(self):
            return [dev_cert, ca_cert]

    with tempfile.TemporaryDirectory() as tmpdir:
        bundle = _make_bundle(Path(tmpdir))
        FileSigner().sign_directory("3.0.0", bundle, ChainProvider())

        result = FileVerifier().verify_directory("3.0.0", bundle, rooted(ca_cert))
        print(f"  Trusting the root only: {result.value}")
        assert result is VerificationResult.SIGNED_CORRECTLY

        outcome = VerifyPackageService().verify_package(
            "3.0.0", str(bundle), certificate_to_pem(ca_cert)
        )
        print(f"  Installer service verified: {outcome.verified}")
        assert outcome.verified

    print("  Demo 3 passed.")


# ---------------------------------------------------------------------------
# Demo 4: Trusted publisher registry
# ---------------------------------------------------------------------------

def demo_publisher_registry() -> None:
    """Verify bundles against a persisted registry of trusted publishers."""

    print("\n=== Demo 4: Publisher Registry ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        bundle = _make_bundle(tmp)

        identity = DeveloperIdentity(name="Carol")
        store = DeveloperKeyStore(tmp / "keystore.p12", "pw")
        store.get_key_pair(identity, generate=True)
        provider = store.key_provider(identity)
        FileSigner().sign_directory("4.0.0", bundle, provider)

        registry = TrustedPublisherRegistry(registry_path=tmp / "registry.json")
        result = registry.verify_bundle("4.0.0", bundle)
        print(f"  Before registering: {result.value}")
        assert result is VerificationResult.UNTRUSTED_CERTIFICATE

        publisher = registry.trust_certificate(provider.get_certificate_chain()[0])
        print(f"  Registered: {publisher.name} ({publisher.publisher_id[:16]}...)")
        result = registry.verify_bundle("4.0.0", bundle)
        print(f"  After registering: {result.value}")
        assert result is VerificationResult.SIGNED_CORRECTLY

        print("  Demo 4 passed.")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run all quickstart demos in sequence."""
    print("aumai-bundleseal quickstart demos")
    print("=" * 45)

    demo_sign_and_verify()
    demo_tamper_detection()
    demo_ca_chain()
    demo_publisher_registry()

    print("\n" + "=" * 45)
    print("All demos completed successfully.")


if __name__ == "__main__":
    main()
