"""aumai-bundleseal: Cryptographic signing and verification for application bundles."""

from aumai_bundleseal.certificates import CertificateIssuer, KeyPair
from aumai_bundleseal.core import FileSigner, FileVerifier
from aumai_bundleseal.errors import (
    BundleSealError,
    CertificateChainError,
    KeyProviderError,
    ManifestError,
    SigningError,
)
from aumai_bundleseal.keys import (
    CompositeKeyProvider,
    DeveloperKeyStore,
    EnvKeyProvider,
    FileKeyProvider,
    KeychainKeyProvider,
    KeyProvider,
    KeyStoreKeyProvider,
    MacKeychainKeyProvider,
    WindowsStoreKeyProvider,
    create_key_provider,
)
from aumai_bundleseal.models import (
    DeveloperIdentity,
    FileEntry,
    Manifest,
    TrustedPublisher,
    VerificationReport,
    VerificationResult,
)
from aumai_bundleseal.registry import TrustedPublisherRegistry
from aumai_bundleseal.service import VerifyPackageService
from aumai_bundleseal.settings import BundleSealSettings
from aumai_bundleseal.trust import (
    AnyOfPolicy,
    CertificateVerifier,
    PinnedCertificatePolicy,
    RootedCAPolicy,
    TrustPolicy,
)

__version__ = "0.1.0"

__all__ = [
    "AnyOfPolicy",
    "BundleSealError",
    "BundleSealSettings",
    "CertificateChainError",
    "CertificateIssuer",
    "CertificateVerifier",
    "CompositeKeyProvider",
    "DeveloperIdentity",
    "DeveloperKeyStore",
    "EnvKeyProvider",
    "FileEntry",
    "FileKeyProvider",
    "FileSigner",
    "FileVerifier",
    "KeyPair",
    "KeyProvider",
    "KeyProviderError",
    "KeyStoreKeyProvider",
    "KeychainKeyProvider",
    "MacKeychainKeyProvider",
    "Manifest",
    "ManifestError",
    "PinnedCertificatePolicy",
    "RootedCAPolicy",
    "SigningError",
    "TrustPolicy",
    "TrustedPublisher",
    "TrustedPublisherRegistry",
    "VerificationReport",
    "VerificationResult",
    "VerifyPackageService",
    "WindowsStoreKeyProvider",
    "create_key_provider",
]
