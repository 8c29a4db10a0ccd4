"""Exception hierarchy for aumai-bundleseal."""


class BundleSealError(Exception):
    """Base class for every error raised by aumai-bundleseal."""


class KeyProviderError(BundleSealError):
    """Key material is missing, unreadable or malformed."""


class SigningError(BundleSealError):
    """A bundle could not be signed; nothing was written."""


class CertificateChainError(BundleSealError):
    """Certificate bytes cannot be decoded or use an unsupported key type."""


class ManifestError(BundleSealError):
    """Manifest bytes are not a valid flat JSON manifest."""


__all__ = [
    "BundleSealError",
    "CertificateChainError",
    "KeyProviderError",
    "ManifestError",
    "SigningError",
]
