"""Key providers: pluggable sources of signing key material.

Every provider exposes the same capabilities:

* :meth:`KeyProvider.get_private_key` - the RSA signing key
* :meth:`KeyProvider.get_public_key` - its public half
* :meth:`KeyProvider.get_certificate_chain` - certificates, leaf first
* :meth:`KeyProvider.get_trust_anchors` - certificates a verifier may pin

Each call returns or raises :class:`~aumai_bundleseal.errors.KeyProviderError`.
Only :class:`CompositeKeyProvider` catches failures and falls back.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sys
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import TypeVar

import keyring
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from aumai_bundleseal.certificates import (
    CertificateIssuer,
    KeyPair,
    certificate_to_pem,
    is_pem,
    load_certificates,
    load_private_key,
    load_public_key,
    rsa_public_key,
    same_public_key,
)
from aumai_bundleseal.errors import CertificateChainError, KeyProviderError
from aumai_bundleseal.models import DeveloperIdentity
from aumai_bundleseal.settings import BundleSealSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_KEY_ERRORS = (OSError, ValueError, TypeError, CertificateChainError)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class KeyProvider(ABC):
    """Source of signing key material backed by a specific store."""

    @abstractmethod
    def get_private_key(self) -> rsa.RSAPrivateKey: ...

    def get_public_key(self) -> rsa.RSAPublicKey:
        """Public key of the leaf certificate, else of the private key."""
        chain = self.get_certificate_chain()
        if chain:
            return rsa_public_key(chain[0])
        return self.get_private_key().public_key()

    def get_certificate_chain(self) -> list[x509.Certificate]:
        return []

    def get_trust_anchors(self) -> list[x509.Certificate]:
        return self.get_certificate_chain()[:1]


# ---------------------------------------------------------------------------
# File-backed
# ---------------------------------------------------------------------------


class FileKeyProvider(KeyProvider):
    """Read key and certificate material from filesystem paths.

    The private key is PKCS#8 and the public key X.509 SubjectPublicKeyInfo,
    each DER or PEM. The certificate file may hold the whole chain.
    """

    def __init__(
        self,
        private_key_path: str | Path,
        public_key_path: str | Path | None = None,
        certificate_path: str | Path | None = None,
        root_certificate_path: str | Path | None = None,
        password: bytes | None = None,
    ) -> None:
        self._private_key_path = Path(private_key_path)
        self._public_key_path = Path(public_key_path) if public_key_path else None
        self._certificate_path = Path(certificate_path) if certificate_path else None
        self._root_certificate_path = (
            Path(root_certificate_path) if root_certificate_path else None
        )
        self._password = password

    def get_private_key(self) -> rsa.RSAPrivateKey:
        try:
            return load_private_key(
                self._private_key_path.read_bytes(), password=self._password
            )
        except _KEY_ERRORS as exc:
            raise KeyProviderError(
                f"Cannot load private key from {self._private_key_path}: {exc}"
            ) from exc

    def get_public_key(self) -> rsa.RSAPublicKey:
        if self._public_key_path is None:
            return super().get_public_key()
        try:
            return load_public_key(self._public_key_path.read_bytes())
        except _KEY_ERRORS as exc:
            raise KeyProviderError(
                f"Cannot load public key from {self._public_key_path}: {exc}"
            ) from exc

    def get_certificate_chain(self) -> list[x509.Certificate]:
        if self._certificate_path is None:
            return []
        return _read_certificates(self._certificate_path)

    def get_trust_anchors(self) -> list[x509.Certificate]:
        anchors = super().get_trust_anchors()
        if self._root_certificate_path is not None:
            anchors.extend(_read_certificates(self._root_certificate_path))
        return anchors


def _read_certificates(path: Path) -> list[x509.Certificate]:
    try:
        return load_certificates(path.read_bytes())
    except _KEY_ERRORS as exc:
        raise KeyProviderError(f"Cannot load certificates from {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Environment-backed
# ---------------------------------------------------------------------------


class EnvKeyProvider(KeyProvider):
    """Read key material from ``JDEPLOY_*`` environment variables.

    Each variable holds inline PEM text or a path to DER/PEM bytes:

    * ``JDEPLOY_PRIVATE_KEY`` - PKCS#8 private key
    * ``JDEPLOY_PUBLIC_KEY`` - public key (optional)
    * ``JDEPLOY_CERTIFICATE`` - signing certificate or chain (optional)
    * ``JDEPLOY_ROOT_CERTIFICATE`` - extra trust anchor (optional)
    """

    def __init__(self, settings: BundleSealSettings | None = None) -> None:
        self._settings = settings

    @property
    def settings(self) -> BundleSealSettings:
        # Read lazily so the environment at call time wins
        return self._settings or BundleSealSettings()

    def get_private_key(self) -> rsa.RSAPrivateKey:
        raw = self._require("private_key")
        try:
            return load_private_key(_env_bytes(raw))
        except _KEY_ERRORS as exc:
            raise KeyProviderError(
                f"JDEPLOY_PRIVATE_KEY does not hold a usable RSA key: {exc}"
            ) from exc

    def get_public_key(self) -> rsa.RSAPublicKey:
        raw = self.settings.public_key
        if raw is None:
            return super().get_public_key()
        try:
            return load_public_key(_env_bytes(raw))
        except _KEY_ERRORS as exc:
            raise KeyProviderError(
                f"JDEPLOY_PUBLIC_KEY does not hold a usable RSA key: {exc}"
            ) from exc

    def get_certificate_chain(self) -> list[x509.Certificate]:
        raw = self.settings.certificate
        if raw is None:
            return []
        return self._certificates("JDEPLOY_CERTIFICATE", raw)

    def get_trust_anchors(self) -> list[x509.Certificate]:
        anchors = super().get_trust_anchors()
        root = self.settings.root_certificate
        if root is not None:
            anchors.extend(self._certificates("JDEPLOY_ROOT_CERTIFICATE", root))
        return anchors

    def _require(self, field: str) -> str:
        value = getattr(self.settings, field)
        if value is None:
            raise KeyProviderError(
                f"Environment variable JDEPLOY_{field.upper()} not set"
            )
        return value

    @staticmethod
    def _certificates(variable: str, raw: str) -> list[x509.Certificate]:
        try:
            return load_certificates(_env_bytes(raw))
        except _KEY_ERRORS as exc:
            raise KeyProviderError(
                f"{variable} does not hold a usable certificate: {exc}"
            ) from exc


def _env_bytes(value: str) -> bytes:
    """Inline PEM text, or the bytes of the file the value points at."""
    if is_pem(value):
        return value.encode("utf-8")
    return Path(value).expanduser().read_bytes()


# ---------------------------------------------------------------------------
# OS keychain-backed
# ---------------------------------------------------------------------------


def store_keychain_identity(
    service: str,
    alias: str,
    private_key: rsa.RSAPrivateKey | None,
    chain: Sequence[x509.Certificate],
    password: bytes | None = None,
) -> None:
    """Store an identity record for *alias* in the OS keychain.

    The record is JSON holding a PKCS#8 PEM private key (encrypted when
    *password* is given) and the PEM certificate chain. Pass
    ``private_key=None`` to store certificates only, e.g. a CA root.
    """
    record: dict[str, object] = {
        "certificate_chain": [certificate_to_pem(cert) for cert in chain]
    }
    if private_key is not None:
        encryption: serialization.KeySerializationEncryption = (
            serialization.BestAvailableEncryption(password)
            if password
            else serialization.NoEncryption()
        )
        record["private_key"] = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        ).decode("ascii")
    keyring.set_password(service, alias, json.dumps(record))


class KeychainKeyProvider(KeyProvider):
    """Look up identity records by alias in OS keychain stores.

    *stores* are keyring service names probed in order; the first store
    holding a record for the alias wins. Keychain access may block on an
    interactive unlock prompt, so an optional *timeout* (seconds) bounds
    each lookup.
    """

    def __init__(
        self,
        alias: str,
        stores: Sequence[str],
        password: bytes | None = None,
        ca_alias: str | None = None,
        timeout: float | None = None,
    ) -> None:
        if not stores:
            raise ValueError("At least one keychain store is required")
        self._alias = alias
        self._stores = list(stores)
        self._password = password
        self._ca_alias = ca_alias
        self._timeout = timeout

    def get_private_key(self) -> rsa.RSAPrivateKey:
        record = self._record(self._alias)
        pem = record.get("private_key")
        if not isinstance(pem, str):
            raise KeyProviderError(
                f"Keychain entry '{self._alias}' holds no private key"
            )
        try:
            return load_private_key(pem.encode("ascii"), password=self._password)
        except _KEY_ERRORS as exc:
            raise KeyProviderError(
                f"Keychain entry '{self._alias}' holds an unusable key: {exc}"
            ) from exc

    def get_certificate_chain(self) -> list[x509.Certificate]:
        return self._chain(self._record(self._alias), self._alias)

    def get_trust_anchors(self) -> list[x509.Certificate]:
        anchors = super().get_trust_anchors()
        if self._ca_alias is not None:
            anchors.extend(self._chain(self._record(self._ca_alias), self._ca_alias))
        return anchors

    def _record(self, alias: str) -> dict[str, object]:
        for store in self._stores:
            raw = _with_timeout(
                lambda: keyring.get_password(store, alias), self._timeout
            )
            if raw is None:
                logger.debug("No keychain entry '%s' in store '%s'", alias, store)
                continue
            try:
                record = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise KeyProviderError(
                    f"Keychain entry '{alias}' in store '{store}' is malformed"
                ) from exc
            if not isinstance(record, dict):
                raise KeyProviderError(
                    f"Keychain entry '{alias}' in store '{store}' is malformed"
                )
            return record
        raise KeyProviderError(
            f"No keychain entry '{alias}' found in stores: {', '.join(self._stores)}"
        )

    @staticmethod
    def _chain(record: dict[str, object], alias: str) -> list[x509.Certificate]:
        pems = record.get("certificate_chain") or []
        if not isinstance(pems, list):
            raise KeyProviderError(f"Keychain entry '{alias}' has a malformed chain")
        chain: list[x509.Certificate] = []
        for pem in pems:
            try:
                chain.extend(load_certificates(str(pem).encode("ascii")))
            except _KEY_ERRORS as exc:
                raise KeyProviderError(
                    f"Keychain entry '{alias}' holds an unusable certificate: {exc}"
                ) from exc
        return chain


def _with_timeout(call: Callable[[], T], timeout: float | None) -> T:
    if timeout is None:
        return call()
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="keychain")
    try:
        return executor.submit(call).result(timeout=timeout)
    except FutureTimeoutError as exc:
        raise KeyProviderError(
            f"Keychain lookup did not complete within {timeout} seconds"
        ) from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


MAC_KEYCHAIN_SERVICE = "jdeploy"
WINDOWS_PERSONAL_STORE = "jdeploy/My"
WINDOWS_ROOT_STORE = "jdeploy/Root"


class MacKeychainKeyProvider(KeychainKeyProvider):
    """Identity records in the macOS login keychain."""

    def __init__(
        self,
        alias: str,
        password: bytes | None = None,
        ca_alias: str | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(
            alias, [MAC_KEYCHAIN_SERVICE], password, ca_alias, timeout
        )


class WindowsStoreKeyProvider(KeychainKeyProvider):
    """Identity records in the Windows store: personal first, then root."""

    def __init__(
        self,
        alias: str,
        password: bytes | None = None,
        ca_alias: str | None = None,
        timeout: float | None = None,
    ) -> None:
        super().__init__(
            alias,
            [WINDOWS_PERSONAL_STORE, WINDOWS_ROOT_STORE],
            password,
            ca_alias,
            timeout,
        )


# ---------------------------------------------------------------------------
# Password-protected keystore (PKCS#12)
# ---------------------------------------------------------------------------


def _friendly_name(entry: pkcs12.PKCS12Certificate) -> str | None:
    name = entry.friendly_name
    return name.decode("utf-8") if name is not None else None


def write_keystore(
    path: str | Path,
    password: bytes,
    alias: str,
    private_key: rsa.RSAPrivateKey,
    chain: Sequence[x509.Certificate],
    ca_certificates: Iterable[tuple[str, x509.Certificate]] = (),
) -> None:
    """Write a password-protected PKCS#12 keystore.

    *chain* is leaf first; the leaf is stored with *alias* as friendly name.
    *ca_certificates* are ``(alias, certificate)`` trust roots bundled alongside.
    """
    if not chain:
        raise ValueError("A keystore entry needs at least one certificate")
    extras = [
        pkcs12.PKCS12Certificate(cert, alias.encode("utf-8")) for cert in chain[1:]
    ]
    extras.extend(
        pkcs12.PKCS12Certificate(cert, ca_alias.encode("utf-8"))
        for ca_alias, cert in ca_certificates
    )
    data = pkcs12.serialize_key_and_certificates(
        name=alias.encode("utf-8"),
        key=private_key,
        cert=chain[0],
        cas=extras or None,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(data)


class KeyStoreKeyProvider(KeyProvider):
    """Key, chain and trust roots from a password-protected PKCS#12 keystore."""

    def __init__(
        self,
        keystore_path: str | Path,
        password: bytes | str,
        key_alias: str,
        certificate_alias: str | None = None,
        ca_alias: str | None = None,
    ) -> None:
        self._path = Path(keystore_path)
        self._password = password.encode("utf-8") if isinstance(password, str) else password
        self._key_alias = key_alias
        self._certificate_alias = certificate_alias or key_alias
        self._ca_alias = ca_alias

    def _load(self) -> pkcs12.PKCS12KeyAndCertificates:
        try:
            return pkcs12.load_pkcs12(self._path.read_bytes(), self._password)
        except (OSError, ValueError) as exc:
            raise KeyProviderError(f"Cannot open keystore {self._path}: {exc}") from exc

    def get_private_key(self) -> rsa.RSAPrivateKey:
        bundle = self._load()
        if (
            bundle.key is None
            or bundle.cert is None
            or _friendly_name(bundle.cert) != self._key_alias
        ):
            raise KeyProviderError(
                f"No private key entry '{self._key_alias}' in keystore {self._path}"
            )
        if not isinstance(bundle.key, rsa.RSAPrivateKey):
            raise KeyProviderError(
                f"Keystore entry '{self._key_alias}' is not an RSA key"
            )
        return bundle.key

    def get_certificate_chain(self) -> list[x509.Certificate]:
        bundle = self._load()
        entries = ([bundle.cert] if bundle.cert is not None else []) + list(
            bundle.additional_certs
        )
        chain = [
            entry.certificate
            for entry in entries
            if _friendly_name(entry) == self._certificate_alias
        ]
        if not chain:
            raise KeyProviderError(
                f"No certificate entry '{self._certificate_alias}' in keystore {self._path}"
            )
        return chain

    def get_trust_anchors(self) -> list[x509.Certificate]:
        if self._ca_alias is None:
            return super().get_trust_anchors()
        bundle = self._load()
        roots = [
            entry.certificate
            for entry in bundle.additional_certs
            if _friendly_name(entry) == self._ca_alias
        ]
        if not roots:
            raise KeyProviderError(
                f"No CA certificate '{self._ca_alias}' in keystore {self._path}"
            )
        return roots


class DeveloperKeyStore:
    """PKCS#12 keystores holding developer identities, keyed by identity URL.

    A PKCS#12 file carries a single private key, so the first identity lives
    in *path* and each further identity in a sibling file named after a digest
    of its alias (``keystore.<digest>.p12``). Existing files are never
    overwritten.
    """

    def __init__(self, path: str | Path, password: bytes | str) -> None:
        self.path = Path(path)
        self._password = password.encode("utf-8") if isinstance(password, str) else password

    def alias_path(self, alias: str) -> Path:
        digest = hashlib.sha256(alias.encode("utf-8")).hexdigest()[:16]
        return self.path.with_name(f"{self.path.stem}.{digest}{self.path.suffix}")

    def _find(self, identity: DeveloperIdentity) -> KeyStoreKeyProvider | None:
        for alias in identity.keystore_aliases():
            for path in (self.path, self.alias_path(alias)):
                if not path.exists():
                    continue
                provider = KeyStoreKeyProvider(path, self._password, alias)
                try:
                    provider.get_private_key()
                except KeyProviderError:
                    logger.debug("No keystore entry for alias %s in %s", alias, path)
                    continue
                return provider
        return None

    def get_key_pair(
        self, identity: DeveloperIdentity, generate: bool = False
    ) -> KeyPair | None:
        """Return the stored key pair for *identity*, optionally creating it.

        The identity URL and its alias URLs are tried in order. With
        *generate*, a missing identity gets a fresh 4096-bit key and a
        self-signed certificate, persisted before returning.

        Raises:
            KeyProviderError: if *generate* would overwrite a keystore file
                that cannot be read with this password.
        """
        provider = self._find(identity)
        if provider is not None:
            return KeyPair(
                private_key=provider.get_private_key(),
                public_key=provider.get_public_key(),
            )
        if not generate:
            return None

        alias = identity.keystore_aliases()[0]
        target = self.path if not self.path.exists() else self.alias_path(alias)
        if target.exists():
            raise KeyProviderError(
                f"Refusing to overwrite unreadable keystore {target} for alias {alias}"
            )

        issuer = CertificateIssuer()
        key_pair = issuer.generate_key_pair()
        certificate = issuer.issue_self_signed(identity, key_pair)
        write_keystore(
            target, self._password, alias, key_pair.private_key, [certificate]
        )
        logger.info("Generated developer key for %s in %s", identity.name, target)
        return key_pair

    def key_provider(self, identity: DeveloperIdentity) -> KeyStoreKeyProvider:
        """Provider for the file holding *identity*, else for the main keystore."""
        provider = self._find(identity)
        if provider is not None:
            return provider
        return KeyStoreKeyProvider(
            self.path, self._password, identity.keystore_aliases()[0]
        )


# ---------------------------------------------------------------------------
# Composite fallback chain
# ---------------------------------------------------------------------------


class CompositeKeyProvider(KeyProvider):
    """Try delegate providers in order and return the first success.

    A delegate that supplies both a private key and a certificate chain whose
    leaf matches it is consulted first for every capability, so key and chain
    never come from different stores. Otherwise each capability falls back
    independently. A failing delegate is logged and skipped. The composite
    fails only when every delegate has failed, with all their messages in the
    error.
    """

    def __init__(self, providers: Iterable[KeyProvider] = ()) -> None:
        self._providers: list[KeyProvider] = list(providers)

    def register(self, provider: KeyProvider) -> None:
        self._providers.append(provider)

    @property
    def providers(self) -> list[KeyProvider]:
        return list(self._providers)

    def get_private_key(self) -> rsa.RSAPrivateKey:
        return self._first("get_private_key", lambda p: p.get_private_key())

    def get_public_key(self) -> rsa.RSAPublicKey:
        return self._first("get_public_key", lambda p: p.get_public_key())

    def get_certificate_chain(self) -> list[x509.Certificate]:
        return self._first(
            "get_certificate_chain", _non_empty(lambda p: p.get_certificate_chain())
        )

    def get_trust_anchors(self) -> list[x509.Certificate]:
        return self._first(
            "get_trust_anchors", _non_empty(lambda p: p.get_trust_anchors())
        )

    def _signing_delegate(self) -> KeyProvider | None:
        for provider in self._providers:
            try:
                private_key = provider.get_private_key()
                chain = provider.get_certificate_chain()
                if chain and same_public_key(
                    rsa_public_key(chain[0]), private_key.public_key()
                ):
                    return provider
            except Exception as exc:
                logger.debug(
                    "%s has no usable signing identity: %s", type(provider).__name__, exc
                )
        return None

    def _first(self, operation: str, call: Callable[[KeyProvider], T]) -> T:
        delegate = self._signing_delegate()
        ordered = self._providers
        if delegate is not None:
            ordered = [delegate] + [p for p in self._providers if p is not delegate]

        failures: list[str] = []
        for provider in ordered:
            name = type(provider).__name__
            try:
                return call(provider)
            except Exception as exc:
                logger.warning("%s.%s failed: %s", name, operation, exc)
                failures.append(f"{name}: {exc}")
        detail = "; ".join(failures) if failures else "no providers registered"
        raise KeyProviderError(f"All key providers failed {operation} ({detail})")



def _non_empty(
    call: Callable[[KeyProvider], list[x509.Certificate]],
) -> Callable[[KeyProvider], list[x509.Certificate]]:
    def wrapper(provider: KeyProvider) -> list[x509.Certificate]:
        certificates = call(provider)
        if not certificates:
            raise KeyProviderError("no certificates available")
        return certificates

    return wrapper


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_key_provider(
    settings: BundleSealSettings | None = None,
    platform: str | None = None,
) -> CompositeKeyProvider:
    """Build the default fallback chain from settings.

    Order: environment variables, the PKCS#12 keystore (when the file exists
    and a developer id and password are configured), then the OS keychain
    of the current platform (when a developer id is configured).
    """
    settings = settings or BundleSealSettings()
    platform = platform or sys.platform
    provider = CompositeKeyProvider([EnvKeyProvider(settings)])

    developer_id = settings.developer_id
    if (
        developer_id is not None
        and settings.keystore_password is not None
        and settings.keystore_path.exists()
    ):
        provider.register(
            KeyStoreKeyProvider(
                settings.keystore_path,
                settings.keystore_password,
                developer_id,
                developer_id,
                settings.developer_ca_id,
            )
        )

    if developer_id is not None and platform == "darwin":
        provider.register(
            MacKeychainKeyProvider(
                developer_id,
                ca_alias=settings.developer_ca_id,
                timeout=settings.keychain_timeout,
            )
        )
    if developer_id is not None and platform == "win32":
        provider.register(
            WindowsStoreKeyProvider(
                developer_id,
                ca_alias=settings.developer_ca_id,
                timeout=settings.keychain_timeout,
            )
        )
    return provider


__all__ = [
    "CompositeKeyProvider",
    "DeveloperKeyStore",
    "EnvKeyProvider",
    "FileKeyProvider",
    "KeyProvider",
    "KeyStoreKeyProvider",
    "KeychainKeyProvider",
    "MacKeychainKeyProvider",
    "WindowsStoreKeyProvider",
    "create_key_provider",
    "store_keychain_identity",
    "write_keystore",
]
