"""Trust policies deciding whether a certificate chain may sign bundles.

Policies are tagged pydantic models so an installer can load one from JSON::

    {"kind": "any_of", "policies": [
        {"kind": "pinned", "certificates": ["-----BEGIN CERTIFICATE-----..."]},
        {"kind": "rooted", "roots": ["-----BEGIN CERTIFICATE-----..."]}
    ]}

Any object with an ``is_trusted(chain)`` method satisfies
:class:`CertificateVerifier` and can be passed to the verifier instead.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Annotated, Literal, Protocol, runtime_checkable

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from pydantic import BaseModel, Field, TypeAdapter

from aumai_bundleseal.certificates import certificate_to_pem

logger = logging.getLogger(__name__)


@runtime_checkable
class CertificateVerifier(Protocol):
    def is_trusted(self, chain: Sequence[x509.Certificate]) -> bool: ...


def _der(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(serialization.Encoding.DER)


def _load_pems(pems: Sequence[str]) -> list[x509.Certificate]:
    certificates: list[x509.Certificate] = []
    for pem in pems:
        certificates.extend(x509.load_pem_x509_certificates(pem.encode("ascii")))
    return certificates


def _issued_by(subject: x509.Certificate, issuer: x509.Certificate) -> bool:
    try:
        subject.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _may_issue(issuer: x509.Certificate, intermediates_below: int) -> bool:
    """Whether *issuer* is a CA allowed to sign at this depth of a chain.

    *intermediates_below* counts the CA certificates between *issuer* and the
    leaf, which must not exceed the issuer's ``path_length``.
    """
    try:
        constraints = issuer.extensions.get_extension_for_class(
            x509.BasicConstraints
        ).value
    except x509.ExtensionNotFound:
        return False
    if not constraints.ca:
        return False
    limit = constraints.path_length
    if limit is not None and intermediates_below > limit:
        return False
    try:
        usage = issuer.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        return True
    return usage.key_cert_sign


class PinnedCertificatePolicy(BaseModel):
    """Trust only chains whose leaf is one of the pinned certificates."""

    kind: Literal["pinned"] = "pinned"
    certificates: list[str] = Field(default_factory=list)

    def is_trusted(self, chain: Sequence[x509.Certificate]) -> bool:
        if not chain:
            return False
        leaf = _der(chain[0])
        return any(_der(pinned) == leaf for pinned in _load_pems(self.certificates))


class RootedCAPolicy(BaseModel):
    """Trust chains that are correctly linked and anchored in a root.

    Every certificate must be directly issued by the next one in the chain,
    and every issuer must be a CA (``BasicConstraints.ca``) within its
    ``path_length``. The chain is anchored when one of its elements is itself
    a root, or when its last element was directly issued by a root.
    """

    kind: Literal["rooted"] = "rooted"
    roots: list[str] = Field(default_factory=list)

    def is_trusted(self, chain: Sequence[x509.Certificate]) -> bool:
        if not chain:
            return False
        roots = _load_pems(self.roots)
        if not roots:
            return False

        for depth, (subject, issuer) in enumerate(zip(chain, chain[1:])):
            if not _issued_by(subject, issuer):
                logger.warning(
                    "Broken certificate chain: %s not issued by %s",
                    subject.subject.rfc4514_string(),
                    issuer.subject.rfc4514_string(),
                )
                return False
            if not _may_issue(issuer, depth):
                logger.warning(
                    "Certificate %s is not a CA permitted to issue %s",
                    issuer.subject.rfc4514_string(),
                    subject.subject.rfc4514_string(),
                )
                return False

        root_ders = {_der(root) for root in roots}
        if any(_der(cert) in root_ders for cert in chain):
            return True
        return any(
            _issued_by(chain[-1], root) and _may_issue(root, len(chain) - 1)
            for root in roots
        )


class AnyOfPolicy(BaseModel):
    """Trust a chain when any member policy does. Empty means never."""

    kind: Literal["any_of"] = "any_of"
    policies: list[TrustPolicy] = Field(default_factory=list)

    def is_trusted(self, chain: Sequence[x509.Certificate]) -> bool:
        return any(policy.is_trusted(chain) for policy in self.policies)


TrustPolicy = Annotated[
    PinnedCertificatePolicy | RootedCAPolicy | AnyOfPolicy,
    Field(discriminator="kind"),
]

AnyOfPolicy.model_rebuild()

_trust_policy_adapter: TypeAdapter[TrustPolicy] = TypeAdapter(TrustPolicy)


def load_trust_policy(raw: str | bytes) -> TrustPolicy:
    """Parse a JSON trust policy document."""
    return _trust_policy_adapter.validate_json(raw)


def pinned(*certificates: x509.Certificate) -> PinnedCertificatePolicy:
    return PinnedCertificatePolicy(
        certificates=[certificate_to_pem(cert) for cert in certificates]
    )


def rooted(*roots: x509.Certificate) -> RootedCAPolicy:
    return RootedCAPolicy(roots=[certificate_to_pem(cert) for cert in roots])


__all__ = [
    "AnyOfPolicy",
    "CertificateVerifier",
    "PinnedCertificatePolicy",
    "RootedCAPolicy",
    "TrustPolicy",
    "load_trust_policy",
    "pinned",
    "rooted",
]
