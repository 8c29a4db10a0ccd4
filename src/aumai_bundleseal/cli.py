"""CLI entry point for aumai-bundleseal."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import click
from cryptography.hazmat.primitives import serialization

from aumai_bundleseal.certificates import (
    CertificateIssuer,
    certificate_to_pem,
    decode_certificate_chain,
)
from aumai_bundleseal.core import FileSigner, FileVerifier
from aumai_bundleseal.errors import BundleSealError
from aumai_bundleseal.keys import (
    FileKeyProvider,
    KeyProvider,
    KeyStoreKeyProvider,
    create_key_provider,
    write_keystore,
)
from aumai_bundleseal.models import (
    CERTIFICATE_FILENAME,
    MANIFEST_FILENAME,
    DeveloperIdentity,
    Manifest,
)
from aumai_bundleseal.service import VerifyPackageService
from aumai_bundleseal.settings import BundleSealSettings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _select_key_provider(
    key: str | None,
    certificate: str | None,
    keystore: str | None,
    alias: str | None,
    password: str | None,
) -> KeyProvider:
    if key is not None:
        if certificate is None:
            raise click.UsageError("--key requires --certificate.")
        return FileKeyProvider(key, certificate_path=certificate)
    if keystore is not None:
        if alias is None or password is None:
            raise click.UsageError("--keystore requires --alias and --password.")
        return KeyStoreKeyProvider(keystore, password, alias)
    return create_key_provider()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """AumAI BundleSeal: cryptographic signing for application bundles."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


@main.command("keygen")
@click.option(
    "--output",
    default="keys",
    show_default=True,
    metavar="DIR",
    help="Directory to write private.pem, public.pem and certificate.pem.",
)
@click.option("--name", required=True, help="Developer name (certificate CN).")
@click.option("--organization", default=None, help="Organization (O).")
@click.option("--city", default=None, help="City (L).")
@click.option("--country", default=None, help="Two-letter country code (C).")
@click.option(
    "--key-size", default=4096, show_default=True, type=int, help="RSA key size."
)
@click.option(
    "--keystore",
    default=None,
    metavar="PATH",
    help="Also write a PKCS#12 keystore (requires --password).",
)
@click.option("--alias", default=None, help="Keystore alias (defaults to --name).")
@click.option("--password", default=None, help="Keystore password.")
def keygen_command(
    output: str,
    name: str,
    organization: str | None,
    city: str | None,
    country: str | None,
    key_size: int,
    keystore: str | None,
    alias: str | None,
    password: str | None,
) -> None:
    """Generate an RSA key pair and a self-signed developer certificate."""
    if keystore is not None and password is None:
        raise click.UsageError("--keystore requires --password.")

    identity = DeveloperIdentity(
        name=name, organization=organization, city=city, country_code=country
    )
    issuer = CertificateIssuer()
    try:
        key_pair = issuer.generate_key_pair(key_size)
        certificate = issuer.issue_self_signed(identity, key_pair)
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    out_dir = Path(output)
    out_dir.mkdir(parents=True, exist_ok=True)
    private_file = out_dir / "private.pem"
    private_file.write_bytes(
        key_pair.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    # Restrict private key permissions on POSIX
    try:
        os.chmod(private_file, 0o600)
    except NotImplementedError:
        pass
    (out_dir / "public.pem").write_bytes(
        key_pair.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    (out_dir / "certificate.pem").write_text(
        certificate_to_pem(certificate), encoding="ascii"
    )

    click.echo(f"Key pair and certificate written to '{output}/'")
    click.echo(f"  Subject: {identity.subject_string()}")
    if keystore is not None and password is not None:
        write_keystore(
            keystore,
            password.encode("utf-8"),
            alias or name,
            key_pair.private_key,
            [certificate],
        )
        click.echo(f"  Keystore: {keystore} (alias '{alias or name}')")


@main.command("sign")
@click.argument("bundle", type=click.Path(exists=True, file_okay=False))
@click.option("--version", "version", required=True, help="Release version.")
@click.option("--key", default=None, metavar="PATH", help="Private key file.")
@click.option(
    "--certificate", default=None, metavar="PATH", help="Certificate (chain) file."
)
@click.option("--keystore", default=None, metavar="PATH", help="PKCS#12 keystore.")
@click.option("--alias", default=None, help="Keystore key alias.")
@click.option("--password", default=None, help="Keystore password.")
@click.option("--workers", default=None, type=int, help="Worker threads.")
def sign_command(
    bundle: str,
    version: str,
    key: str | None,
    certificate: str | None,
    keystore: str | None,
    alias: str | None,
    password: str | None,
    workers: int | None,
) -> None:
    """Sign a bundle directory for a release version.

    Without --key or --keystore, key material comes from JDEPLOY_* environment
    variables, the configured keystore, then the OS keychain.
    """
    provider = _select_key_provider(key, certificate, keystore, alias, password)
    try:
        if workers is None:
            workers = BundleSealSettings().workers
        manifest = FileSigner(max_workers=workers).sign_directory(
            version, bundle, provider
        )
    except (BundleSealError, OSError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Signed bundle: {bundle}")
    click.echo(f"  Version: {version}")
    click.echo(f"  Files  : {len(manifest.entries)}")


@main.command("verify")
@click.argument("bundle")
@click.option("--version", "version", required=True, help="Release version.")
@click.option(
    "--trusted",
    required=True,
    metavar="SOURCE",
    help="Trusted certificates: PEM text or a .pem/.der/.cer/.crt/.p12/.pfx/.p7b file.",
)
@click.option("--password", default=None, help="Password for a PKCS#12 source.")
def verify_command(
    bundle: str, version: str, trusted: str, password: str | None
) -> None:
    """Verify a signed bundle. Exits 0 when signed correctly."""
    service = VerifyPackageService(
        FileVerifier(max_workers=BundleSealSettings().workers)
    )
    outcome = service.verify_package(
        version,
        bundle,
        trusted,
        password.encode("utf-8") if password is not None else None,
    )
    if outcome.verified:
        click.echo("Package verified successfully")
        return

    click.echo(f"Package verification failed: {outcome.error_message}")
    if outcome.verification_result is None:
        sys.exit(1)
    click.echo(f"Verification result: {outcome.verification_result.value}")
    sys.exit(outcome.verification_result.exit_code)


@main.command("inspect")
@click.argument("bundle", type=click.Path(exists=True, file_okay=False))
@click.option("--json-output", is_flag=True, help="Emit the raw manifest.")
def inspect_command(bundle: str, json_output: bool) -> None:
    """Display the manifest and signer of a signed bundle."""
    root = Path(bundle)
    try:
        raw = (root / MANIFEST_FILENAME).read_bytes()
        manifest = Manifest.from_json_bytes(raw)
    except (OSError, BundleSealError) as exc:
        click.echo(f"Error loading manifest: {exc}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(raw.decode("utf-8"))
        return

    certificate_path = root / CERTIFICATE_FILENAME
    if certificate_path.exists():
        try:
            chain = decode_certificate_chain(certificate_path.read_bytes())
        except BundleSealError as exc:
            click.echo(f"Error loading certificate chain: {exc}", err=True)
            sys.exit(1)
        click.echo(f"Signer       : {chain[0].subject.rfc4514_string()}")
        click.echo(f"Chain length : {len(chain)}")
    timestamp = manifest.timestamp.isoformat() if manifest.timestamp else "-"
    click.echo(f"Signed At    : {timestamp}")
    click.echo(f"Files        : {len(manifest.entries)}")
    click.echo("\nFiles in manifest:")
    for path, entry in sorted(manifest.entries.items()):
        click.echo(f"  {path}  sha256:{entry.hash[:16]}...")


if __name__ == "__main__":
    main()
