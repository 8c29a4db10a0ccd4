"""Environment-driven configuration for key acquisition and worker pools."""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class BundleSealSettings(BaseSettings):
    """Settings read from ``JDEPLOY_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="JDEPLOY_", extra="ignore")

    # Inline PEM text or a path to DER/PEM bytes
    private_key: str | None = None
    public_key: str | None = None
    certificate: str | None = None
    root_certificate: str | None = None

    keystore_path: Path = Path.home() / ".jdeploy" / "keystore.p12"
    keystore_password: str | None = None
    developer_id: str | None = None
    developer_ca_id: str | None = None

    keychain_timeout: float | None = None  # seconds
    workers: int | None = None


__all__ = ["BundleSealSettings"]
