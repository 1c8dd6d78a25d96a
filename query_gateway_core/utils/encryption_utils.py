"""
AES-256-GCM encryption for tenant secrets at rest.

Stored tokens have the form ``nonce:tag:ciphertext`` with each component
hex-encoded. Every value is bound to the ``tenant-config`` associated data,
so a token produced for a different purpose will not decrypt here.
"""

import base64
import binascii
import hashlib
import os
from typing import Any, Dict, Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import AppConfig, get_config
from ..constants import EnvironmentVariable, Limits
from ..exceptions import ConfigurationError, DecryptionError
from .logger import get_logger

DELIMITER = ":"
ASSOCIATED_DATA = b"tenant-config"

_INSECURE_DEV_KEY = hashlib.sha256(b"query-gateway-insecure-development-key").digest()


def parse_master_key(raw: str) -> bytes:
    """
    Decode a configured master key.

    Accepts 64 hexadecimal characters or the base64 encoding of 32 bytes.

    Raises:
        ConfigurationError: If the value decodes to anything but 32 bytes
    """
    value = raw.strip()
    key: Optional[bytes] = None

    if len(value) == Limits.AES_KEY_BYTES * 2:
        try:
            key = bytes.fromhex(value)
        except ValueError:
            key = None

    if key is None:
        try:
            key = base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise ConfigurationError(
                "Master key is neither hex nor valid base64",
                setting=EnvironmentVariable.TENANT_ENCRYPTION_KEY.value,
                cause=e,
            ) from e

    if len(key) != Limits.AES_KEY_BYTES:
        raise ConfigurationError(
            f"Master key has invalid length {len(key)} (expected {Limits.AES_KEY_BYTES})",
            setting=EnvironmentVariable.TENANT_ENCRYPTION_KEY.value,
        )
    return key


class CredentialVault:
    """Encrypts and decrypts tenant secrets with a single master key."""

    def __init__(self, key: bytes, insecure: bool = False):
        if len(key) != Limits.AES_KEY_BYTES:
            raise ConfigurationError(
                f"Vault key must be {Limits.AES_KEY_BYTES} bytes, got {len(key)}",
                setting=EnvironmentVariable.TENANT_ENCRYPTION_KEY.value,
            )
        self._aesgcm = AESGCM(key)
        self.insecure = insecure

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "CredentialVault":
        """
        Build a vault from process configuration.

        A missing key is fatal unless ``allow_insecure_dev_key`` is set and the
        environment is not production, in which case a fixed, publicly known
        key is used and a warning is logged.
        """
        config = config or get_config()
        raw_key = config.security.encryption_key

        if raw_key:
            return cls(parse_master_key(raw_key))

        if config.is_production:
            raise ConfigurationError(
                "No master encryption key configured in production",
                setting=EnvironmentVariable.TENANT_ENCRYPTION_KEY.value,
                environment=config.environment,
            )

        if not config.security.allow_insecure_dev_key:
            raise ConfigurationError(
                "No master encryption key configured; set "
                f"{EnvironmentVariable.TENANT_ENCRYPTION_KEY.value} or opt in to "
                f"{EnvironmentVariable.ALLOW_INSECURE_DEV_KEY.value} for local development",
                setting=EnvironmentVariable.TENANT_ENCRYPTION_KEY.value,
                environment=config.environment,
            )

        get_logger().warning(
            "INSECURE development encryption key in use; tenant secrets are not protected",
            extra={"environment": config.environment},
        )
        return cls(_INSECURE_DEV_KEY, insecure=True)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt ``plaintext`` into a ``nonce:tag:ciphertext`` token."""
        nonce = os.urandom(Limits.AES_NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), ASSOCIATED_DATA)
        ciphertext, tag = sealed[: -Limits.AES_TAG_BYTES], sealed[-Limits.AES_TAG_BYTES :]
        return DELIMITER.join([nonce.hex(), tag.hex(), ciphertext.hex()])

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by :meth:`encrypt`.

        Raises:
            DecryptionError: If the token is malformed or fails authentication
        """
        parts = token.split(DELIMITER) if isinstance(token, str) else []
        if len(parts) != 3:
            raise DecryptionError(
                "Stored secret does not have exactly three components",
                component_count=len(parts),
            )

        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise DecryptionError("Stored secret is not hex encoded", cause=e) from e

        if len(nonce) != Limits.AES_NONCE_BYTES or len(tag) != Limits.AES_TAG_BYTES:
            raise DecryptionError(
                "Stored secret has an invalid nonce or tag length",
                nonce_length=len(nonce),
                tag_length=len(tag),
            )

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, ASSOCIATED_DATA)
        except InvalidTag as e:
            raise DecryptionError(
                "Stored secret failed authentication (tampered or wrong key)", cause=e
            ) from e

        return plaintext.decode("utf-8")


def encrypt_fields(
    vault: CredentialVault, data: Dict[str, Any], fields: Iterable[str]
) -> Dict[str, Any]:
    """Return a copy of ``data`` with the named string fields encrypted."""
    result = dict(data)
    for field in fields:
        if result.get(field) is not None:
            result[field] = vault.encrypt(result[field])
    return result


def decrypt_fields(
    vault: CredentialVault, data: Dict[str, Any], fields: Iterable[str]
) -> Dict[str, Any]:
    """Return a copy of ``data`` with the named fields decrypted."""
    result = dict(data)
    for field in fields:
        if result.get(field) is not None:
            result[field] = vault.decrypt(result[field])
    return result


_vault: Optional[CredentialVault] = None


def get_vault() -> CredentialVault:
    """Process-wide vault built from the current configuration."""
    global _vault
    if _vault is None:
        _vault = CredentialVault.from_config()
    return _vault


def reset_vault() -> None:
    global _vault
    _vault = None
