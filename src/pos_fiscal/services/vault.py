# src/pos_fiscal/services/vault.py
"""Per-tenant FBR credential storage.

Tokens are sealed with AES-256-GCM under a process-wide master key. The tenant
id is bound in as associated data, so a ciphertext copied onto another tenant's
row fails the integrity check just like a tampered one. The vault holds no
per-tenant state; every ``resolve`` decrypts afresh.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass, field

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.orm import Session

from pos_fiscal.core.errors import ConfigurationError, CredentialNotConfiguredError
from pos_fiscal.core.settings import settings
from pos_fiscal.models import TenantCredential

logger = logging.getLogger(__name__)

KEY_LENGTH_BYTES = 32
NONCE_LENGTH_BYTES = 12
TAG_LENGTH_BYTES = 16


@dataclass(frozen=True)
class ResolvedCredential:
    """Decrypted credential handed to the authority client for one call."""

    token: str = field(repr=False)
    base_url: str
    sandbox: bool


def decode_master_key(encoded: str) -> bytes:
    """Decode a URL-safe base64 master key, accepting omitted padding.

    Raises:
        ConfigurationError: If the value is not base64 or not 32 bytes long
    """
    padding = "=" * (-len(encoded) % 4)
    try:
        key = base64.urlsafe_b64decode(encoded.strip() + padding)
    except (binascii.Error, ValueError) as err:
        raise ConfigurationError("FBR_MASTER_KEY is not valid base64") from err
    if len(key) != KEY_LENGTH_BYTES:
        raise ConfigurationError("FBR_MASTER_KEY must decode to 32 bytes")
    return key


class CredentialVault:
    """Encrypts, stores and resolves tenant API tokens."""

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != KEY_LENGTH_BYTES:
            raise ConfigurationError("FBR master key must be 32 bytes")
        self._aead = AESGCM(master_key)

    def __repr__(self) -> str:
        return "CredentialVault(master_key=<redacted>)"

    @classmethod
    def from_settings(cls) -> CredentialVault:
        secret = settings.fbr_master_key
        if secret is None or not secret.get_secret_value():
            raise ConfigurationError("FBR_MASTER_KEY is not set")
        return cls(decode_master_key(secret.get_secret_value()))

    @staticmethod
    def _associated_data(tenant_id: int) -> bytes:
        return f"tenant:{tenant_id}".encode()

    def encrypt(self, tenant_id: int, token: str) -> tuple[bytes, bytes, bytes]:
        """Seal a token for a tenant.

        Returns:
            Tuple of (ciphertext, nonce, tag)
        """
        nonce = os.urandom(NONCE_LENGTH_BYTES)
        sealed = self._aead.encrypt(nonce, token.encode("utf-8"), self._associated_data(tenant_id))
        return sealed[:-TAG_LENGTH_BYTES], nonce, sealed[-TAG_LENGTH_BYTES:]

    def decrypt(self, tenant_id: int, ciphertext: bytes, nonce: bytes, tag: bytes) -> str | None:
        """Open a sealed token, returning None when the integrity check fails."""
        try:
            plaintext = self._aead.decrypt(
                nonce, ciphertext + tag, self._associated_data(tenant_id)
            )
        except (InvalidTag, ValueError):
            return None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            return None

    def store(
        self,
        db: Session,
        tenant_id: int,
        token: str,
        base_url: str | None = None,
        sandbox: bool = True,
    ) -> TenantCredential:
        """Encrypt and upsert a tenant's credential. The caller commits."""
        ciphertext, nonce, tag = self.encrypt(tenant_id, token)
        credential = db.get(TenantCredential, tenant_id)
        if credential is None:
            credential = TenantCredential(tenant_id=tenant_id)
            db.add(credential)
        credential.token_ciphertext = ciphertext
        credential.nonce = nonce
        credential.tag = tag
        credential.base_url = base_url or settings.fbr_default_base_url
        credential.sandbox_mode = sandbox
        credential.is_active = True
        db.flush()
        return credential

    def resolve(self, db: Session, tenant_id: int) -> ResolvedCredential:
        """Return the decrypted credential for a tenant.

        Raises:
            CredentialNotConfiguredError: If the tenant has no active credential
                or the stored ciphertext fails verification
        """
        credential = db.get(TenantCredential, tenant_id)
        if credential is None or not credential.is_active:
            raise CredentialNotConfiguredError()

        token = self.decrypt(tenant_id, credential.token_ciphertext, credential.nonce, credential.tag)
        if token is None:
            logger.warning("Stored FBR credential for tenant %s failed integrity check", tenant_id)
            raise CredentialNotConfiguredError()

        return ResolvedCredential(
            token=token,
            base_url=credential.base_url or settings.fbr_default_base_url,
            sandbox=credential.sandbox_mode,
        )


class _CredentialVaultSingleton:
    """Singleton wrapper for CredentialVault."""

    _instance: CredentialVault | None = None

    @classmethod
    def get_instance(cls) -> CredentialVault:
        """Get or create the singleton vault, keyed from settings."""
        if cls._instance is None:
            cls._instance = CredentialVault.from_settings()
        return cls._instance


def get_credential_vault() -> CredentialVault:
    """Return the process-wide credential vault."""
    return _CredentialVaultSingleton.get_instance()
