import base64
import binascii
import hashlib
import os
from functools import lru_cache

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.shared.core.config import get_settings
from app.shared.core.exceptions import ConfigurationError, DecryptionError

logger = structlog.get_logger()

# ============================================================================
# Credential Vault
# ============================================================================

ALGORITHM_TAG = "aes-256-gcm"
NONCE_LENGTH = 12
AUTH_TAG_LENGTH = 16


class CredentialVault:
    """
    Authenticated symmetric encryption for OAuth tokens and OAuth state blobs.

    Ciphertexts are self-describing: ``<algorithm>$<b64 nonce>$<b64 tag>$<b64 payload>``.
    A future key rotation can introduce a new algorithm tag while still
    decrypting values written under the current one.
    """

    def __init__(self, secret: str | None):
        if not secret:
            raise ConfigurationError(
                "SECURITY_ENCRYPTION_KEY is required for credential encryption",
                details={"setting": "SECURITY_ENCRYPTION_KEY"},
            )
        # 32-byte key derived from the configured secret
        self._aesgcm = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        payload, tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
        return "$".join(
            [
                ALGORITHM_TAG,
                base64.b64encode(nonce).decode("ascii"),
                base64.b64encode(tag).decode("ascii"),
                base64.b64encode(payload).decode("ascii"),
            ]
        )

    def decrypt(self, ciphertext: str) -> str:
        parts = (ciphertext or "").split("$")
        if len(parts) != 4:
            raise DecryptionError("Malformed ciphertext")
        algorithm, nonce_b64, tag_b64, payload_b64 = parts
        if algorithm != ALGORITHM_TAG:
            raise DecryptionError(f"Unsupported ciphertext algorithm: {algorithm!r}")

        try:
            nonce = base64.b64decode(nonce_b64, validate=True)
            tag = base64.b64decode(tag_b64, validate=True)
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Ciphertext is not valid base64") from exc

        if len(nonce) != NONCE_LENGTH or len(tag) != AUTH_TAG_LENGTH:
            raise DecryptionError("Ciphertext nonce or tag has an invalid length")

        try:
            plaintext = self._aesgcm.decrypt(nonce, payload + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Ciphertext failed authentication") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted value is not valid UTF-8") from exc


@lru_cache
def _vault_for_secret(secret: str) -> CredentialVault:
    return CredentialVault(secret)


def get_credential_vault() -> CredentialVault:
    """Vault bound to the configured SECURITY_ENCRYPTION_KEY."""
    secret = get_settings().SECURITY_ENCRYPTION_KEY
    if not secret:
        raise ConfigurationError(
            "SECURITY_ENCRYPTION_KEY is required for credential encryption",
            details={"setting": "SECURITY_ENCRYPTION_KEY"},
        )
    return _vault_for_secret(secret)


def encrypt_string(value: str) -> str:
    """Encrypt a secret for storage at rest."""
    return get_credential_vault().encrypt(value)


def decrypt_string(value: str) -> str:
    """
    Decrypt a stored secret. Fails closed: any tampering, truncation or
    unknown algorithm tag raises DecryptionError.
    """
    try:
        return get_credential_vault().decrypt(value)
    except DecryptionError as exc:
        logger.error("decryption_failed", error=exc.message)
        raise
