import logging
import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from quota_app.security_config import get_app_secret

KEY_SALT = b"kuota-credential-salt"
KEY_LENGTH = 32
NONCE_BYTES = 16
TAG_BYTES = 16
SELF_CHECK_PLAINTEXT = "kuota-vault-self-check"

logger = logging.getLogger(__name__)


def derive_key(secret: str) -> bytes:
    kdf = Scrypt(salt=KEY_SALT, length=KEY_LENGTH, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


class CredentialVault:
    """
    Authenticated encryption for credentials at rest.

    Tokens are `<nonce hex>:<tag hex>:<ciphertext hex>` under AES-256-GCM.
    Decryption fails closed: anything malformed, tampered with, or sealed
    under another secret decrypts to "".
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("CredentialVault requires a non-empty secret")
        self._aead = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str | None) -> str:
        if not plaintext:
            return ""
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        parts = token.split(":")
        if len(parts) != 3:
            logger.warning("Refusing to decrypt credential with malformed envelope")
            return ""
        try:
            nonce, tag, ciphertext = (bytes.fromhex(part) for part in parts)
            if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
                raise ValueError("unexpected nonce or tag length")
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except (ValueError, InvalidTag):
            logger.warning("Credential failed to decrypt (tampered, or sealed under another secret)")
            return ""
        return plaintext.decode("utf-8")

    def self_check(self) -> bool:
        return self.decrypt(self.encrypt(SELF_CHECK_PLAINTEXT)) == SELF_CHECK_PLAINTEXT


_vault: CredentialVault | None = None


def get_vault(root_dir: Path | None = None) -> CredentialVault:
    global _vault
    if _vault is None:
        _vault = CredentialVault(get_app_secret(root_dir))
    return _vault


def reset_vault() -> None:
    global _vault
    _vault = None
