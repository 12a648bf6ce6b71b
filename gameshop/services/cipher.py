import base64
import binascii
import hashlib
from typing import Any, NamedTuple, Optional

from cryptography.fernet import Fernet, InvalidToken

from ..utils.constants import ACTIVE_KEY_ID
from ..utils.errors import DecryptionError
from ..utils.logger import logger

DEV_FALLBACK_KEY = "default-fallback-key-for-dev-only"


class EncryptedValue(NamedTuple):
    ciphertext: str
    key_id: str


def _fernet_for(secret: str) -> Fernet:
    # Accept a ready Fernet key; anything else is treated as a passphrase.
    try:
        if len(base64.urlsafe_b64decode(secret.encode())) == 32:
            return Fernet(secret.encode())
    except (binascii.Error, ValueError):
        pass
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


class CredentialCipher:
    """
    Symmetric encryption for stored game account credentials.

    One key version is active at a time. Every ciphertext is stored with the
    key id it was produced under so a later rotation can decrypt mixed
    records. Instances hold no mutable state and can be shared freely.
    """

    def __init__(self, secret: Optional[str] = None, key_id: str = ACTIVE_KEY_ID):
        if not secret:
            logger.warning("CREDENTIAL_ENCRYPTION_KEY is not configured; using the development fallback key.")
            secret = DEV_FALLBACK_KEY
        self.key_id = key_id
        self._fernet = _fernet_for(secret)

    def encrypt(self, plaintext: Optional[str]) -> EncryptedValue:
        if plaintext is None or not str(plaintext).strip():
            return EncryptedValue("", self.key_id)
        token = self._fernet.encrypt(str(plaintext).encode("utf-8"))
        return EncryptedValue(token.decode("ascii"), self.key_id)

    def decrypt(self, ciphertext: Optional[str], key_id: Optional[str]) -> str:
        if key_id != self.key_id:
            logger.debug("Credential decrypt rejected: key id %r is not active", key_id)
            raise DecryptionError()
        if ciphertext is None or not str(ciphertext).strip():
            return ""
        try:
            return self._fernet.decrypt(str(ciphertext).encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            logger.debug("Credential decrypt rejected: %s", type(exc).__name__)
            raise DecryptionError() from None

    def encrypt_account(self, username: Optional[str], password: Optional[str]) -> dict[str, str]:
        encrypted_username = self.encrypt(username)
        encrypted_password = self.encrypt(password)
        return {
            "username": encrypted_username.ciphertext,
            "password": encrypted_password.ciphertext,
            "encryptionKeyId": encrypted_username.key_id,
        }

    def decrypt_account(self, game_account: Any) -> dict[str, str]:
        if not isinstance(game_account, dict):
            raise DecryptionError()
        key_id = str(game_account.get("encryptionKeyId") or "")
        return {
            "username": self.decrypt(game_account.get("username"), key_id),
            "password": self.decrypt(game_account.get("password"), key_id),
        }


def secure_placeholder(length: int = 8) -> str:
    return "•" * max(0, min(length, 12))
