"""Demo cipher envelope used to simulate end-to-end encryption.

This is NOT real encryption: the passphrase and salt are public constants. It
exists so the message flow can carry opaque ciphertext until proper key
management replaces it.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from xlai.utils.logging import get_logger

log = get_logger(__name__)

DEMO_PASSPHRASE = "xlai-demo-passphrase-v1"
DEMO_SALT = "xlai-demo-salt-v1"
PBKDF2_ITERATIONS = 100_000
IV_LENGTH = 12
DECRYPTION_FAILED = "[decryption failed]"


class DemoCipher:
    def __init__(
        self,
        passphrase: str = DEMO_PASSPHRASE,
        salt: str = DEMO_SALT,
        *,
        iterations: int = PBKDF2_ITERATIONS,
    ) -> None:
        self._passphrase = passphrase.encode("utf-8")
        self._salt = salt.encode("utf-8")
        self._iterations = iterations
        self._aead: AESGCM | None = None

    def _cipher(self) -> AESGCM:
        # derived once per instance
        if self._aead is None:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=self._salt,
                iterations=self._iterations,
            )
            self._aead = AESGCM(kdf.derive(self._passphrase))
        return self._aead

    def encrypt(self, plain_text: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._cipher().encrypt(iv, plain_text.encode("utf-8"), None)
        return base64.b64encode(iv + sealed).decode("ascii")

    def decrypt(self, envelope: str) -> str:
        try:
            combined = base64.b64decode(envelope, validate=True)
            if len(combined) <= IV_LENGTH:
                raise ValueError("envelope too short")
            iv, sealed = combined[:IV_LENGTH], combined[IV_LENGTH:]
            return self._cipher().decrypt(iv, sealed, None).decode("utf-8")
        except (InvalidTag, ValueError, binascii.Error) as exc:
            log.warning("demo_decrypt_failed", error=type(exc).__name__)
            return DECRYPTION_FAILED
