"""
Token Encryption at Rest.

Encrypts the session token before the ``SessionStore`` hands it to the
key-value store, so a copied database file does not leak a usable
bearer token.

Security model
--------------
- The key is derived at runtime from machine identity (hostname + OS
  username) via PBKDF2-HMAC-SHA256 with a per-install random 32-byte
  salt.  The key is never persisted.
- Tokens are sealed with AES-256-GCM (confidentiality + integrity).
- Stored form: ``base64(nonce || tag || ciphertext)``.
- If the machine identity or the salt changes, old ciphertexts become
  undecryptable; ``decrypt`` then raises ``ValueError`` and the store
  treats the token as absent, which sends the user back to login.
"""

from __future__ import annotations

import base64
import getpass
import os
import platform
import socket
import stat
import threading
from pathlib import Path
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2

from authclient.logger import StructuredLogger

_NONCE_LEN: int = 16
_TAG_LEN: int = 16


class TokenCipher:
    """AES-256-GCM sealing of short secrets with a machine-bound key.

    Parameters
    ----------
    salt_path:
        File holding the per-install random salt; created on first use
        with owner-only permissions.
    logger:
        Structured logger instance.
    iterations:
        PBKDF2 iteration count.  The default follows the OWASP 2023
        recommendation; tests pass a small value.
    identity:
        Key material override.  Defaults to ``"<hostname>:<os user>"``.
    """

    _KEY_LENGTH: int = 32  # 256 bits

    def __init__(
        self,
        salt_path: Path,
        logger: StructuredLogger,
        iterations: int = 600_000,
        identity: Optional[str] = None,
    ) -> None:
        self._salt_path: Path = salt_path
        self._logger: StructuredLogger = logger
        self._iterations: int = iterations
        self._identity: Optional[str] = identity
        self._key: Optional[bytes] = None
        self._key_lock: threading.Lock = threading.Lock()

    def encrypt(self, plaintext: str) -> str:
        """Seal *plaintext* and return the base64 text form.

        Raises
        ------
        OSError
            If the salt file cannot be created or read.
        """
        cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=os.urandom(_NONCE_LEN))
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
        return base64.b64encode(cipher.nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, sealed: str) -> str:
        """Open a value produced by :meth:`encrypt`.

        Raises
        ------
        ValueError
            If the value is malformed or fails authentication (tampered,
            or sealed under a different machine identity / salt).
        """
        try:
            blob: bytes = base64.b64decode(sealed.encode("ascii"), validate=True)
        except (ValueError, UnicodeEncodeError) as exc:
            raise ValueError(f"Sealed token is not valid base64: {exc}") from exc

        if len(blob) < _NONCE_LEN + _TAG_LEN:
            raise ValueError("Sealed token is truncated.")

        nonce = blob[:_NONCE_LEN]
        tag = blob[_NONCE_LEN:_NONCE_LEN + _TAG_LEN]
        ciphertext = blob[_NONCE_LEN + _TAG_LEN:]

        cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=nonce)
        plaintext: bytes = cipher.decrypt_and_verify(ciphertext, tag)
        return plaintext.decode("utf-8")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive (once) and return the 256-bit AES key."""
        with self._key_lock:
            if self._key is None:
                identity: str = self._identity or f"{socket.gethostname()}:{getpass.getuser()}"
                self._key = PBKDF2(
                    password=identity,
                    salt=self._get_or_create_salt(),
                    dkLen=self._KEY_LENGTH,
                    count=self._iterations,
                    hmac_hash_module=SHA256,
                )
            return self._key

    def _get_or_create_salt(self) -> bytes:
        """Return the per-install salt, creating it on first run.

        Raises
        ------
        OSError
            If the salt file cannot be read or written.  Callers must
            refuse to store the token rather than fall back to a static
            salt.
        """
        if self._salt_path.exists():
            data: bytes = self._salt_path.read_bytes()
            if len(data) == 32:
                return data
            self._logger.warning(
                "Salt file has unexpected length (%d); regenerating.",
                len(data),
            )

        salt: bytes = os.urandom(32)
        self._salt_path.parent.mkdir(parents=True, exist_ok=True)
        self._salt_path.write_bytes(salt)
        if platform.system() != "Windows":
            self._salt_path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0o600

        self._logger.info("Token salt created at %s.", self._salt_path)
        return salt
