# -*- coding: utf-8 -*-
"""Crypto primitives and the at-rest field codec.

This module holds *stateless* AEAD/KDF helpers plus :class:`AtRestCodec`,
which protects individual text columns with a key derived once from the
configured master passphrase. It does **not** perform any database I/O.

At-rest envelope wire format (three hex tokens)::

    hex(iv):hex(auth_tag):hex(ciphertext)
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple
import logging
import re
import secrets
import threading

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .config import Settings
from .errors import ConfigurationError, CryptoError

logger = logging.getLogger("journalstore.crypto")

# ---------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------

SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1

KEY_LEN = 32
IV_LEN = 16
TAG_LEN = 16

# Fixed application-wide salt for the at-rest key. Export files use a
# random per-file salt instead, so the two key spaces never overlap.
AT_REST_SALT = b"journal-app-salt"

_HEX_TOKEN_RE = re.compile(r"[0-9a-fA-F]+")


# ---------------------------------------------------------------------
# KDF / AEAD helpers
# ---------------------------------------------------------------------

def scrypt_kdf(password: str, salt: bytes, length: int = KEY_LEN) -> bytes:
    """Derive a key from a password using scrypt."""
    kdf = Scrypt(salt=salt, length=length, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(password.encode("utf-8"))

def aesgcm_encrypt(key: bytes, plaintext: bytes, aad: Optional[bytes] = None) -> Tuple[bytes, bytes, bytes]:
    """Encrypt *plaintext* with AES-GCM; return (iv, auth_tag, ciphertext)."""
    iv = secrets.token_bytes(IV_LEN)
    sealed = AESGCM(key).encrypt(iv, plaintext, aad)
    return iv, sealed[-TAG_LEN:], sealed[:-TAG_LEN]

def aesgcm_decrypt(
    key: bytes,
    iv: bytes,
    auth_tag: bytes,
    ciphertext: bytes,
    aad: Optional[bytes] = None,
) -> bytes:
    """Verify *auth_tag* and decrypt *ciphertext*; raise CryptoError on failure."""
    if len(iv) != IV_LEN or len(auth_tag) != TAG_LEN:
        raise CryptoError("Invalid IV or authentication tag length")
    try:
        return AESGCM(key).decrypt(iv, ciphertext + auth_tag, aad)
    except InvalidTag as exc:
        raise CryptoError("Authentication failed") from exc


# ---------------------------------------------------------------------
# At-rest codec
# ---------------------------------------------------------------------

class AtRestCodec:
    """Encrypts single text fields with a lazily derived, cached key.

    The key is derived at most once per codec; after that it is only read,
    so one instance can be shared across tasks and threads.
    """

    def __init__(self, passphrase: str, salt: bytes = AT_REST_SALT) -> None:
        if not passphrase:
            raise ConfigurationError("an encryption passphrase is required")
        self._passphrase = passphrase
        self._salt = salt
        self._key: Optional[bytes] = None
        self._lock = threading.Lock()

    @property
    def key(self) -> bytes:
        if self._key is None:
            with self._lock:
                if self._key is None:
                    self._key = scrypt_kdf(self._passphrase, self._salt)
        return self._key

    def encrypt(self, plaintext: str) -> str:
        """Return an envelope for *plaintext*; the empty string maps to itself."""
        if not plaintext:
            return ""
        iv, tag, ct = aesgcm_encrypt(self.key, plaintext.encode("utf-8"))
        return f"{iv.hex()}:{tag.hex()}:{ct.hex()}"

    def decrypt(self, envelope: str) -> str:
        """Decrypt an envelope produced by :meth:`encrypt`."""
        if not envelope:
            return ""
        parts = envelope.split(":")
        if len(parts) != 3:
            raise CryptoError("Invalid encrypted data format")
        try:
            iv, tag, ct = (bytes.fromhex(p) for p in parts)
        except ValueError as exc:
            raise CryptoError("Invalid encrypted data format") from exc
        plaintext = aesgcm_decrypt(self.key, iv, tag, ct)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CryptoError("Decrypted data is not valid UTF-8") from exc

    @staticmethod
    def is_envelope(value: object) -> bool:
        """True iff *value* is three colon-separated hexadecimal tokens."""
        if not isinstance(value, str) or not value:
            return False
        parts = value.split(":")
        return len(parts) == 3 and all(_HEX_TOKEN_RE.fullmatch(p) for p in parts)

    def safe_decrypt(self, value: str) -> str:
        """Decrypt envelopes, pass legacy plaintext through, never raise."""
        if not self.is_envelope(value):
            return value
        try:
            return self.decrypt(value)
        except CryptoError as exc:
            logger.error("Failed to decrypt stored field, returning it as-is: %s", exc)
            return value


def is_envelope(value: object) -> bool:
    return AtRestCodec.is_envelope(value)


@lru_cache(maxsize=None)
def default_codec() -> AtRestCodec:
    """Process-wide codec built from the environment on first use."""
    settings = Settings.from_env()
    settings.warn_if_insecure()
    return AtRestCodec(settings.encryption_key)

