"""
bootstrap_engine.cipher — Authenticated encryption for provisioned credentials.

AES-256-GCM with a fresh 96-bit nonce per call and a 128-bit tag.
Serialised form: base64(nonce):base64(tag):base64(ciphertext)

Key material is injected by the caller.  A value that decodes (hex first,
then base64) to exactly 32 bytes is used as the key; anything else is treated
as a passphrase and reduced to a key with SHA-256.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from collections.abc import Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from bootstrap_engine.config import BootstrapSettings, resolve_encryption_key
from bootstrap_engine.exceptions import ConfigurationError, IntegrityError, InvalidInput

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16
_SEPARATOR = ":"


def _decode_exact_key(raw: str) -> bytes | None:
    """Return raw key bytes when the configured value is an exact-length key."""
    try:
        decoded = bytes.fromhex(raw)
    except ValueError:
        decoded = b""
    if len(decoded) == KEY_LENGTH:
        return decoded

    try:
        decoded = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        return None
    if len(decoded) == KEY_LENGTH:
        return decoded
    return None


def derive_key(key_material: str) -> bytes:
    """Turn configured key material into a 32-byte AES key."""
    raw = key_material.strip()
    if not raw:
        raise ConfigurationError("Encryption key material is empty")
    exact = _decode_exact_key(raw)
    if exact is not None:
        return exact
    return hashlib.sha256(raw.encode("utf-8")).digest()


def _b64decode_strict(value: str) -> bytes:
    decoded = base64.b64decode(value, validate=True)
    # Each value has exactly one accepted encoding; non-zero padding bits are rejected.
    if base64.b64encode(decoded).decode("ascii") != value:
        raise ValueError("non-canonical base64")
    return decoded


def _split(ciphertext: str) -> tuple[bytes, bytes, bytes]:
    parts = ciphertext.split(_SEPARATOR)
    if len(parts) != 3:
        raise IntegrityError("Decryption failed: malformed ciphertext")
    try:
        nonce, tag, body = (_b64decode_strict(part) for part in parts)
    except (binascii.Error, ValueError) as exc:
        raise IntegrityError("Decryption failed: malformed ciphertext") from exc
    if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH or not body:
        raise IntegrityError("Decryption failed: ciphertext too short")
    return nonce, tag, body


class SecretCipher:
    """Encrypts and decrypts secret strings with a single injected key.

    Construct with key_material=None to get a cipher that raises
    ConfigurationError on use.  A key_loader is called on first use instead
    of at construction, so an unreadable key only fails the step that needs it.
    """

    def __init__(
        self,
        key_material: str | None,
        *,
        key_loader: Callable[[], str | None] | None = None,
    ) -> None:
        self._key = derive_key(key_material) if key_material else None
        self._key_loader = None if self._key is not None else key_loader

    @classmethod
    def from_settings(
        cls,
        settings: BootstrapSettings,
        *,
        secretsmanager_client: object = None,
    ) -> SecretCipher:
        """Build a cipher whose key is resolved on first use, not here."""
        return cls(
            None,
            key_loader=lambda: resolve_encryption_key(
                settings, secretsmanager_client=secretsmanager_client
            ),
        )

    def _load_key(self) -> bytes | None:
        if self._key_loader is not None:
            key_material = self._key_loader()
            self._key = derive_key(key_material) if key_material else None
            self._key_loader = None
        return self._key

    @property
    def configured(self) -> bool:
        """True when a key is available.  May raise ConfigurationError on first use."""
        return self._load_key() is not None

    def _aead(self) -> AESGCM:
        key = self._load_key()
        if key is None:
            raise ConfigurationError(
                "Encryption key is not configured; set BOOTSTRAP_ENCRYPTION_KEY "
                "or BOOTSTRAP_ENCRYPTION_KEY_SECRET_ID"
            )
        return AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        aead = self._aead()
        if not isinstance(plaintext, str) or not plaintext:
            raise InvalidInput("Cannot encrypt: plaintext must be a non-empty string")

        nonce = os.urandom(NONCE_LENGTH)
        sealed = aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext.
        body, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return _SEPARATOR.join(
            base64.b64encode(part).decode("ascii") for part in (nonce, tag, body)
        )

    def decrypt(self, ciphertext: str) -> str:
        aead = self._aead()
        if not isinstance(ciphertext, str) or not ciphertext:
            raise InvalidInput("Cannot decrypt: ciphertext must be a non-empty string")

        nonce, tag, body = _split(ciphertext)
        try:
            plaintext = aead.decrypt(nonce, body + tag, None)
        except InvalidTag as exc:
            raise IntegrityError(
                "Decryption failed: invalid encryption key or corrupted data"
            ) from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IntegrityError("Decryption failed: plaintext is not valid UTF-8") from exc

    @staticmethod
    def looks_encrypted(value: str | None) -> bool:
        """Heuristic check used to tell legacy plaintext from ciphertext.

        Never a security boundary: only the tag check in decrypt() is.
        """
        if not value or not isinstance(value, str):
            return False
        try:
            _split(value)
        except IntegrityError:
            return False
        return True
