"""At-rest sealing for OAuth tokens.

Sealed values are always tagged:

- ``plain:<value>``: no encryption key is configured.  The degraded mode is
  explicit and auditable; unmarked plaintext is never written.
- ``enc:<nonce>.<tag>.<ciphertext>``: AES-256-GCM with a random 96-bit
  nonce per call and a 128-bit authentication tag, each part base64url
  encoded without padding.

``open`` dispatches on the tag, so values sealed in either mode can be opened
later as long as the key is available for ``enc:`` values.  Opening an
``enc:`` value without a key raises :class:`ConfigurationError`; it never
falls back to returning ciphertext.

Usage::

    sealer = SecretSealer.from_raw_key(os.environ.get("INTEGRATION_ENCRYPTION_KEY"))
    stored = sealer.seal(refresh_token)
    refresh_token = sealer.open(stored)
"""

from __future__ import annotations

import base64
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from todo_studio.errors import ConfigurationError

PLAIN_PREFIX = "plain:"
ENCRYPTED_PREFIX = "enc:"
ENCRYPTION_KEY_ENV = "INTEGRATION_ENCRYPTION_KEY"

_KEY_BYTES = 32
_NONCE_BYTES = 12
_TAG_BYTES = 16
_HEX_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")


def load_encryption_key(raw: str | None) -> bytes | None:
    """Decode a configured key (64 hex chars, or standard or URL-safe base64 of 32 bytes).

    Returns ``None`` when *raw* is unset or blank.

    Raises
    ------
    ConfigurationError
        If the value does not decode to exactly 32 bytes.
    """
    if raw is None:
        return None
    normalized = raw.strip()
    if not normalized:
        return None

    if _HEX_KEY_PATTERN.fullmatch(normalized):
        key = bytes.fromhex(normalized)
    else:
        try:
            padded = normalized + "=" * (-len(normalized) % 4)
            if "-" in padded or "_" in padded:
                key = base64.urlsafe_b64decode(padded)
            else:
                key = base64.b64decode(padded)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(
                f"{ENCRYPTION_KEY_ENV} must be 32 bytes (64 hex chars or base64 encoded)."
            ) from exc

    if len(key) != _KEY_BYTES:
        raise ConfigurationError(
            f"{ENCRYPTION_KEY_ENV} must be 32 bytes (64 hex chars or base64 encoded)."
        )
    return key


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64decode(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


class SecretSealer:
    """Seal and open secrets with an optional AES-256-GCM key."""

    def __init__(self, key: bytes | None = None) -> None:
        if key is not None and len(key) != _KEY_BYTES:
            raise ConfigurationError(f"Encryption key must be {_KEY_BYTES} bytes")
        self._key = key

    @classmethod
    def from_raw_key(cls, raw: str | None) -> SecretSealer:
        return cls(load_encryption_key(raw))

    @classmethod
    def from_env(cls) -> SecretSealer:
        return cls.from_raw_key(os.environ.get(ENCRYPTION_KEY_ENV))

    @property
    def encrypts(self) -> bool:
        return self._key is not None

    def seal(self, plaintext: str) -> str:
        if self._key is None:
            return f"{PLAIN_PREFIX}{plaintext}"

        nonce = os.urandom(_NONCE_BYTES)
        sealed = AESGCM(self._key).encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext.
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return (
            f"{ENCRYPTED_PREFIX}{_b64encode(nonce)}.{_b64encode(tag)}.{_b64encode(ciphertext)}"
        )

    def open(self, sealed: str) -> str:
        if sealed.startswith(PLAIN_PREFIX):
            return sealed[len(PLAIN_PREFIX) :]

        if not sealed.startswith(ENCRYPTED_PREFIX):
            # Rows written before sealing existed.
            return sealed

        if self._key is None:
            raise ConfigurationError(
                f"{ENCRYPTION_KEY_ENV} is required to decrypt integration secrets in this database."
            )

        parts = sealed[len(ENCRYPTED_PREFIX) :].split(".")
        # The ciphertext part is empty when the sealed value was "".
        if len(parts) != 3 or not parts[0] or not parts[1]:
            raise ConfigurationError("Invalid encrypted payload format.")

        try:
            nonce, tag, ciphertext = (_b64decode(part) for part in parts)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError("Invalid encrypted payload format.") from exc

        try:
            plaintext = AESGCM(self._key).decrypt(nonce, ciphertext + tag, None)
        except (InvalidTag, ValueError) as exc:
            raise ConfigurationError(
                "Sealed secret could not be decrypted with the configured key."
            ) from exc
        return plaintext.decode("utf-8")

    def __repr__(self) -> str:
        mode = "encrypted" if self.encrypts else "plain"
        return f"SecretSealer(mode={mode!r})"
