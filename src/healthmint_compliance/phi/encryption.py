"""Field-level encryption using AES-256-GCM.

HIPAA Reference: 164.312(a)(2)(iv) - Encryption and Decryption

Two ciphertext shapes are produced:

- a lightweight opaque token (``v1.<base64url(iv || ciphertext || tag)>``)
  for values carried through buffers and transports, and
- an ``EncryptedField`` (hex ``encrypted_data``/``iv``/``auth_tag``) for
  identifiable fields persisted at rest.

When no explicit key is configured, the key is derived from the session
credential in the audit context (or the server secret outside a session),
the installation seed and, when present, the client user agent.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
import secrets
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..audit.context import get_audit_context
from ..errors import DecryptionError, EncryptionError
from ..secrets import MaskedSecret

ENV_KEY_NAME = "HEALTHMINT_PHI_KEY"
ENV_KEY_FILE = "HEALTHMINT_PHI_KEY_FILE"

KEY_SIZE_BYTES = 32
IV_SIZE_BYTES = 12
TAG_SIZE_BYTES = 16
TOKEN_VERSION = "v1"

logger = logging.getLogger(__name__)


class KeySource(Enum):
    EXPLICIT = "explicit"
    ENVIRONMENT = "environment"
    FILE = "file"
    DERIVED = "derived"


@dataclass(frozen=True)
class EncryptedField:
    """Authenticated ciphertext of a single field, hex encoded."""

    encrypted_data: str
    iv: str
    auth_tag: str

    def to_dict(self) -> dict[str, str]:
        return {"encryptedData": self.encrypted_data, "iv": self.iv, "authTag": self.auth_tag}

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "EncryptedField":
        try:
            return cls(
                encrypted_data=data["encryptedData"],
                iv=data["iv"],
                auth_tag=data["authTag"],
            )
        except (KeyError, TypeError) as e:
            raise DecryptionError(f"Malformed encrypted field: missing {e}") from e

    @staticmethod
    def looks_encrypted(value: Any) -> bool:
        return isinstance(value, dict) and {"encryptedData", "iv", "authTag"} <= value.keys()


def derive_key(
    credential: str | MaskedSecret,
    installation_seed: str,
    user_agent: str | None = None,
) -> bytes:
    """SHA-256 over credential || seed || user agent."""
    if isinstance(credential, MaskedSecret):
        credential = credential.get_value()
    material = credential + installation_seed + (user_agent or "")
    return hashlib.sha256(material.encode("utf-8")).digest()


def content_hash(content: str | bytes) -> str:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def coerce_key(key: bytes | str | MaskedSecret) -> bytes:
    """Raw 32-byte keys are used as is; passphrases are hashed to 32 bytes."""
    if isinstance(key, MaskedSecret):
        key = key.get_value()
    if isinstance(key, bytes):
        if len(key) != KEY_SIZE_BYTES:
            raise EncryptionError(f"Encryption key must be {KEY_SIZE_BYTES} bytes, got {len(key)}")
        return key
    if not isinstance(key, str):
        raise EncryptionError(f"Unsupported key type: {type(key).__name__}")
    if not key:
        raise EncryptionError("Encryption passphrase must not be empty")
    return hashlib.sha256(key.encode("utf-8")).digest()


class KeyManager:
    """Resolves the field-encryption key.

    Resolution order: explicit key, ``HEALTHMINT_PHI_KEY`` (base64), key file
    (``HEALTHMINT_PHI_KEY_FILE``), then derivation from the session
    credential or server secret.
    """

    def __init__(
        self,
        key: bytes | None = None,
        installation_seed: str = "",
        server_secret: MaskedSecret | None = None,
        key_env_var: str = ENV_KEY_NAME,
        key_file: Path | None = None,
    ):
        self._explicit_key = coerce_key(key) if key is not None else None
        self._installation_seed = installation_seed
        self._server_secret = server_secret
        self._key_env_var = key_env_var
        self._key_file = key_file
        self._cached_static_key: bytes | None = None
        self._static_source: KeySource | None = None

    @property
    def key_source(self) -> KeySource:
        if self._explicit_key is not None:
            return KeySource.EXPLICIT
        static = self._load_static_key()
        if static is not None:
            return self._static_source or KeySource.ENVIRONMENT
        return KeySource.DERIVED

    def get_key(self) -> bytes:
        """Return the key for the current context.

        Raises:
            EncryptionError: If no key material is available.
        """
        if self._explicit_key is not None:
            return self._explicit_key

        static = self._load_static_key()
        if static is not None:
            return static

        ctx = get_audit_context()
        if ctx.session_token is not None:
            return derive_key(ctx.session_token, self._installation_seed, ctx.user_agent)
        if self._server_secret is not None:
            return derive_key(self._server_secret, self._installation_seed)

        raise EncryptionError(
            "No encryption key available. Set HEALTHMINT_PHI_KEY, "
            "HEALTHMINT_ENCRYPTION_SECRET or run inside an authenticated session."
        )

    def _load_static_key(self) -> bytes | None:
        if self._cached_static_key is not None:
            return self._cached_static_key

        env_key = os.environ.get(self._key_env_var)
        if env_key:
            self._cached_static_key = self._decode(env_key, self._key_env_var)
            self._static_source = KeySource.ENVIRONMENT
            return self._cached_static_key

        key_file = self._key_file or (
            Path(os.environ[ENV_KEY_FILE]) if os.environ.get(ENV_KEY_FILE) else None
        )
        if key_file is not None:
            if not key_file.exists():
                raise EncryptionError(f"Key file not found: {key_file}")
            if key_file.stat().st_mode & 0o077:
                logger.warning(
                    "Key file %s has insecure permissions. Should be 0600 or 0400.", key_file
                )
            self._cached_static_key = self._decode(key_file.read_text().strip(), str(key_file))
            self._static_source = KeySource.FILE
            return self._cached_static_key

        return None

    @staticmethod
    def _decode(encoded: str, origin: str) -> bytes:
        try:
            key = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionError(f"Invalid base64 key in {origin}: {e}") from e
        if len(key) != KEY_SIZE_BYTES:
            raise EncryptionError(f"Encryption key must be {KEY_SIZE_BYTES} bytes, got {len(key)}")
        return key

    def clear_cache(self) -> None:
        self._cached_static_key = None
        self._static_source = None

    @staticmethod
    def generate_key() -> bytes:
        return secrets.token_bytes(KEY_SIZE_BYTES)

    @staticmethod
    def key_to_base64(key: bytes) -> str:
        return base64.b64encode(key).decode("ascii")


def _serialize(value: Any) -> bytes:
    try:
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncryptionError(f"Value is not JSON serializable: {type(value).__name__}") from e


def _deserialize(plaintext: bytes) -> Any:
    text = plaintext.decode("utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


class FieldCryptographer:
    """Encrypts and decrypts single field values with AES-256-GCM.

    Values are JSON-encoded before encryption so that every JSON value,
    strings included, survives a round trip unchanged. Decryption fails
    closed with ``DecryptionError``.
    """

    def __init__(self, key_manager: KeyManager | None = None):
        self._key_manager = key_manager or KeyManager()

    @property
    def key_manager(self) -> KeyManager:
        return self._key_manager

    def _cipher(self, key: bytes | str | MaskedSecret | None) -> AESGCM:
        raw = coerce_key(key) if key is not None else self._key_manager.get_key()
        return AESGCM(raw)

    def _decryption_cipher(self, key: bytes | str | MaskedSecret | None) -> AESGCM:
        """Cipher for decryption. An unusable explicit key fails as a decryption error."""
        if key is None:
            return self._cipher(None)
        try:
            return self._cipher(key)
        except EncryptionError as e:
            raise DecryptionError(f"Invalid decryption key: {e.message}") from e

    def encrypt(self, value: Any, key: bytes | str | MaskedSecret | None = None) -> str:
        cipher = self._cipher(key)
        iv = secrets.token_bytes(IV_SIZE_BYTES)
        sealed = cipher.encrypt(iv, _serialize(value), None)
        token = base64.urlsafe_b64encode(iv + sealed).decode("ascii")
        return f"{TOKEN_VERSION}.{token}"

    def decrypt(self, ciphertext: str, key: bytes | str | MaskedSecret | None = None) -> Any:
        if not isinstance(ciphertext, str) or not ciphertext.startswith(f"{TOKEN_VERSION}."):
            raise DecryptionError("Unrecognized ciphertext format")
        try:
            blob = base64.urlsafe_b64decode(ciphertext[len(TOKEN_VERSION) + 1 :].encode("ascii"))
        except (binascii.Error, ValueError) as e:
            raise DecryptionError("Ciphertext is not valid base64") from e
        if len(blob) < IV_SIZE_BYTES + TAG_SIZE_BYTES:
            raise DecryptionError("Ciphertext is truncated")

        cipher = self._decryption_cipher(key)
        try:
            plaintext = cipher.decrypt(blob[:IV_SIZE_BYTES], blob[IV_SIZE_BYTES:], None)
        except InvalidTag as e:
            raise DecryptionError("Decryption failed: wrong key or corrupted ciphertext") from e
        return _deserialize(plaintext)

    def encrypt_field(
        self, value: Any, key: bytes | str | MaskedSecret | None = None
    ) -> EncryptedField:
        cipher = self._cipher(key)
        iv = secrets.token_bytes(IV_SIZE_BYTES)
        sealed = cipher.encrypt(iv, _serialize(value), None)
        return EncryptedField(
            encrypted_data=sealed[:-TAG_SIZE_BYTES].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-TAG_SIZE_BYTES:].hex(),
        )

    def decrypt_field(
        self,
        encrypted: EncryptedField | dict[str, str],
        key: bytes | str | MaskedSecret | None = None,
    ) -> Any:
        if isinstance(encrypted, dict):
            encrypted = EncryptedField.from_dict(encrypted)
        try:
            data = bytes.fromhex(encrypted.encrypted_data)
            iv = bytes.fromhex(encrypted.iv)
            tag = bytes.fromhex(encrypted.auth_tag)
        except (TypeError, ValueError) as e:
            raise DecryptionError("Encrypted field is not valid hex") from e
        if len(iv) != IV_SIZE_BYTES or len(tag) != TAG_SIZE_BYTES:
            raise DecryptionError("Encrypted field has invalid iv or auth tag length")

        cipher = self._decryption_cipher(key)
        try:
            plaintext = cipher.decrypt(iv, data + tag, None)
        except InvalidTag as e:
            raise DecryptionError("Decryption failed: wrong key or corrupted ciphertext") from e
        return _deserialize(plaintext)

    def encrypt_fields(
        self, record: dict[str, Any], fields: set[str] | frozenset[str]
    ) -> dict[str, Any]:
        """Copy of ``record`` with the named top-level fields encrypted at rest."""
        result = dict(record)
        for name in fields:
            if name in result and result[name] is not None:
                result[name] = self.encrypt_field(result[name]).to_dict()
        return result

    def decrypt_fields(
        self, record: dict[str, Any], fields: set[str] | frozenset[str]
    ) -> dict[str, Any]:
        result = dict(record)
        for name in fields:
            if EncryptedField.looks_encrypted(result.get(name)):
                result[name] = self.decrypt_field(result[name])
        return result


class KeyRotator:
    """Re-encrypts stored fields from an old key to a new key."""

    def __init__(self, old: FieldCryptographer, new: FieldCryptographer):
        self._old = old
        self._new = new

    def rotate_field(self, encrypted: EncryptedField | dict[str, str]) -> EncryptedField:
        return self._new.encrypt_field(self._old.decrypt_field(encrypted))

    def rotate_record(
        self, record: dict[str, Any], fields: set[str] | frozenset[str]
    ) -> dict[str, Any]:
        result = dict(record)
        rotated = 0
        for name in fields:
            if EncryptedField.looks_encrypted(result.get(name)):
                result[name] = self.rotate_field(result[name]).to_dict()
                rotated += 1
        logger.debug("Rotated %d encrypted fields", rotated)
        return result
