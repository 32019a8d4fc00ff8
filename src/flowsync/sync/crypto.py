"""
Snapshot encryption -- PBKDF2 key derivation plus AES-256-GCM.

The state never leaves the device in the clear. Each snapshot is
serialized to canonical UTF-8 JSON, encrypted under a key derived from
the user's passphrase, and wrapped in an ``EncryptedBlob`` envelope.

Parameters are frozen. Changing any of them makes every blob already
stored by other devices undecryptable:

    KDF:        PBKDF2-HMAC-SHA256, 100 000 iterations, 16-byte salt
    Cipher:     AES-256-GCM, 12-byte IV, 16-byte tag appended to ciphertext
    Encoding:   standard base64 for salt, iv and ciphertext
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from typing import Any, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from ..errors import DecryptionError, MalformedStateError
from ..models import EncryptedBlob, SyncStateDocument, now_ms

logger = logging.getLogger("flowsync.sync.crypto")

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
IV_LENGTH = 12
AES_KEY_LENGTH = 32

PLAIN_SALT_MARKER = "UNENCRYPTED"
PLAIN_IV_MARKER = "PLAIN"

BlobLike = Union[EncryptedBlob, dict]


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def generate_salt() -> bytes:
    """Return a fresh random 16-byte salt."""
    return os.urandom(SALT_LENGTH)


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a 256-bit AES key from a passphrase.

    Deterministic for a given (passphrase, salt) pair.

    Args:
        passphrase: User passphrase, encoded as UTF-8.
        salt: 16-byte salt stored alongside the ciphertext.

    Returns:
        32 bytes of key material.
    """
    kdf = PBKDF2HMAC(
        algorithm=SHA256(),
        length=AES_KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError(f"Invalid base64 in blob field '{field}'") from exc


def _canonical_json(data: Any) -> bytes:
    return json.dumps(
        data, ensure_ascii=False, sort_keys=True, separators=(",", ":")
    ).encode("utf-8")


def _coerce_blob(blob: BlobLike) -> EncryptedBlob:
    if isinstance(blob, EncryptedBlob):
        return blob
    try:
        return EncryptedBlob.model_validate(blob)
    except ValidationError as exc:
        raise DecryptionError("Unsupported encryption format") from exc


# ---------------------------------------------------------------------------
# Generic envelope
# ---------------------------------------------------------------------------

def encrypt_data(
    data: Any, passphrase: str, salt: Optional[bytes] = None
) -> EncryptedBlob:
    """Encrypt any JSON-serializable value into an ``EncryptedBlob``.

    A new random IV is drawn on every call, so encrypting the same
    value twice never yields the same ciphertext.

    Args:
        data: JSON-serializable value.
        passphrase: Encryption passphrase.
        salt: Existing salt to reuse. A fresh one is generated if omitted.

    Returns:
        The encrypted envelope.
    """
    salt = salt if salt is not None else generate_salt()
    if len(salt) != SALT_LENGTH:
        raise ValueError(f"Salt must be {SALT_LENGTH} bytes, got {len(salt)}")

    key = derive_key(passphrase, salt)
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(key).encrypt(iv, _canonical_json(data), None)

    return EncryptedBlob(
        salt=_b64encode(salt),
        iv=_b64encode(iv),
        ciphertext=_b64encode(ciphertext),
        encrypted_at=now_ms(),
    )


def decrypt_data(blob: BlobLike, passphrase: str) -> Any:
    """Decrypt an ``EncryptedBlob`` and parse its JSON payload.

    Raises:
        DecryptionError: Unsupported envelope, bad encoding, or the
            authentication tag did not verify (wrong passphrase or
            tampered data).
        MalformedStateError: The plaintext is not valid UTF-8 JSON.
    """
    blob = _coerce_blob(blob)
    if not is_encrypted_blob(blob):
        raise DecryptionError("Blob is not encrypted")

    salt = _b64decode(blob.salt, "salt")
    iv = _b64decode(blob.iv, "iv")
    ciphertext = _b64decode(blob.ciphertext, "ciphertext")
    if len(salt) != SALT_LENGTH or len(iv) != IV_LENGTH:
        raise DecryptionError("Unsupported encryption format")

    key = derive_key(passphrase, salt)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError(
            "Decryption failed. Incorrect passphrase or corrupted data."
        ) from exc

    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedStateError("Decrypted payload is not valid JSON") from exc


# ---------------------------------------------------------------------------
# Snapshot codec
# ---------------------------------------------------------------------------

def encrypt(
    document: SyncStateDocument, passphrase: str, salt: Optional[bytes] = None
) -> EncryptedBlob:
    """Encrypt a state snapshot."""
    return encrypt_data(document.to_wire(), passphrase, salt)


def parse_state(data: Any) -> SyncStateDocument:
    """Validate a decoded JSON value as a state snapshot.

    Raises:
        MalformedStateError: Not an object, or required fields are
            missing or of the wrong type.
    """
    if not isinstance(data, dict):
        raise MalformedStateError("State snapshot must be a JSON object")
    try:
        return SyncStateDocument.model_validate(data)
    except ValidationError as exc:
        raise MalformedStateError(f"Invalid state snapshot: {exc}") from exc


def decrypt(blob: BlobLike, passphrase: str) -> SyncStateDocument:
    """Decrypt a blob back into a state snapshot.

    Raises:
        DecryptionError: Wrong passphrase, tampered or unsupported blob.
        MalformedStateError: Plaintext is not a valid snapshot.
    """
    return parse_state(decrypt_data(blob, passphrase))


def get_salt_from_blob(blob: BlobLike) -> bytes:
    """Return the raw salt stored in a blob, for reuse on the next upload."""
    return _b64decode(_coerce_blob(blob).salt, "salt")


def verify_passphrase(blob: BlobLike, passphrase: str) -> bool:
    """Check a passphrase against a blob. Malformed payloads still raise."""
    try:
        decrypt_data(blob, passphrase)
    except DecryptionError:
        return False
    return True


# ---------------------------------------------------------------------------
# Unencrypted folder mode
# ---------------------------------------------------------------------------

def create_plain_blob(document: SyncStateDocument) -> EncryptedBlob:
    """Wrap a snapshot without encryption, keeping the envelope shape.

    Used for folders already protected by the user's own sync client.
    """
    return EncryptedBlob(
        salt=PLAIN_SALT_MARKER,
        iv=PLAIN_IV_MARKER,
        ciphertext=_b64encode(_canonical_json(document.to_wire())),
        encrypted_at=now_ms(),
    )


def is_encrypted_blob(blob: BlobLike) -> bool:
    """False for envelopes produced by ``create_plain_blob``."""
    blob = _coerce_blob(blob)
    return blob.salt != PLAIN_SALT_MARKER or blob.iv != PLAIN_IV_MARKER


def parse_plain_blob(blob: BlobLike) -> SyncStateDocument:
    """Read a snapshot out of an unencrypted envelope.

    Raises:
        DecryptionError: The blob is actually encrypted.
        MalformedStateError: The payload is not a valid snapshot.
    """
    blob = _coerce_blob(blob)
    if is_encrypted_blob(blob):
        raise DecryptionError(
            "Expected unencrypted sync data but found encrypted blob"
        )
    raw = _b64decode(blob.ciphertext, "ciphertext")
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedStateError("Unencrypted sync data is not valid JSON") from exc
    return parse_state(data)


# ---------------------------------------------------------------------------
# Transport encoding
# ---------------------------------------------------------------------------

def blob_to_json(blob: EncryptedBlob) -> str:
    """Serialize an envelope the way it is stored remotely."""
    return json.dumps(blob.to_wire(), indent=2)


def blob_from_json(text: str | bytes) -> EncryptedBlob:
    """Parse a stored envelope.

    Raises:
        DecryptionError: The text is not a supported envelope.
    """
    try:
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecryptionError("Stored blob is not valid JSON") from exc
    return _coerce_blob(data)
