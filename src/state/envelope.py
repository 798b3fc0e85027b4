"""
Authenticated encryption of snapshots for storage in the remote blob.

AES-256-GCM with a key derived from the user's credential through
PBKDF2-HMAC-SHA256. Every call draws a fresh salt and nonce; both travel with
the ciphertext:

    base64( [version:1] [salt:16] [nonce:12] [ciphertext + 16-byte tag] )
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import ValidationError

from common.errors import DecryptionFailed, EncryptionFailed, MalformedDocument, VersionUnsupported

from .models import EncryptedEnvelope, Snapshot
from .snapshot import parse_snapshot


ENCRYPTION_VERSION = 1
SALT_LENGTH = 16
NONCE_LENGTH = 12
KEY_LENGTH = 32
TAG_LENGTH = 16
KDF_ITERATIONS = 100_000

_HEADER_LENGTH = 1 + SALT_LENGTH + NONCE_LENGTH

logger = logging.getLogger(__name__)


def _derive_key(credential: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=KDF_ITERATIONS,
    )
    return kdf.derive(credential.encode("utf-8"))


def credential_fingerprint(credential: str) -> str:
    """SHA-256 hex digest identifying a credential without revealing it."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


def encrypt_text(plaintext: str, credential: str) -> str:
    """Encrypt `plaintext` and return the base64 payload."""
    if not credential:
        raise EncryptionFailed("No credential available for encryption")
    salt = os.urandom(SALT_LENGTH)
    nonce = os.urandom(NONCE_LENGTH)
    ciphertext = AESGCM(_derive_key(credential, salt)).encrypt(nonce, plaintext.encode("utf-8"), None)
    blob = bytes([ENCRYPTION_VERSION]) + salt + nonce + ciphertext
    return base64.b64encode(blob).decode("ascii")


def decrypt_text(payload: str, credential: str) -> str:
    """Reverse of `encrypt_text`.

    Raises VersionUnsupported when the payload was written by a newer codec and
    DecryptionFailed for anything that does not authenticate.
    """
    try:
        blob = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionFailed("Encrypted payload is not valid base64") from exc
    if not blob:
        raise DecryptionFailed("Encrypted payload is empty")

    version = blob[0]
    if version > ENCRYPTION_VERSION:
        raise VersionUnsupported(
            f"Unsupported encryption version: {version}. Maximum supported: {ENCRYPTION_VERSION}"
        )
    if version != ENCRYPTION_VERSION:
        raise DecryptionFailed(f"Unknown encryption format byte: {version}")
    if len(blob) < _HEADER_LENGTH + TAG_LENGTH:
        raise DecryptionFailed("Encrypted payload is truncated")

    salt = blob[1 : 1 + SALT_LENGTH]
    nonce = blob[1 + SALT_LENGTH : _HEADER_LENGTH]
    ciphertext = blob[_HEADER_LENGTH:]
    try:
        plaintext = AESGCM(_derive_key(credential, salt)).decrypt(nonce, ciphertext, None)
    except InvalidTag as ex:
        raise DecryptionFailed("Failed to decrypt data. Invalid credential or corrupted data.") from ex

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as ex:
        raise DecryptionFailed("Decrypted payload is not UTF-8 text") from ex


def can_decrypt(payload: str, credential: str) -> bool:
    """True if `credential` opens `payload`."""
    try:
        decrypt_text(payload, credential)
    except (DecryptionFailed, VersionUnsupported):
        return False
    return True


def is_encrypted_envelope(doc: Any) -> bool:
    """Cheap structural check; does not attempt decryption."""
    return (
        isinstance(doc, dict)
        and doc.get("encrypted") is True
        and isinstance(doc.get("version"), int)
        and not isinstance(doc.get("version"), bool)
        and isinstance(doc.get("data"), str)
        and isinstance(doc.get("timestamp"), str)
    )


def parse_envelope(doc: Any) -> EncryptedEnvelope:
    try:
        return EncryptedEnvelope.model_validate(doc)
    except ValidationError as ex:
        raise MalformedDocument(f"Invalid encrypted envelope: {ex.error_count()} error(s)") from ex


def encrypt_snapshot(
    snapshot: Snapshot,
    credential: str,
    *,
    now: Optional[datetime] = None,
) -> EncryptedEnvelope:
    # Deterministic JSON: stable key order, no extra whitespace
    plaintext = json.dumps(snapshot.to_wire(), separators=(",", ":"), sort_keys=True)
    return EncryptedEnvelope(
        version=ENCRYPTION_VERSION,
        payload=encrypt_text(plaintext, credential),
        created_at=now or datetime.now(UTC),
        credential_fingerprint=credential_fingerprint(credential),
    )


def decrypt_snapshot(envelope: EncryptedEnvelope, credential: str) -> Snapshot:
    """Decrypt and validate the Snapshot inside `envelope`.

    Raises VersionUnsupported, DecryptionFailed, or MalformedDocument when the
    decrypted content is not a valid snapshot.
    """
    if envelope.version > ENCRYPTION_VERSION:
        raise VersionUnsupported(
            f"Unsupported envelope version: {envelope.version}. Maximum supported: {ENCRYPTION_VERSION}"
        )
    if not credential:
        raise DecryptionFailed("Encrypted data found but no credential is configured")
    if envelope.credential_fingerprint and envelope.credential_fingerprint != credential_fingerprint(credential):
        logger.warning("Credential fingerprint mismatch; the encryption key may have changed")

    text = decrypt_text(envelope.payload, credential)
    try:
        doc = json.loads(text)
    except ValueError as ex:
        raise MalformedDocument("Decrypted payload is not JSON") from ex
    return parse_snapshot(doc)


__all__ = [
    "ENCRYPTION_VERSION",
    "KDF_ITERATIONS",
    "credential_fingerprint",
    "encrypt_text",
    "decrypt_text",
    "can_decrypt",
    "is_encrypted_envelope",
    "parse_envelope",
    "encrypt_snapshot",
    "decrypt_snapshot",
]
