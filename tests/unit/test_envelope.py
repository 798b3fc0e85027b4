from __future__ import annotations

import base64
import json
from datetime import UTC, datetime

import pytest

from common.errors import DecryptionFailed, EncryptionFailed, MalformedDocument, VersionUnsupported
from state.envelope import (
    ENCRYPTION_VERSION,
    can_decrypt,
    credential_fingerprint,
    decrypt_snapshot,
    decrypt_text,
    encrypt_snapshot,
    encrypt_text,
    is_encrypted_envelope,
    parse_envelope,
)
from state.models import Snapshot


TOKEN = "ghp_example_token"


def _snapshot() -> Snapshot:
    return Snapshot.model_validate(
        {
            "schemaVersion": 1,
            "trackers": [{"id": "t1", "title": "Water", "type": "count", "isNumber": True, "goal": 8}],
            "entries": [
                {
                    "id": "e1",
                    "trackerId": "t1",
                    "date": "2024-05-01",
                    "value": 3,
                    "comment": "hot day #summer",
                    "createdAt": "2024-05-01T10:00:00Z",
                }
            ],
            "tags": [
                {"id": "e1:summer", "entryId": "e1", "trackerId": "t1", "tagName": "summer"}
            ],
            "exportedAt": "2024-05-01T12:00:00Z",
            "lastChangeAt": "2024-05-01T10:00:00Z",
        }
    )


def test_text_round_trip_uses_fresh_salt_and_nonce():
    a = encrypt_text("hello", TOKEN)
    b = encrypt_text("hello", TOKEN)
    assert a != b
    assert decrypt_text(a, TOKEN) == "hello"
    assert decrypt_text(b, TOKEN) == "hello"

    blob = base64.b64decode(a)
    assert blob[0] == ENCRYPTION_VERSION
    # version + salt + nonce + ciphertext(5) + tag
    assert len(blob) == 1 + 16 + 12 + 5 + 16


def test_wrong_credential_fails_to_decrypt():
    payload = encrypt_text("secret", TOKEN)
    with pytest.raises(DecryptionFailed):
        decrypt_text(payload, "another-token")
    assert can_decrypt(payload, TOKEN)
    assert not can_decrypt(payload, "another-token")


def test_tampered_payload_fails_to_decrypt():
    blob = bytearray(base64.b64decode(encrypt_text("secret", TOKEN)))
    blob[-1] ^= 0x01
    with pytest.raises(DecryptionFailed):
        decrypt_text(base64.b64encode(bytes(blob)).decode(), TOKEN)


def test_newer_format_byte_is_version_unsupported():
    blob = bytearray(base64.b64decode(encrypt_text("secret", TOKEN)))
    blob[0] = ENCRYPTION_VERSION + 1
    with pytest.raises(VersionUnsupported):
        decrypt_text(base64.b64encode(bytes(blob)).decode(), TOKEN)


@pytest.mark.parametrize("payload", ["not base64!!", "", base64.b64encode(b"\x01short").decode()])
def test_garbage_payloads_fail_cleanly(payload):
    with pytest.raises(DecryptionFailed):
        decrypt_text(payload, TOKEN)


def test_encrypt_requires_credential():
    with pytest.raises(EncryptionFailed):
        encrypt_text("x", "")


def test_snapshot_envelope_round_trip():
    snap = _snapshot()
    when = datetime(2024, 5, 2, tzinfo=UTC)
    envelope = encrypt_snapshot(snap, TOKEN, now=when)

    wire = envelope.to_wire()
    assert wire["encrypted"] is True
    assert wire["version"] == ENCRYPTION_VERSION
    assert wire["tokenHash"] == credential_fingerprint(TOKEN)
    assert is_encrypted_envelope(json.loads(json.dumps(wire)))

    restored = decrypt_snapshot(parse_envelope(wire), TOKEN)
    assert restored == snap


def test_snapshot_wrong_credential_raises_decryption_failed():
    wire = encrypt_snapshot(_snapshot(), TOKEN).to_wire()
    with pytest.raises(DecryptionFailed):
        decrypt_snapshot(parse_envelope(wire), "other")


def test_envelope_version_newer_than_supported():
    wire = encrypt_snapshot(_snapshot(), TOKEN).to_wire()
    wire["version"] = ENCRYPTION_VERSION + 1
    with pytest.raises(VersionUnsupported):
        decrypt_snapshot(parse_envelope(wire), TOKEN)


def test_fingerprint_mismatch_only_warns(caplog):
    wire = encrypt_snapshot(_snapshot(), TOKEN).to_wire()
    wire["tokenHash"] = "0" * 64
    restored = decrypt_snapshot(parse_envelope(wire), TOKEN)
    assert restored.trackers[0].title == "Water"
    assert "fingerprint mismatch" in caplog.text


def test_decrypted_non_snapshot_is_malformed():
    wire = {
        "encrypted": True,
        "version": ENCRYPTION_VERSION,
        "data": encrypt_text(json.dumps({"hello": "world"}), TOKEN),
        "timestamp": "2024-05-01T00:00:00Z",
    }
    with pytest.raises(MalformedDocument):
        decrypt_snapshot(parse_envelope(wire), TOKEN)


def test_plain_snapshot_is_not_an_envelope():
    assert not is_encrypted_envelope(_snapshot().to_wire())
    assert not is_encrypted_envelope({"encrypted": "true", "version": 1, "data": "x", "timestamp": "t"})
    assert not is_encrypted_envelope(None)
