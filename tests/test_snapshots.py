"""Tests for tagged audit snapshots and the stored session blob."""

import json
from datetime import datetime, timezone

import pytest

from hikariauth.storage.models import (
    SNAPSHOT_SCHEMA_VERSION,
    AccountSnapshot,
    LoginSnapshot,
    PasswordSnapshot,
    Session,
    SnapshotDecodeError,
    TokenMirror,
    User,
    VerificationSnapshot,
    decode_snapshot,
    encode_snapshot,
    snapshot_email,
)


def test_encoding_tags_kind_and_version():
    payload = encode_snapshot(AccountSnapshot(email="a@example.com", username="alice"))
    assert payload == {
        "email": "a@example.com",
        "username": "alice",
        "kind": "account",
        "schema_version": SNAPSHOT_SCHEMA_VERSION,
    }


@pytest.mark.parametrize(
    "snapshot",
    [
        AccountSnapshot(email="a@example.com"),
        VerificationSnapshot(email="a@example.com", is_verified=True),
        LoginSnapshot(email=None, remember_me=True),
        PasswordSnapshot(email="a@example.com", password_changed=True),
    ],
)
def test_decode_accepts_text_and_mappings(snapshot):
    encoded = encode_snapshot(snapshot)
    assert decode_snapshot(encoded) == snapshot
    assert decode_snapshot(json.dumps(encoded)) == snapshot


def test_none_passes_through():
    assert encode_snapshot(None) is None
    assert decode_snapshot(None) is None
    assert snapshot_email(None) is None


@pytest.mark.parametrize(
    "raw",
    [
        {"kind": "account", "email": "a@example.com"},
        {"kind": "account", "email": "a@example.com", "schema_version": 99},
        {"kind": "mfa", "schema_version": SNAPSHOT_SCHEMA_VERSION},
        {"kind": "login", "schema_version": SNAPSHOT_SCHEMA_VERSION, "password": "x"},
    ],
)
def test_decode_rejects_unknown_shapes(raw):
    with pytest.raises(SnapshotDecodeError):
        decode_snapshot(raw)


def test_snapshot_email_reads_either_form():
    encoded = encode_snapshot(LoginSnapshot(email="a@example.com"))
    assert snapshot_email(encoded) == "a@example.com"
    assert snapshot_email(json.dumps(encoded)) == "a@example.com"


def test_session_blob_layout():
    login_time = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    session = Session(user_id="u1", email="a@example.com", username="alice", login_time=login_time)

    data = json.loads(session.to_json())

    assert data == {
        "userId": "u1",
        "email": "a@example.com",
        "username": "alice",
        "loginTime": "2024-03-01T12:00:00+00:00",
    }
    assert Session.from_json(session.to_json()) == session


def test_token_mirror_round_trip():
    mirror = TokenMirror(user_id="u1", email="a@example.com", username="alice")
    assert TokenMirror.from_json(mirror.to_json()) == mirror


def test_public_user_hides_hash():
    user = User(id=User.new_id(), email="a@example.com", username="alice", password_hash="$argon2id$x")
    assert user.public() == {"id": user.id, "username": "alice", "email": "a@example.com"}
