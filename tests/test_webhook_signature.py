"""Replicate webhook signature validation tests."""

import base64

from ipforge.services.webhook.signature import (
    compute_replicate_signature,
    validate_replicate_signature,
)

KEY = base64.b64encode(b"super-secret-signing-key").decode()
SECRET = f"whsec_{KEY}"
BODY = b'{"id":"r8-1","status":"succeeded"}'
WEBHOOK_ID = "msg_2abc"
TIMESTAMP = "1700000000"
NOW = 1700000010.0


def signed_header(body: bytes = BODY, secret: str = SECRET) -> str:
    return "v1," + compute_replicate_signature(body, WEBHOOK_ID, TIMESTAMP, secret)


def test_valid_signature():
    assert validate_replicate_signature(
        BODY, WEBHOOK_ID, TIMESTAMP, signed_header(), SECRET, now=NOW
    )


def test_secret_prefix_is_optional():
    assert compute_replicate_signature(BODY, WEBHOOK_ID, TIMESTAMP, SECRET) == (
        compute_replicate_signature(BODY, WEBHOOK_ID, TIMESTAMP, KEY)
    )


def test_any_matching_entry_is_accepted():
    header = "v1,bm90LWl0 " + signed_header()
    assert validate_replicate_signature(BODY, WEBHOOK_ID, TIMESTAMP, header, SECRET, now=NOW)


def test_tampered_body_rejected():
    header = signed_header()
    tampered = b'{"id":"r8-1","status":"failed"}'
    assert not validate_replicate_signature(
        tampered, WEBHOOK_ID, TIMESTAMP, header, SECRET, now=NOW
    )


def test_wrong_secret_rejected():
    other = "whsec_" + base64.b64encode(b"another-key").decode()
    assert not validate_replicate_signature(
        BODY, WEBHOOK_ID, TIMESTAMP, signed_header(secret=other), SECRET, now=NOW
    )


def test_stale_timestamp_rejected():
    assert not validate_replicate_signature(
        BODY, WEBHOOK_ID, TIMESTAMP, signed_header(), SECRET, now=NOW + 3600
    )


def test_malformed_inputs_rejected():
    assert not validate_replicate_signature(
        BODY, WEBHOOK_ID, "yesterday", signed_header(), SECRET, now=NOW
    )
    assert not validate_replicate_signature(BODY, WEBHOOK_ID, TIMESTAMP, "", SECRET, now=NOW)
    assert not validate_replicate_signature(
        BODY, WEBHOOK_ID, TIMESTAMP, signed_header(), "whsec_***", now=NOW
    )
