import hashlib
import hmac

from inboxflow.shared.security import verify_hub_signature


def _sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_valid_signature():
    secret = "s3cr3t-app"
    body = b'{"hello":"world"}'
    assert verify_hub_signature(body, secret, _sign(secret, body)) is True


def test_invalid_signature():
    secret = "s3cr3t-app"
    body = b'{"hello":"world"}'
    assert verify_hub_signature(body, secret, "sha256=deadbeef") is False


def test_missing_or_malformed_header():
    body = b"{}"
    assert verify_hub_signature(body, "s3cr3t-app", None) is False
    assert verify_hub_signature(body, "s3cr3t-app", "md5=abc") is False


def test_signature_over_different_body_fails():
    secret = "s3cr3t-app"
    assert verify_hub_signature(b'{"a":2}', secret, _sign(secret, b'{"a":1}')) is False
