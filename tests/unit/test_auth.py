import hashlib
import hmac

from api.auth import verify_api_key, verify_signature


def _sig(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def test_verify_api_key():
    assert verify_api_key("secret-1", "secret-1") is True
    assert verify_api_key("wrong", "secret-1") is False
    assert verify_api_key(None, "secret-1") is False
    assert verify_api_key("secret-1", None) is False


def test_verify_signature_valid():
    assert verify_signature(b'{"a":1}', _sig(b'{"a":1}', "hook"), "hook")


def test_verify_signature_tampered_body():
    assert not verify_signature(b'{"a":2}', _sig(b'{"a":1}', "hook"), "hook")


def test_verify_signature_requires_secret_and_header():
    assert not verify_signature(b"{}", _sig(b"{}", "hook"), None)
    assert not verify_signature(b"{}", None, "hook")


def test_verify_signature_rejects_other_algorithms():
    digest = hmac.new(b"hook", b"{}", hashlib.sha1).hexdigest()
    assert not verify_signature(b"{}", f"sha1={digest}", "hook")
    assert not verify_signature(b"{}", "invalid", "hook")
