"""API key and webhook signature checks."""
import hashlib
import hmac
from typing import Optional


def verify_api_key(key: Optional[str], expected: Optional[str]) -> bool:
    """Return True if ``key`` matches the configured API key."""
    if not key or not expected:
        return False
    return hmac.compare_digest(key.encode(), expected.encode())


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check a GitHub ``X-Hub-Signature-256`` header.

    Only ``sha256=HEX`` signatures are accepted. Without a configured secret
    every request is rejected.
    """
    if not secret or not signature:
        return False
    if "=" not in signature:
        return False
    alg, sig = signature.split("=", 1)
    if alg != "sha256":
        return False
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, sig)
