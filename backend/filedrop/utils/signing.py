"""
Webhook payload signing.

Signature = hex HMAC-SHA256(secret, canonical JSON of the payload).
Receivers must compare signatures in constant time.
"""
import hashlib
import hmac
import json
import secrets
from typing import Any, Union


def canonical_json(payload: Any) -> str:
    """Serialize a payload deterministically (sorted keys, compact separators)."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def _to_bytes(body: Union[str, bytes]) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def sign_payload(body: Union[str, bytes], secret: str) -> str:
    """Sign an already-serialized payload."""
    return hmac.new(secret.encode("utf-8"), _to_bytes(body), hashlib.sha256).hexdigest()


def verify_signature(body: Union[str, bytes], signature: str, secret: str) -> bool:
    """Check a signature against a serialized payload in constant time."""
    if not signature:
        return False
    expected = sign_payload(body, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


def generate_secret() -> str:
    """Generate a random 256-bit signing secret (64 hex chars)."""
    return secrets.token_hex(32)
