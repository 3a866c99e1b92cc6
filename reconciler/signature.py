"""
HMAC-SHA256 webhook signatures. Vendors sign the raw request body with their shared
secret and send the hex digest (optionally prefixed "sha256=") in the signature header.
"""
import hashlib
import hmac
from typing import Mapping

SIGNATURE_PREFIX = "sha256="


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(secret: str | None, raw_body: bytes, signature: str | None) -> bool:
    """False for a missing secret, a missing signature, or a mismatch."""
    if not secret or not signature:
        return False
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = compute_signature(secret, raw_body)
    return hmac.compare_digest(expected.encode("utf-8"), provided.lower().encode("utf-8"))


class StaticSecretStore:
    """VendorSecretStore backed by configuration (VENDOR_WEBHOOK_SECRETS)."""

    def __init__(self, secrets: Mapping[str, str]):
        self._secrets = dict(secrets)

    def get_secret(self, vendor_id: str) -> str | None:
        return self._secrets.get(vendor_id)
