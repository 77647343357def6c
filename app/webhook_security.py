"""
Webhook Security Module

Signature verification for Mercado Pago notifications.

Mercado Pago signs each notification with the secret configured for the
application. The ``x-signature`` header carries ``ts=<timestamp>,v1=<hex>``
and the signed manifest is::

    id:<data.id>;request-id:<x-request-id>;ts:<ts>;

Parts whose value is missing are left out of the manifest. The HMAC is
SHA-256 over the manifest, hex encoded.
"""

import hashlib
import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def parse_signature_header(header: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split ``ts=...,v1=...`` into (ts, v1)"""
    ts, v1 = None, None
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "ts":
            ts = value.strip()
        elif key == "v1":
            v1 = value.strip()
    return ts, v1


def build_signature_manifest(data_id: Optional[str], request_id: Optional[str], ts: Optional[str]) -> str:
    manifest = ""
    if data_id:
        # Alphanumeric ids are signed in lower case
        data_id = str(data_id)
        manifest += f"id:{data_id.lower() if data_id.isalnum() else data_id};"
    if request_id:
        manifest += f"request-id:{request_id};"
    if ts:
        manifest += f"ts:{ts};"
    return manifest


def verify_mercadopago_signature(
    signature_header: Optional[str],
    request_id: Optional[str],
    data_id: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Verify a Mercado Pago ``x-signature`` header.

    Returns True when no secret is configured (verification disabled).
    Never raises: the webhook acknowledges every delivery and only decides
    whether to act on it.
    """
    if not secret:
        return True

    ts, received = parse_signature_header(signature_header)
    if not ts or not received:
        logger.warning("🚫 Mercado Pago webhook missing or malformed x-signature header")
        return False

    manifest = build_signature_manifest(data_id, request_id, ts)
    expected = compute_hmac_sha256(secret, manifest.encode("utf-8"))

    if not constant_time_compare(expected, received):
        logger.warning(f"🚫 Mercado Pago webhook signature mismatch (request-id={request_id}, data.id={data_id})")
        return False

    logger.debug(f"✅ Mercado Pago webhook signature verified: request-id={request_id}")
    return True


def create_mercadopago_signature(secret: str, data_id: Optional[str], request_id: Optional[str], ts: str) -> str:
    """Build an ``x-signature`` header value (used by tests and local tooling)"""
    manifest = build_signature_manifest(data_id, request_id, ts)
    return f"ts={ts},v1={compute_hmac_sha256(secret, manifest.encode('utf-8'))}"
