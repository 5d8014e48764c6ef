"""Webhook signature verification (constant-time HMAC per provider).

Security contract:
- All comparisons use hmac.compare_digest() on bytes (constant-time; header
  values may carry any latin-1 character)
- Verification failure -> 401 before any parsing or persistence
- Missing secret -> verification SKIPPED (fail-open). This matches how the
  partner integration was rolled out; set both secrets in production.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Mapping

from keepr.errors import Unauthorized

logger = logging.getLogger(__name__)

# Header names, lowercase, in lookup order.
SHOPIFY_SIGNATURE_HEADER = "x-shopify-hmac-sha256"
CALLBACK_SIGNATURE_HEADERS = ("x-signature", "x-hub-signature")


def _header(headers: Mapping[str, str], *names: str) -> str | None:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in names:
        value = lowered.get(name)
        if value:
            return value
    return None


def _digest_matches(expected: str, provided: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8", "replace"))


def verify_shopify(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Verify Shopify webhook HMAC-SHA256 signature (base64-encoded).

    Returns True when no secret is configured.
    """
    if not secret:
        return True
    if not signature_header:
        return False

    computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    computed_b64 = base64.b64encode(computed).decode("utf-8")
    return _digest_matches(computed_b64, signature_header.strip())


def verify_partner(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Verify a partner callback HMAC-SHA256 hex digest.

    Accepts ``<hex>`` or ``sha256=<hex>``. Returns True when no secret is
    configured.
    """
    if not secret:
        return True
    if not signature_header:
        return False

    provided = signature_header.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]

    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return _digest_matches(expected, provided.lower())


def verify_order_webhook(secret: str, body: bytes, headers: Mapping[str, str]) -> None:
    """Raise Unauthorized unless the Shopify signature checks out."""
    if not secret:
        return
    if not verify_shopify(secret, body, _header(headers, SHOPIFY_SIGNATURE_HEADER)):
        raise Unauthorized("Invalid signature")


def verify_callback(secret: str, body: bytes, headers: Mapping[str, str]) -> None:
    """Raise Unauthorized unless the partner signature checks out."""
    if not secret:
        logger.debug("WEBHOOK_SECRET not set; skipping partner signature check")
        return
    if not verify_partner(secret, body, _header(headers, *CALLBACK_SIGNATURE_HEADERS)):
        raise Unauthorized("Invalid signature")
