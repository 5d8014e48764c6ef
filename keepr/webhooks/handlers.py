"""FastAPI route handlers for inbound webhooks.

Shopify order webhook (POST /api/shopify-order-webhook):
1. Reads raw body (needed for HMAC verification)
2. Verifies the Shopify signature when a secret is configured
3. Skips deliveries already processed (Redis delivery dedup)
4. Runs the ingestion pipeline and returns its per-item report

SiteFlow status webhook (POST /api/webhooks/orders):
1. Verifies the partner signature over the raw body
2. Parses, matches and applies the status callback
3. Returns 200 for matched AND unmatched callbacks (the partner must not
   retry an event that can never match); 401 bad signature; 400 bad JSON

Every delivery is audit-logged.
"""

from __future__ import annotations

import json
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from keepr.errors import MalformedPayload, Unauthorized
from keepr.webhooks.verification import verify_order_webhook

logger = logging.getLogger(__name__)

# Webhook receive counter for monitoring (simple in-memory for now)
_webhook_counts: dict[str, int] = {}


def _log_webhook(provider: str, event_type: str, webhook_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    _webhook_counts[provider] = _webhook_counts.get(provider, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT provider=%s event=%s id=%s status=%s count=%d",
        provider,
        event_type,
        webhook_id,
        status,
        _webhook_counts[provider],
    )


async def handle_order_webhook(request: Request) -> JSONResponse:
    """Shopify orders/create -> acquisition and fulfillment pipeline."""
    start = time.time()
    services = request.app.state.services
    settings = services.settings

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    topic = headers.get("x-shopify-topic", "orders/create")
    delivery_id = headers.get("x-shopify-webhook-id", "")

    try:
        verify_order_webhook(settings.shopify_webhook_secret, body, headers)
    except Unauthorized:
        _log_webhook("shopify", topic, delivery_id or "unknown", "signature_failed")
        return JSONResponse({"success": False, "error": "Invalid signature"}, status_code=401)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        _log_webhook("shopify", topic, delivery_id or "unknown", "invalid_json")
        return JSONResponse({"success": False, "error": "Invalid JSON"}, status_code=400)

    if await services.dedup.is_duplicate("shopify", delivery_id):
        _log_webhook("shopify", topic, delivery_id, "duplicate")
        return JSONResponse({"success": True, "message": "duplicate delivery"}, status_code=200)

    missing = settings.missing_ingest_config()
    if missing:
        logger.error("Missing required env vars: %s", ", ".join(missing))
        return JSONResponse({"success": False, "error": "server configuration error"}, status_code=500)

    order_ref = str(payload.get("id", "")) if isinstance(payload, dict) else ""
    logger.info("Shopify Order Webhook Received: %s", order_ref or "(no id)")

    try:
        result = await services.ingestor.ingest(payload)
    except MalformedPayload as e:
        _log_webhook("shopify", topic, order_ref or "unknown", "malformed")
        return JSONResponse({"success": False, "error": e.message}, status_code=400)
    except Exception as e:
        logger.exception("Error handling Shopify webhook for order %s", order_ref)
        _log_webhook("shopify", topic, order_ref or "unknown", "failed")
        return JSONResponse({"success": False, "error": str(e)}, status_code=500)

    await services.dedup.mark_seen("shopify", delivery_id)
    _log_webhook("shopify", topic, order_ref, "processed")
    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Order webhook processed in %.1fms: %s", elapsed_ms, order_ref)
    return JSONResponse(result.to_dict(), status_code=200)


async def handle_status_webhook(request: Request) -> JSONResponse:
    """SiteFlow status callback -> order status reconciliation."""
    services = request.app.state.services

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    try:
        result = await services.reconciler.reconcile(body, headers)
    except Unauthorized:
        _log_webhook("siteflow", "status", "unknown", "signature_failed")
        return JSONResponse({"ok": False, "error": "Invalid signature"}, status_code=401)
    except MalformedPayload:
        _log_webhook("siteflow", "status", "unknown", "invalid_json")
        return JSONResponse({"ok": False, "error": "Invalid JSON"}, status_code=400)
    except Exception:
        logger.exception("Status webhook processing failed")
        _log_webhook("siteflow", "status", "unknown", "failed")
        return JSONResponse({"ok": False, "error": "Server error"}, status_code=500)

    _log_webhook(
        "siteflow",
        result.status or "unknown",
        result.order_id or ",".join(result.candidates) or "unknown",
        "applied" if result.matched else "unmatched",
    )
    return JSONResponse(result.to_dict(), status_code=200)


def register_webhook_routes(app: FastAPI) -> None:
    """Register webhook endpoint routes on the FastAPI app."""

    @app.post("/api/shopify-order-webhook")
    async def shopify_order_webhook(request: Request):
        """Receive Shopify order webhooks."""
        return await handle_order_webhook(request)

    @app.post("/api/webhooks/orders")
    async def siteflow_status_webhook(request: Request):
        """Receive SiteFlow order status callbacks (signature-verified)."""
        return await handle_status_webhook(request)

    @app.get("/webhooks/status")
    async def webhook_status():
        """Webhook receive counts."""
        return {"counts": dict(_webhook_counts)}

    logger.info("Webhook routes registered: /api/shopify-order-webhook, /api/webhooks/orders")
