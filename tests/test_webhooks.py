"""HTTP-level tests for the webhook endpoints and read APIs.

The app is built with a pre-wired Services container, so the lifespan
never constructs real clients.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from keepr.app import Services, create_app
from keepr.models import Order
from keepr.reconcile.status import StatusReconciler
from keepr.webhooks.idempotency import DeliveryDedup

PARTNER_SECRET = "partner-secret"
SHOPIFY_SECRET = "shopify-secret"


@pytest.fixture()
def services(settings, store, ingestor, reconciler):
    return Services(settings=settings, store=store, ingestor=ingestor, reconciler=reconciler)


@pytest.fixture()
def client(services):
    with TestClient(create_app(services=services), raise_server_exceptions=False) as c:
        yield c


def _shopify_sig(body: bytes) -> str:
    return base64.b64encode(hmac.new(SHOPIFY_SECRET.encode(), body, hashlib.sha256).digest()).decode()


def _partner_sig(body: bytes) -> str:
    return hmac.new(PARTNER_SECRET.encode(), body, hashlib.sha256).hexdigest()


# ── Shopify order webhook ─────────────────────────────────────────────────


class TestOrderWebhook:
    def test_processes_order(self, client, store, upstreams, make_order):
        resp = client.post("/api/shopify-order-webhook", json=make_order())

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["order_id"] == "5001"
        assert data["results"][0]["status"] == "success"
        assert data["fulfillment"]["sourceOrderId"] == "Keepr_1001"
        assert store.find_by("order_id", "5001").status == "submitted"

    def test_redelivery_creates_no_second_record(self, client, store, make_order):
        client.post("/api/shopify-order-webhook", json=make_order())
        resp = client.post("/api/shopify-order-webhook", json=make_order())

        assert resp.status_code == 200
        assert resp.json()["created"] is False
        assert len(store.list_recent()) == 1

    def test_nothing_to_process(self, client, make_order, make_item):
        resp = client.post("/api/shopify-order-webhook", json=make_order(line_items=[make_item(1)]))
        assert resp.status_code == 200
        assert resp.json()["message"] == "No AddPipe items found"

    def test_invalid_json(self, client):
        resp = client.post(
            "/api/shopify-order-webhook",
            content=b"{nope",
            headers={"content-type": "application/json"},
        )
        assert resp.status_code == 400
        assert resp.json()["success"] is False

    def test_missing_order_id(self, client):
        resp = client.post("/api/shopify-order-webhook", json={"line_items": []})
        assert resp.status_code == 400

    def test_missing_configuration(self, services, make_order):
        services.settings = services.settings.model_copy(update={"addpipe_api_key": ""})
        with TestClient(create_app(services=services)) as c:
            resp = c.post("/api/shopify-order-webhook", json=make_order())
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "server configuration error"}

    def test_unexpected_failure_is_500(self, client, services, make_order):
        services.store.create_if_absent = MagicMock(side_effect=RuntimeError("db down"))
        resp = client.post("/api/shopify-order-webhook", json=make_order())
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "db down"}

    def test_shopify_signature_enforced_when_configured(self, services, make_order):
        services.settings = services.settings.model_copy(update={"shopify_webhook_secret": SHOPIFY_SECRET})
        body = json.dumps(make_order()).encode()
        with TestClient(create_app(services=services)) as c:
            bad = c.post("/api/shopify-order-webhook", content=body, headers={"x-shopify-hmac-sha256": "bad"})
            good = c.post(
                "/api/shopify-order-webhook",
                content=body,
                headers={"x-shopify-hmac-sha256": _shopify_sig(body)},
            )
        assert bad.status_code == 401
        assert good.status_code == 200

    def test_duplicate_delivery_short_circuits(self, services, store, make_order):
        redis = AsyncMock()
        redis.exists.return_value = 1
        services.dedup = DeliveryDedup(redis)
        with TestClient(create_app(services=services)) as c:
            resp = c.post(
                "/api/shopify-order-webhook",
                json=make_order(),
                headers={"x-shopify-webhook-id": "delivery-1"},
            )
        assert resp.status_code == 200
        assert resp.json()["message"] == "duplicate delivery"
        assert store.list_recent() == []
        redis.exists.assert_awaited_once_with("webhook:seen:shopify:delivery-1")

    def test_delivery_marked_seen_after_success(self, services, make_order):
        redis = AsyncMock()
        redis.exists.return_value = 0
        services.dedup = DeliveryDedup(redis)
        with TestClient(create_app(services=services)) as c:
            c.post(
                "/api/shopify-order-webhook",
                json=make_order(),
                headers={"x-shopify-webhook-id": "delivery-2"},
            )
        redis.set.assert_awaited_once_with("webhook:seen:shopify:delivery-2", "1", ex=86400)

    def test_non_ascii_signature_is_401(self, services, make_order):
        services.settings = services.settings.model_copy(update={"shopify_webhook_secret": SHOPIFY_SECRET})
        with TestClient(create_app(services=services), raise_server_exceptions=False) as c:
            resp = c.post(
                "/api/shopify-order-webhook",
                content=json.dumps(make_order()).encode(),
                headers={"x-shopify-hmac-sha256": b"\xe9\xe9=="},
            )
        assert resp.status_code == 401
        assert resp.json() == {"success": False, "error": "Invalid signature"}


# ── SiteFlow status webhook ───────────────────────────────────────────────


class TestStatusWebhook:
    @pytest.fixture()
    def order(self, store):
        order = Order(order_id="12345", order_number="1001")
        store.create_if_absent(order)
        return order

    def test_matched_callback(self, client, store, order):
        resp = client.post("/api/webhooks/orders", json={"sourceOrderId": "Keepr_12345", "status": "Received"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["ok"] is True and data["matched"] is True
        assert data["status"] == "received"
        assert store.find_by("order_id", "12345").status == "received"

    def test_unmatched_callback_is_200(self, client, order):
        resp = client.post("/api/webhooks/orders", json={"sourceOrderId": "Keepr_999", "status": "shipped"})
        assert resp.status_code == 200
        assert resp.json()["note"] == "no-matching-doc"

    def test_invalid_json(self, client):
        resp = client.post(
            "/api/webhooks/orders", content=b"not json", headers={"content-type": "application/json"}
        )
        assert resp.status_code == 400
        assert resp.json() == {"ok": False, "error": "Invalid JSON"}

    def test_signed_callbacks(self, services, store, order):
        services.reconciler = StatusReconciler(store, secret=PARTNER_SECRET)
        body = json.dumps({"sourceOrderId": "Keepr_12345", "status": "shipped", "trackingNumber": "T1"}).encode()

        with TestClient(create_app(services=services)) as c:
            tampered = c.post(
                "/api/webhooks/orders",
                content=body.replace(b"shipped", b"error"),
                headers={"x-signature": _partner_sig(body)},
            )
            assert tampered.status_code == 401
            assert store.find_by("order_id", "12345").status_history == []

            ok = c.post("/api/webhooks/orders", content=body, headers={"x-signature": _partner_sig(body)})

        assert ok.status_code == 200
        saved = store.find_by("order_id", "12345")
        assert saved.status == "shipped"
        assert saved.tracking_number == "T1"

    def test_non_ascii_signature_is_401(self, services, store, order):
        services.reconciler = StatusReconciler(store, secret=PARTNER_SECRET)
        body = json.dumps({"sourceOrderId": "Keepr_12345", "status": "shipped"}).encode()
        with TestClient(create_app(services=services), raise_server_exceptions=False) as c:
            resp = c.post("/api/webhooks/orders", content=body, headers={"x-signature": b"sha256=\xe9\xe9"})
        assert resp.status_code == 401
        assert resp.json() == {"ok": False, "error": "Invalid signature"}
        assert store.find_by("order_id", "12345").status_history == []

    def test_server_error(self, client, services, order):
        services.store.apply_status = MagicMock(side_effect=RuntimeError("boom"))
        resp = client.post("/api/webhooks/orders", json={"sourceOrderId": "Keepr_12345", "status": "received"})
        assert resp.status_code == 500
        assert resp.json() == {"ok": False, "error": "Server error"}


# ── Read endpoints ────────────────────────────────────────────────────────


class TestReadEndpoints:
    def test_health_ok(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "checks": {"store": "ok", "config": "ok"}}

    def test_health_degraded(self, client, services):
        services.store.ping = MagicMock(return_value=False)
        resp = client.get("/api/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "degraded"

    def test_orders_feed(self, client, make_order):
        client.post("/api/shopify-order-webhook", json=make_order())
        resp = client.get("/api/orders", params={"limit": 10})

        assert resp.status_code == 200
        row = resp.json()["orders"][0]
        assert row["order_id"] == "5001"
        assert row["sourceOrderId"] == "Keepr_1001"
        assert row["status"] == "submitted"
        assert row["lineitems"][0]["sourceItemId"] == "111"
        assert row["lineitems"][0]["audio"].endswith("/audio/vid-a.mp4")

    def test_orders_limit_validated(self, client):
        assert client.get("/api/orders", params={"limit": 0}).status_code == 422
        assert client.get("/api/orders", params={"limit": 201}).status_code == 422

    def test_webhook_counts(self, client, make_order):
        client.post("/api/webhooks/orders", json={"status": "received"})
        resp = client.get("/webhooks/status")
        assert resp.status_code == 200
        assert resp.json()["counts"]["siteflow"] >= 1


# ── Service lifecycle ─────────────────────────────────────────────────────


class TestServicesLifecycle:
    @pytest.mark.asyncio
    async def test_aclose_closes_redis_client(self, services):
        redis = AsyncMock()
        services.dedup = DeliveryDedup(redis)
        await services.aclose()
        redis.aclose.assert_awaited_once()

    def test_default_dedup_is_disabled(self, services):
        assert services.dedup.enabled is False
