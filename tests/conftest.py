"""Shared fixtures for the Keepr fulfillment test suite.

Upstream services (AddPipe, the AddPipe storage host, SiteFlow) are served
by one httpx.MockTransport; S3 is a MagicMock boto3 client. Nothing here
touches the network, Postgres or Redis.
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
from keepr.config import Settings
from keepr.ingest.pipeline import WebhookIngestor
from keepr.reconcile.status import StatusReconciler
from keepr.store.orders import InMemoryOrderStore
from keepr.tools.artifacts import ArtifactGenerator
from keepr.tools.capture import CaptureClient
from keepr.tools.fulfillment import FulfillmentOrderBuilder
from keepr.tools.retry import MediaFetcher
from keepr.tools.storage import DurableStore

ADDPIPE_HOST = "api.addpipe.test"
STORAGE_HOST = "storage.addpipe.test"
SITEFLOW_HOST = "siteflow.test"

BUCKET = "keepr-test"
REGION = "eu-north-1"


class FakeUpstreams:
    """Scriptable stand-in for every HTTP service the pipeline calls."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.failed_lookups: dict[str, int] = {}  # video id -> HTTP status
        self.failed_downloads: set[str] = set()  # video ids that always 503
        self.deleted: list[str] = []
        self.siteflow_orders: list[dict[str, Any]] = []
        self.siteflow_status = 201
        self.siteflow_body: dict[str, Any] = {
            "_id": "sf-order-1",
            "url": "https://siteflow.test/orders/sf-order-1",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host

        if host == ADDPIPE_HOST:
            video_id = request.url.path.rsplit("/", 1)[-1]
            if request.method == "DELETE":
                self.deleted.append(video_id)
                return httpx.Response(200, json={"deleted": True})
            status = self.failed_lookups.get(video_id)
            if status:
                return httpx.Response(status, text="not found")
            return httpx.Response(
                200, json={"videos": [{"pipeS3Link": f"/recordings/{video_id}.mp4"}]}
            )

        if host == STORAGE_HOST:
            video_id = request.url.path.rsplit("/", 1)[-1].removesuffix(".mp4")
            if video_id in self.failed_downloads:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, content=f"mp4:{video_id}".encode())

        if host == SITEFLOW_HOST:
            self.siteflow_orders.append(json.loads(request.content))
            return httpx.Response(self.siteflow_status, json=self.siteflow_body)

        return httpx.Response(404)

    def requests_to(self, host: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.host == host]


@pytest.fixture()
def settings() -> Settings:
    """Complete settings pointed at the fake upstreams."""
    return Settings(
        _env_file=None,
        database_url="",
        redis_url="",
        addpipe_api_key="pipe-key",
        addpipe_api_url=f"https://{ADDPIPE_HOST}",
        addpipe_storage_host=STORAGE_HOST,
        aws_bucket_name=BUCKET,
        aws_region=REGION,
        siteflow_api_url=f"https://{SITEFLOW_HOST}",
        siteflow_token="sf-token",
        siteflow_secret="sf-secret",
        webhook_secret="",
        shopify_webhook_secret="",
        download_attempts=3,
        download_base_delay=0.0,
    )


@pytest.fixture()
def upstreams() -> FakeUpstreams:
    return FakeUpstreams()


@pytest.fixture()
def http_client(upstreams: FakeUpstreams) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(upstreams.handler))


@pytest.fixture()
def s3_client() -> MagicMock:
    client = MagicMock()
    client.put_object.return_value = {}
    return client


@pytest.fixture()
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture()
def sleeps() -> list[float]:
    """Backoff delays requested by MediaFetcher (no real sleeping)."""
    return []


@pytest.fixture()
def ingestor(settings, store, http_client, s3_client, sleeps) -> WebhookIngestor:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    durable = DurableStore(BUCKET, REGION, client=s3_client)
    return WebhookIngestor(
        store=store,
        capture=CaptureClient(
            http_client,
            api_key=settings.addpipe_api_key,
            base_url=settings.addpipe_api_url,
            storage_host=settings.addpipe_storage_host,
        ),
        fetcher=MediaFetcher(http_client, attempts=settings.download_attempts, base_delay=1.0, sleep=fake_sleep),
        durable=durable,
        artifacts=ArtifactGenerator(durable),
        fulfillment=FulfillmentOrderBuilder(
            http_client,
            token=settings.siteflow_token,
            secret=settings.siteflow_secret,
            base_url=settings.siteflow_api_url,
        ),
    )


@pytest.fixture()
def reconciler(store) -> StatusReconciler:
    return StatusReconciler(store)


def shopify_order(
    order_id: int = 5001,
    order_number: int | None = 1001,
    line_items: list[dict[str, Any]] | None = None,
    **extra: Any,
) -> dict[str, Any]:
    """A minimal but realistic Shopify orders/create body."""
    if line_items is None:
        line_items = [
            line_item(111, "vid-a"),
        ]
    body: dict[str, Any] = {
        "id": order_id,
        "email": "jane@example.com",
        "name": f"#{order_number}" if order_number else None,
        "order_number": order_number,
        "created_at": "2024-05-01T10:00:00+00:00",
        "customer": {"first_name": "Jane", "last_name": "Doe"},
        "shipping_address": {
            "first_name": "Jane",
            "last_name": "Doe",
            "address1": "1 High Street",
            "address2": "",
            "city": "London",
            "zip": "N1 1AA",
            "country_code": "GB",
        },
        "line_items": line_items,
        "note_attributes": [],
    }
    body.update(extra)
    return body


def line_item(item_id: int, video_id: str | None = None, name: str = "Born To Be Loved", quantity: int = 1):
    properties = []
    if video_id is not None:
        properties.append({"name": "addpipe_video_id", "value": video_id})
        properties.append({"name": "addpipe_stream", "value": f"stream-{video_id}"})
    return {
        "id": item_id,
        "name": name,
        "title": name,
        "sku": "BOOK-1",
        "quantity": quantity,
        "properties": properties,
    }


@pytest.fixture()
def make_order():
    return shopify_order


@pytest.fixture()
def make_item():
    return line_item
