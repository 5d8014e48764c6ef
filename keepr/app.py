"""FastAPI application and process-wide service wiring.

Shared clients (HTTP, S3, database) are built once in the lifespan and
torn down on exit; handlers reach them through ``app.state.services``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx
from fastapi import FastAPI

from keepr.config import Settings, configure_logging, settings as default_settings
from keepr.ingest.pipeline import WebhookIngestor
from keepr.reconcile.status import StatusReconciler
from keepr.routers import health, orders
from keepr.store.orders import InMemoryOrderStore, OrderStore, PostgresOrderStore
from keepr.tools.artifacts import ArtifactGenerator
from keepr.tools.capture import CaptureClient
from keepr.tools.fulfillment import FulfillmentOrderBuilder
from keepr.tools.retry import MediaFetcher
from keepr.tools.storage import DurableStore
from keepr.webhooks.idempotency import DeliveryDedup
from keepr.webhooks.handlers import register_webhook_routes

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, constructed once per process."""

    settings: Settings
    store: OrderStore
    ingestor: WebhookIngestor
    reconciler: StatusReconciler
    http: httpx.AsyncClient | None = None
    dedup: DeliveryDedup = field(default_factory=DeliveryDedup)

    async def aclose(self) -> None:
        await self.ingestor.wait_background()
        if self.http is not None:
            await self.http.aclose()
        await self.dedup.aclose()
        self.store.close()


def build_store(settings: Settings) -> OrderStore:
    if not settings.database_url:
        logger.warning("DATABASE_URL not set; using in-memory order store (data is not persisted)")
        return InMemoryOrderStore()
    store = PostgresOrderStore(settings.database_url)
    store.init_tables()
    return store


def build_services(settings: Settings) -> Services:
    http = httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True)
    store = build_store(settings)
    durable = DurableStore(settings.aws_bucket_name, settings.aws_region)
    ingestor = WebhookIngestor(
        store=store,
        capture=CaptureClient(
            http,
            api_key=settings.addpipe_api_key,
            base_url=settings.addpipe_api_url,
            storage_host=settings.addpipe_storage_host,
        ),
        fetcher=MediaFetcher(
            http,
            attempts=settings.download_attempts,
            base_delay=settings.download_base_delay,
        ),
        durable=durable,
        artifacts=ArtifactGenerator(durable),
        fulfillment=FulfillmentOrderBuilder(
            http,
            token=settings.siteflow_token,
            secret=settings.siteflow_secret,
            base_url=settings.siteflow_api_url,
            sku=settings.siteflow_sku,
            destination=settings.siteflow_destination,
        ),
    )
    if not settings.webhook_secret:
        logger.warning("WEBHOOK_SECRET not set; partner callbacks are NOT signature-verified")
    if not settings.shopify_webhook_secret:
        logger.warning("SHOPIFY_WEBHOOK_SECRET not set; order webhooks are NOT signature-verified")
    reconciler = StatusReconciler(store, secret=settings.webhook_secret)
    return Services(
        settings=settings,
        store=store,
        ingestor=ingestor,
        reconciler=reconciler,
        http=http,
        dedup=DeliveryDedup.from_url(settings.redis_url),
    )


def create_app(services: Services | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the app. Pass ``services`` to skip constructing real clients."""
    settings = settings or (services.settings if services else default_settings)
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or build_services(settings)
        logger.info("Keepr fulfillment service started")
        try:
            yield
        finally:
            if owned:
                await app.state.services.aclose()
            else:
                await app.state.services.ingestor.wait_background()
            logger.info("Keepr fulfillment service stopped")

    app = FastAPI(title="Keepr Fulfillment", lifespan=lifespan)
    register_webhook_routes(app)
    app.include_router(health.router)
    app.include_router(orders.router)
    return app


app = create_app()
