"""Order ingestion pipeline.

Per incoming Shopify order:

1. extract line items and their AddPipe video ids
2. create the order record unless it already exists
3. for every eligible item, concurrently: look up -> download -> upload ->
   QR artifact (each item is its own failure domain)
4. persist the durable files, in item order, in one append
5. submit ONE batched SiteFlow order for all items that made it
6. persist the fulfillment reference per item
7. fire-and-forget deletion of the AddPipe originals

Per-item failures are reported, never raised. A rejected SiteFlow
submission is reported for the whole batch and not retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Coroutine

from keepr.errors import ArtifactGenerationFailed, FulfillmentRejected, PipelineError
from keepr.ingest.extractor import build_order, extract_line_items
from keepr.models import FulfillmentReference, LineItem, MediaFile
from keepr.payloads import ShopifyOrderPayload, parse_order_payload
from keepr.store.orders import OrderStore
from keepr.tools.artifacts import ArtifactGenerator
from keepr.tools.capture import CaptureClient
from keepr.tools.fulfillment import FulfillmentItem, FulfillmentOrderBuilder, source_order_id_for
from keepr.tools.retry import MediaFetcher
from keepr.tools.storage import DurableStore, media_key

logger = logging.getLogger(__name__)

NOTHING_TO_PROCESS = "No AddPipe items found"


@dataclass
class ItemResult:
    """Outcome for one line item: success, error or skipped."""

    line_item_id: str
    status: str
    reason: str | None = None
    video_id: str | None = None
    media_url: str | None = None
    artifact_url: str | None = None
    artifact_error: str | None = None
    error: str | None = None
    line_item: LineItem | None = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"line_item_id": self.line_item_id, "status": self.status}
        for key in ("reason", "error", "video_id", "media_url", "artifact_url", "artifact_error"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d


@dataclass
class IngestResult:
    order_id: str
    created: bool
    results: list[ItemResult] = field(default_factory=list)
    fulfillment: dict[str, Any] | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "success": True,
            "order_id": self.order_id,
            "created": self.created,
            "results": [r.to_dict() for r in self.results],
            "fulfillment": self.fulfillment,
        }
        if self.message:
            d["message"] = self.message
        return d


def _in_item_order(items: list[LineItem], processed: list[ItemResult]) -> list[ItemResult]:
    """One result per line item: processed results for eligible items, skips otherwise."""
    remaining = iter(processed)
    return [
        next(remaining)
        if item.eligible
        else ItemResult(line_item_id=item.line_item_id, status="skipped", reason="no_video_id")
        for item in items
    ]


class WebhookIngestor:
    """Drives one Shopify order through acquisition and fulfillment."""

    def __init__(
        self,
        store: OrderStore,
        capture: CaptureClient,
        fetcher: MediaFetcher,
        durable: DurableStore,
        artifacts: ArtifactGenerator,
        fulfillment: FulfillmentOrderBuilder,
    ):
        self._store = store
        self._capture = capture
        self._fetcher = fetcher
        self._durable = durable
        self._artifacts = artifacts
        self._fulfillment = fulfillment
        self._background: set[asyncio.Task] = set()

    # ── background side calls ────────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, Any], label: str) -> None:
        task = asyncio.create_task(coro, name=label)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background task %s failed: %s", task.get_name(), exc)

    async def wait_background(self) -> None:
        """Wait for detached side calls (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── per item ─────────────────────────────────────────────────────────

    async def _process_item(self, item: LineItem) -> ItemResult:
        video_id = str(item.video_id)
        result = ItemResult(
            line_item_id=item.line_item_id,
            status="error",
            video_id=video_id,
            line_item=item,
        )
        try:
            source_url = await self._capture.resolve_media_url(video_id)
            logger.info("LineItem %s - downloading from: %s", item.line_item_id, source_url)
            data = await self._fetcher.fetch(source_url)
            result.media_url = await self._durable.put(media_key(video_id), data, "video/mp4")
        except PipelineError as e:
            logger.error("LineItem %s failed (%s): %s", item.line_item_id, e.reason, e)
            result.reason = e.reason
            result.error = str(e)
            return result

        try:
            result.artifact_url = await self._artifacts.generate(result.media_url)
        except ArtifactGenerationFailed as e:
            logger.warning("LineItem %s: media stored but QR artifact failed: %s", item.line_item_id, e)
            result.artifact_error = e.reason

        result.status = "success"
        return result

    async def _process_eligible(self, items: list[LineItem]) -> list[ItemResult]:
        outcomes = await asyncio.gather(
            *(self._process_item(item) for item in items), return_exceptions=True
        )
        results = []
        for item, outcome in zip(items, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Unexpected error processing line item %s",
                    item.line_item_id,
                    exc_info=outcome,
                )
                outcome = ItemResult(
                    line_item_id=item.line_item_id,
                    status="error",
                    reason="unexpected_error",
                    error=str(outcome) or type(outcome).__name__,
                    video_id=item.video_id,
                )
            results.append(outcome)
        return results

    # ── whole order ──────────────────────────────────────────────────────

    async def ingest(self, raw: Any) -> IngestResult:
        """Process one Shopify order webhook body (already JSON-decoded)."""
        payload = parse_order_payload(raw)
        items = extract_line_items(payload)
        logger.info(
            "Order %s parsed: %s",
            payload.id,
            [(i.line_item_id, i.video_id) for i in items],
        )

        order = build_order(payload, items, raw)
        created = await asyncio.to_thread(self._store.create_if_absent, order)
        if not created:
            logger.info("Order %s already exists in DB", payload.id)

        eligible = [i for i in items if i.eligible]
        if not eligible:
            logger.info("Order %s: no AddPipe video ids on any line item", payload.id)
            return IngestResult(
                order_id=payload.id,
                created=created,
                results=_in_item_order(items, []),
                message=NOTHING_TO_PROCESS,
            )

        processed = await self._process_eligible(eligible)
        successes = [r for r in processed if r.succeeded]

        if successes:
            files = [
                MediaFile(
                    line_item_id=r.line_item_id,
                    video_id=str(r.video_id),
                    uploaded_url=str(r.media_url),
                    stream_name=r.line_item.stream_name if r.line_item else None,
                    artifact_url=r.artifact_url,
                )
                for r in successes
            ]
            await asyncio.to_thread(self._store.append_files, payload.id, files)

        fulfillment = await self._submit(payload.id, payload, successes)

        for r in successes:
            self._spawn(self._capture.delete_video(str(r.video_id)), f"delete-video-{r.video_id}")

        return IngestResult(
            order_id=payload.id,
            created=created,
            results=_in_item_order(items, processed),
            fulfillment=fulfillment,
        )

    async def _submit(
        self,
        order_id: str,
        payload: ShopifyOrderPayload,
        successes: list[ItemResult],
    ) -> dict[str, Any] | None:
        if not successes:
            return None

        source_order_id = source_order_id_for(payload.resolved_order_number)
        batch = [
            FulfillmentItem(line_item=r.line_item, media_url=str(r.media_url), artifact_url=r.artifact_url)
            for r in successes
            if r.line_item is not None
        ]
        try:
            result = await self._fulfillment.submit(
                batch,
                payload.shipping_address,
                source_order_id,
                fallback_email=payload.email,
            )
        except FulfillmentRejected as e:
            logger.error("SiteFlow batch creation failed for order %s: %s", order_id, e)
            return {
                "success": False,
                "sourceOrderId": source_order_id,
                "reason": e.reason,
                "error": str(e),
            }

        refs = [
            FulfillmentReference(
                line_item_id=item.line_item.line_item_id,
                fulfillment_id=result.fulfillment_id,
                fulfillment_url=result.fulfillment_url,
                source_item_id=result.source_item_ids.get(item.line_item.line_item_id, ""),
            )
            for item in batch
        ]
        await asyncio.to_thread(
            self._store.record_fulfillment,
            order_id,
            refs,
            result.source_order_id,
            result.fulfillment_id,
            result.fulfillment_url,
        )
        logger.info("Saved SiteFlow reference for items: %s", [r.line_item_id for r in refs])
        return result.to_dict()
