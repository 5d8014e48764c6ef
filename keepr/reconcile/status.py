"""Print-partner status callback reconciliation.

Callbacks arrive as ``received -> printready -> shipped``, with ``error``
possible at any point. Each one is verified, normalized, matched to an
order and applied as a single atomic update. Unknown status strings are
recorded verbatim; the partner's vocabulary grows over time.

An unmatched callback is acknowledged, never failed: the partner would
retry it forever and the outcome would not change.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from keepr.errors import MalformedPayload, NoMatchingOrder
from keepr.models import ShipmentEvent, StatusEvent
from keepr.payloads import StatusCallback, parse_status_callback
from keepr.reconcile.matchers import OrderMatcher, build_candidates, default_matchers, resolve_order
from keepr.store.orders import OrderStore
from keepr.webhooks.verification import verify_callback

logger = logging.getLogger(__name__)

KNOWN_STATUSES = ("received", "printready", "shipped", "error")

NO_MATCH_NOTE = "no-matching-doc"


def normalize_status(raw: str | None) -> str | None:
    """Lower-case and trim; anything mentioning "submission error" is ``error``."""
    if raw is None:
        return None
    status = raw.strip().lower()
    if not status:
        return None
    if "submission error" in status:
        return "error"
    return status


def callback_status(callback: StatusCallback) -> str | None:
    if callback.status:
        return normalize_status(callback.status)
    if callback.has_error_marker:
        return normalize_status("Order Submission Error")
    return None


@dataclass
class ReconcileResult:
    matched: bool
    status: str | None = None
    candidates: list[str] = field(default_factory=list)
    order_id: str | None = None
    matched_by: str | None = None
    status_appended: bool = False
    shipment_appended: bool = False

    def to_dict(self) -> dict[str, Any]:
        if not self.matched:
            return {"ok": True, "matched": False, "note": NO_MATCH_NOTE, "status": self.status}
        return {
            "ok": True,
            "matched": True,
            "order_id": self.order_id,
            "matched_by": self.matched_by,
            "status": self.status,
            "status_appended": self.status_appended,
            "shipment_appended": self.shipment_appended,
        }


class StatusReconciler:
    """Applies verified partner callbacks to stored orders."""

    def __init__(
        self,
        store: OrderStore,
        secret: str = "",
        matchers: list[OrderMatcher] | None = None,
    ):
        self._store = store
        self._secret = secret
        self._matchers = matchers if matchers is not None else default_matchers(store)

    def parse(self, body: bytes) -> StatusCallback:
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedPayload("Invalid JSON") from e
        return parse_status_callback(payload)

    async def reconcile(self, body: bytes, headers: Mapping[str, str]) -> ReconcileResult:
        """Verify, parse, match and apply one callback.

        Raises Unauthorized or MalformedPayload before any persistence.
        """
        verify_callback(self._secret, body, headers)
        callback = self.parse(body)

        status = callback_status(callback)
        candidates = build_candidates(callback)
        if status is not None and status not in KNOWN_STATUSES:
            logger.info("Unrecognized partner status %r; recording verbatim", status)

        try:
            order, matched_by = await asyncio.to_thread(resolve_order, candidates, self._matchers)
        except NoMatchingOrder:
            logger.warning(
                "Partner callback (status=%s) matched no order; candidates=%s",
                status,
                candidates,
            )
            return ReconcileResult(matched=False, status=status, candidates=candidates)

        event = StatusEvent(status=status, payload=callback.raw) if status is not None else None
        shipment = (
            ShipmentEvent(tracking_number=callback.tracking_number, payload=callback.raw)
            if callback.tracking_number
            else None
        )
        update = await asyncio.to_thread(self._store.apply_status, order.id, status, event, shipment)
        if update is None:
            # Deleted between match and update.
            logger.warning("Order %s vanished before status %s could be applied", order.order_id, status)
            return ReconcileResult(matched=False, status=status, candidates=candidates)

        logger.info(
            "Order %s status=%s (matched by %s, appended=%s, tracking=%s)",
            order.order_id,
            status,
            matched_by,
            update.status_appended,
            callback.tracking_number or "-",
        )
        return ReconcileResult(
            matched=True,
            status=status,
            candidates=candidates,
            order_id=order.order_id,
            matched_by=matched_by,
            status_appended=update.status_appended,
            shipment_appended=update.shipment_appended,
        )
