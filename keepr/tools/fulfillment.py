"""SiteFlow (OneFlow) print-order submission.

One commerce order becomes exactly one partner order with one sub-item per
fulfilled line item; the partner bills and ships per order, so a
multi-item order must not fragment into several shipments.

Requests are signed with a timestamped HMAC-SHA1 over
``"<METHOD> <PATH> <unix_timestamp>"`` and sent as
``x-oneflow-authorization: <token>:<signature>`` plus ``x-oneflow-date``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from keepr.errors import FulfillmentRejected
from keepr.models import LineItem

logger = logging.getLogger(__name__)

ORDER_PATH = "/api/order"
SOURCE_ORDER_PREFIX = "Keepr_"
DEFAULT_ITEM_NAME = "Keepr Book"

_PDF_BASE = "https://keepr-audio.s3.eu-north-1.amazonaws.com/pdfs"

# Product name -> print templates. Unmapped products ship with empty paths.
PRODUCT_TEMPLATES: dict[str, dict[str, str]] = {
    "Born To Be Loved": {
        "cover": f"{_PDF_BASE}/Born+To+Be+Loved/cover-2.pdf",
        "inside": f"{_PDF_BASE}/Born+To+Be+Loved/BornToBeLoved_210x210_interior-2.pdf",
    },
    "I Will Always Love You": {
        "cover": f"{_PDF_BASE}/I+Will+Always+Love+You/IWillAlwayaLoveYou_HardbackCoverTemplate-2.pdf",
        "inside": f"{_PDF_BASE}/I+Will+Always+Love+You/IWillAlwaysLoveYou_210x210_interior-3.pdf",
    },
}


@dataclass
class FulfillmentItem:
    """A line item whose media made it to durable storage."""

    line_item: LineItem
    media_url: str
    artifact_url: str | None = None

    @property
    def printable_code(self) -> str:
        return self.artifact_url or self.media_url


@dataclass
class FulfillmentResult:
    source_order_id: str
    fulfillment_id: str | None
    fulfillment_url: str | None
    source_item_ids: dict[str, str] = field(default_factory=dict)  # line_item_id -> sourceItemId
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "sourceOrderId": self.source_order_id,
            "id": self.fulfillment_id,
            "url": self.fulfillment_url,
        }


def source_order_id_for(order_number: str) -> str:
    return f"{SOURCE_ORDER_PREFIX}{order_number}"


def item_suffix(index: int, count: int) -> str:
    """``-A``, ``-B``, ... (``-AA`` after ``-Z``); empty for single-item orders."""
    if count <= 1:
        return ""
    letters = ""
    n = index
    while True:
        n, rem = divmod(n, 26)
        letters = chr(65 + rem) + letters
        if n == 0:
            break
        n -= 1
    return f"-{letters}"


def sign_request(secret: str, method: str, path: str, timestamp: int) -> str:
    string_to_sign = f"{method} {path} {timestamp}"
    return hmac.new(secret.encode("utf-8"), string_to_sign.encode("utf-8"), hashlib.sha1).hexdigest()


def build_ship_to(address: dict[str, Any], fallback_email: str = "") -> dict[str, str]:
    name = f"{address.get('first_name') or ''} {address.get('last_name') or ''}".strip()
    return {
        "name": name or str(address.get("name") or ""),
        "address1": str(address.get("address1") or ""),
        "address2": str(address.get("address2") or ""),
        "town": str(address.get("city") or ""),
        "postcode": str(address.get("zip") or ""),
        "isoCountry": str(address.get("country_code") or ""),
        "email": str(address.get("email") or fallback_email or ""),
    }


class FulfillmentOrderBuilder:
    """Builds, signs and submits batched SiteFlow orders."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        token: str,
        secret: str,
        base_url: str = "https://orders.oneflow.io",
        sku: str = "keepr_hardback_210x210_staging",
        destination: str = "pureprint",
        templates: dict[str, dict[str, str]] | None = None,
    ):
        self._client = client
        self._token = token
        self._secret = secret
        self._base_url = base_url.rstrip("/")
        self.sku = sku
        self.destination = destination
        self.templates = PRODUCT_TEMPLATES if templates is None else templates

    def build_item(self, item: FulfillmentItem, index: int, count: int) -> dict[str, Any]:
        li = item.line_item
        templates = self.templates.get(li.name)
        if templates is None:
            logger.warning("No print templates for product %r; submitting with empty paths", li.name)
            templates = {}

        return {
            "sku": self.sku,
            "name": li.name or DEFAULT_ITEM_NAME,
            "sourceItemId": f"{li.line_item_id}{item_suffix(index, count)}",
            "quantity": li.quantity,
            "components": [
                {
                    "code": "cover",
                    "fetch": True,
                    "path": templates.get("cover", ""),
                },
                {
                    "code": "text",
                    "fetch": True,
                    "path": templates.get("inside", ""),
                    "attributes": {"keepr_qrcode": item.printable_code},
                },
            ],
        }

    def build_request(
        self,
        items: list[FulfillmentItem],
        shipping_address: dict[str, Any],
        source_order_id: str,
        fallback_email: str = "",
    ) -> dict[str, Any]:
        return {
            "destination": {"name": self.destination},
            "orderData": {
                "sourceOrderId": source_order_id,
                "items": [self.build_item(it, i, len(items)) for i, it in enumerate(items)],
                "shipments": [
                    {
                        "shipTo": build_ship_to(shipping_address, fallback_email),
                        "carrier": {"alias": "standard"},
                    }
                ],
            },
        }

    def auth_headers(self, method: str = "POST", path: str = ORDER_PATH) -> dict[str, str]:
        timestamp = int(time.time())
        signature = sign_request(self._secret, method, path, timestamp)
        return {
            "x-oneflow-authorization": f"{self._token}:{signature}",
            "x-oneflow-date": str(timestamp),
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    async def submit(
        self,
        items: list[FulfillmentItem],
        shipping_address: dict[str, Any] | None,
        source_order_id: str,
        fallback_email: str = "",
    ) -> FulfillmentResult:
        """Submit one partner order covering ``items``. Raises FulfillmentRejected."""
        if not items:
            raise FulfillmentRejected("No items to submit")
        if not shipping_address:
            raise FulfillmentRejected(f"Order {source_order_id} has no shipping address")

        body = self.build_request(items, shipping_address, source_order_id, fallback_email)
        try:
            response = await self._client.post(
                f"{self._base_url}{ORDER_PATH}",
                json=body,
                headers=self.auth_headers("POST", ORDER_PATH),
            )
        except httpx.HTTPError as e:
            raise FulfillmentRejected(f"SiteFlow request failed: {type(e).__name__}: {e}") from e

        if not response.is_success:
            logger.error("SiteFlow order creation failed (%d): %s", response.status_code, response.text[:500])
            raise FulfillmentRejected(
                f"SiteFlow Error: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        fulfillment_id = data.get("_id") or data.get("id")
        result = FulfillmentResult(
            source_order_id=source_order_id,
            fulfillment_id=str(fulfillment_id) if fulfillment_id is not None else None,
            fulfillment_url=data.get("url"),
            source_item_ids={
                it.line_item.line_item_id: item["sourceItemId"]
                for it, item in zip(items, body["orderData"]["items"])
            },
            raw=data,
        )
        logger.info(
            "SiteFlow order %s created for %s (%d items)",
            result.fulfillment_id,
            source_order_id,
            len(items),
        )
        return result
