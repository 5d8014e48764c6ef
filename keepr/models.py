"""Order state models.

An Order is one commerce-platform order plus everything the pipeline has
learned about it since: the durable copies of its recordings, the print
partner order it was submitted as, and the partner's status callbacks.
Nested collections are append-only; the store never rewrites them.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_storage_id() -> str:
    return str(uuid.uuid4())


def is_storage_id(value: str) -> bool:
    """True if ``value`` is structurally a storage-assigned identifier."""
    try:
        uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return False
    return True


@dataclass
class LineItem:
    """One commerce line item, possibly carrying a capture-service video id."""

    line_item_id: str
    name: str = ""
    title: str = ""
    sku: str = ""
    quantity: int = 1
    video_id: str | None = None
    stream_name: str | None = None
    properties: dict[str, str] = field(default_factory=dict)

    @property
    def eligible(self) -> bool:
        return bool(self.video_id)


@dataclass
class MediaFile:
    """A durable copy of one recording."""

    line_item_id: str
    video_id: str
    uploaded_url: str
    stream_name: str | None = None
    artifact_url: str | None = None
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class FulfillmentReference:
    line_item_id: str
    fulfillment_id: str | None
    fulfillment_url: str | None
    source_item_id: str = ""
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class StatusEvent:
    status: str
    payload: dict[str, Any]
    received_at: str = field(default_factory=utcnow_iso)


@dataclass
class ShipmentEvent:
    tracking_number: str
    payload: dict[str, Any]
    received_at: str = field(default_factory=utcnow_iso)


@dataclass
class StatusUpdate:
    """What an apply_status call actually changed."""

    status_appended: bool
    shipment_appended: bool


@dataclass
class Order:
    """Full order record, keyed by ``order_id`` and by storage ``id``."""

    order_id: str
    id: str = field(default_factory=new_storage_id)
    order_number: str = ""
    customer_email: str = ""
    customer_name: str = ""
    shipping_address: dict[str, Any] | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)
    line_items: list[LineItem] = field(default_factory=list)
    files: list[MediaFile] = field(default_factory=list)
    fulfillment_refs: list[FulfillmentReference] = field(default_factory=list)
    source_order_id: str | None = None
    fulfillment_id: str | None = None
    fulfillment_url: str | None = None
    status: str = "pending"
    status_history: list[StatusEvent] = field(default_factory=list)
    shipments: list[ShipmentEvent] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Order:
        data = {k: v for k, v in d.items() if k in Order.__dataclass_fields__}
        nested = {
            "line_items": LineItem,
            "files": MediaFile,
            "fulfillment_refs": FulfillmentReference,
            "status_history": StatusEvent,
            "shipments": ShipmentEvent,
        }
        for key, cls in nested.items():
            data[key] = [
                item if isinstance(item, cls) else cls(**_known_fields(cls, item))
                for item in data.get(key) or []
            ]
        for key in ("created_at", "updated_at"):
            if isinstance(data.get(key), datetime):
                data[key] = data[key].isoformat()
        return Order(**data)

    @property
    def last_status(self) -> str | None:
        return self.status_history[-1].status if self.status_history else None

    @property
    def tracking_number(self) -> str | None:
        return self.shipments[-1].tracking_number if self.shipments else None


def _known_fields(cls: type, item: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in item.items() if k in cls.__dataclass_fields__}
