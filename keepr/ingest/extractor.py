"""Line-item extraction from Shopify order payloads.

Each line item may carry the AddPipe recording made for it in its
``properties`` list. Older storefront themes put the recording on the
order's ``note_attributes`` instead; when no line item has one, those are
merged into the first line item only.
"""

from __future__ import annotations

import logging
from typing import Any

from keepr.models import LineItem, Order
from keepr.payloads import ShopifyOrderPayload

logger = logging.getLogger(__name__)

# Property-name prefixes, matched case-insensitively, in precedence order.
VIDEO_ID_KEYS = ("addpipe_video_id", "audio id")
STREAM_KEYS = ("addpipe_stream",)

# Exact keys older themes used on note_attributes.
LEGACY_VIDEO_ID_KEYS = ("addpipe_video_id", "addpipe_video", "addpipe_videoid")


def properties_to_map(properties: Any) -> dict[str, str]:
    """Flatten a Shopify properties list into a name -> value map.

    Supports ``{"name": .., "value": ..}`` and ``{"first": .., "last": ..}``
    entries; anything else falls back to its first key/value pair.
    """
    if isinstance(properties, dict):
        return {str(k): "" if v is None else str(v) for k, v in properties.items()}
    if not isinstance(properties, list):
        return {}

    result: dict[str, str] = {}
    for prop in properties:
        if not isinstance(prop, dict) or not prop:
            continue
        if "name" in prop or "value" in prop:
            name, value = prop.get("name"), prop.get("value")
        elif "first" in prop or "last" in prop:
            name, value = prop.get("first"), prop.get("last")
        else:
            name, value = next(iter(prop.items()))
        if name:
            result[str(name)] = "" if value is None else str(value)
    return result


def _find_by_prefix(props: dict[str, str], prefixes: tuple[str, ...]) -> str | None:
    for prefix in prefixes:
        for key, value in props.items():
            if key.lower().startswith(prefix) and value:
                return value
    return None


def normalize_quantity(value: Any) -> int:
    if isinstance(value, bool):
        return 1
    try:
        return max(1, int(float(value)))
    except (TypeError, ValueError, OverflowError):
        return 1


def parse_line_item(raw: dict[str, Any]) -> LineItem:
    props = properties_to_map(raw.get("properties") or [])
    return LineItem(
        line_item_id=str(raw.get("id", "")),
        name=str(raw.get("name") or ""),
        title=str(raw.get("title") or ""),
        sku=str(raw.get("sku") or ""),
        quantity=normalize_quantity(raw.get("quantity")),
        video_id=_find_by_prefix(props, VIDEO_ID_KEYS),
        stream_name=_find_by_prefix(props, STREAM_KEYS),
        properties=props,
    )


def _note_attributes_map(note_attributes: list[dict[str, Any]]) -> dict[str, str]:
    notes: dict[str, str] = {}
    for attr in note_attributes:
        name = attr.get("name")
        if name and "value" in attr and attr["value"] is not None:
            notes[str(name)] = str(attr["value"])
    return notes


def extract_line_items(payload: ShopifyOrderPayload) -> list[LineItem]:
    """Parse every line item and resolve its capture-service video id."""
    items = [parse_line_item(raw) for raw in payload.line_items]

    if any(item.video_id for item in items) or not items:
        return items

    notes = _note_attributes_map(payload.note_attributes)
    if not notes:
        return items

    logger.warning(
        "Order %s: no line-item AddPipe data; falling back to note_attributes "
        "for first line item %s",
        payload.id,
        items[0].line_item_id,
    )
    first = items[0]
    first.properties = {**first.properties, **notes}
    first.video_id = _find_by_prefix(first.properties, VIDEO_ID_KEYS) or next(
        (notes[k] for k in LEGACY_VIDEO_ID_KEYS if notes.get(k)), None
    )
    first.stream_name = first.stream_name or _find_by_prefix(first.properties, STREAM_KEYS)
    return items


def build_order(
    payload: ShopifyOrderPayload,
    items: list[LineItem],
    raw: dict[str, Any] | None = None,
) -> Order:
    """Base order document for a newly seen commerce order."""
    order = Order(
        order_id=payload.id,
        order_number=payload.resolved_order_number,
        customer_email=payload.email,
        customer_name=payload.customer_name,
        shipping_address=payload.shipping_address,
        raw_payload=raw if raw is not None else payload.model_dump(),
        line_items=items,
    )
    if payload.created_at:
        order.created_at = payload.created_at
    return order
