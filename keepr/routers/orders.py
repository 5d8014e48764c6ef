"""Order feed for the operations dashboard.

Returns recent orders in the row shape the dashboard table renders.
Access control lives in front of this service.
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, Query, Request

from keepr.models import Order

router = APIRouter(prefix="/api/orders", tags=["orders"])


def order_row(order: Order) -> dict[str, Any]:
    source_item_ids = {ref.line_item_id: ref.source_item_id for ref in order.fulfillment_refs}
    audio = {f.line_item_id: f.uploaded_url for f in order.files}
    return {
        "id": order.id,
        "order_id": order.order_id,
        "sourceOrderId": order.source_order_id,
        "status": order.status,
        "date": order.created_at,
        "fulfillment_url": order.fulfillment_url,
        "tracking": order.tracking_number,
        "lineitems": [
            {
                "id": li.line_item_id,
                "title": li.title or li.name,
                "quantity": li.quantity,
                "audio": audio.get(li.line_item_id),
                "sourceItemId": source_item_ids.get(li.line_item_id),
            }
            for li in order.line_items
        ],
    }


@router.get("")
async def list_orders(request: Request, limit: int = Query(50, ge=1, le=200)):
    store = request.app.state.services.store
    orders = await asyncio.to_thread(store.list_recent, limit)
    return {"orders": [order_row(o) for o in orders]}
