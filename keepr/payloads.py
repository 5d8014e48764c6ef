"""Inbound webhook payload shapes.

Commerce and partner payloads are loosely shaped JSON. These models pin down
the fields the pipeline reads, with defaults, and keep every historical
spelling of a partner field in one alias table.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from keepr.errors import MalformedPayload

# Canonical field -> accepted spellings (compared case-insensitively).
CALLBACK_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "status": ("orderstatus", "order_status", "status"),
    "source_order_id": ("sourceorderid", "source_order_id"),
    "order_id": ("orderid", "order_id"),
    "tracking_number": ("trackingnumber", "tracking_number", "trackingno", "tracking"),
}

# Keys whose presence marks an "Order Submission Error" callback.
CALLBACK_ERROR_MARKERS = ("errorsclean", "errors", "description")


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    s = str(value).strip()
    return s or None


class ShopifyOrderPayload(BaseModel):
    """The subset of a Shopify ``orders/create`` body the pipeline reads."""

    model_config = ConfigDict(extra="allow")

    id: str
    email: str = ""
    order_number: str | None = None
    name: str | None = None
    created_at: str | None = None
    customer: dict[str, Any] | None = None
    shipping_address: dict[str, Any] | None = None
    line_items: list[dict[str, Any]] = []
    note_attributes: list[dict[str, Any]] = []

    @field_validator("id", "order_number", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        return v

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, v: Any) -> str:
        return v or ""

    @field_validator("line_items", "note_attributes", mode="before")
    @classmethod
    def _list_or_empty(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, list):
            return [item for item in v if isinstance(item, dict)]
        return v

    @property
    def customer_name(self) -> str:
        customer = self.customer or {}
        first = customer.get("first_name") or ""
        last = customer.get("last_name") or ""
        return f"{first} {last}".strip()

    @property
    def resolved_order_number(self) -> str:
        """Human order number: ``order_number``, else ``name`` sans '#', else id."""
        if self.order_number:
            return self.order_number
        if self.name:
            return str(self.name).replace("#", "")
        return self.id


def parse_order_payload(payload: Any) -> ShopifyOrderPayload:
    if not isinstance(payload, dict):
        raise MalformedPayload("Order payload must be a JSON object")
    try:
        return ShopifyOrderPayload.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayload(f"Invalid order payload: {e.errors()[0]['msg']}") from e


class StatusCallback(BaseModel):
    """A print-partner status callback with aliases resolved."""

    status: str | None = None
    source_order_id: str | None = None
    order_id: str | None = None
    nested_source_order_id: str | None = None
    tracking_number: str | None = None
    has_error_marker: bool = False
    raw: dict[str, Any] = {}

    @model_validator(mode="before")
    @classmethod
    def _resolve_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("callback body must be a JSON object")
        lowered = {str(k).lower(): v for k, v in data.items()}
        resolved: dict[str, Any] = {"raw": data}
        for canonical, aliases in CALLBACK_FIELD_ALIASES.items():
            for alias in aliases:
                value = _text(lowered.get(alias))
                if value is not None:
                    resolved[canonical] = value
                    break

        nested = data.get("data")
        if isinstance(nested, dict) and isinstance(nested.get("orderData"), dict):
            resolved["nested_source_order_id"] = _text(nested["orderData"].get("sourceOrderId"))

        resolved["has_error_marker"] = any(
            lowered.get(marker) not in (None, "", [], {}) for marker in CALLBACK_ERROR_MARKERS
        )
        return resolved


def parse_status_callback(payload: Any) -> StatusCallback:
    try:
        return StatusCallback.model_validate(payload)
    except ValidationError as e:
        raise MalformedPayload("Callback body must be a JSON object") from e
