"""Order persistence.

Orders are stored one row per commerce order, with the nested collections
(files, fulfillment refs, status history, shipments) as JSONB arrays.
Every mutation is a single UPDATE that sets columns and appends to arrays,
never a read-modify-write of the whole record, so concurrent callbacks for
the same order cannot lose each other's writes.

Two implementations share the ``OrderStore`` interface:
- PostgresOrderStore: production (psycopg 3).
- InMemoryOrderStore: local development and tests.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict
from typing import Any

import psycopg
from psycopg import errors as pg_errors
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from keepr.models import (
    FulfillmentReference,
    MediaFile,
    Order,
    ShipmentEvent,
    StatusEvent,
    StatusUpdate,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

# Fields an order may be looked up by.
LOOKUP_FIELDS = ("id", "order_id", "order_number", "source_order_id", "fulfillment_id")


class OrderStore(ABC):
    """Persistence boundary for Order records."""

    def init_tables(self) -> None:
        """Create storage structures if missing. Idempotent."""

    @abstractmethod
    def create_if_absent(self, order: Order) -> bool:
        """Insert ``order`` unless one with the same order_id exists.

        Returns True if this call created the record.
        """

    @abstractmethod
    def find_by(self, field: str, value: str) -> Order | None:
        """Return the first order whose ``field`` equals ``value``."""

    @abstractmethod
    def append_files(self, order_id: str, files: list[MediaFile]) -> None:
        ...

    @abstractmethod
    def record_fulfillment(
        self,
        order_id: str,
        refs: list[FulfillmentReference],
        source_order_id: str,
        fulfillment_id: str | None,
        fulfillment_url: str | None,
    ) -> None:
        ...

    @abstractmethod
    def apply_status(
        self,
        storage_id: str,
        status: str | None,
        event: StatusEvent | None,
        shipment: ShipmentEvent | None,
    ) -> StatusUpdate | None:
        """Apply one partner callback to an order, atomically.

        The status event is appended unless ``status`` equals the last
        recorded status. The shipment is always appended when given.
        ``status`` (if not None) and ``updated_at`` are always set.
        Returns None if the order no longer exists.
        """

    @abstractmethod
    def list_recent(self, limit: int = 50) -> list[Order]:
        ...

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        """Release connections."""


def _check_field(field: str) -> None:
    if field not in LOOKUP_FIELDS:
        raise ValueError(f"Unsupported lookup field: {field}")


# ── In-memory ─────────────────────────────────────────────────────────────


class InMemoryOrderStore(OrderStore):
    """Lock-guarded dict store with the same semantics as Postgres."""

    def __init__(self):
        self._orders: dict[str, dict[str, Any]] = {}  # storage id -> order dict
        self._lock = threading.Lock()

    def _by_order_id(self, order_id: str) -> dict[str, Any] | None:
        for doc in self._orders.values():
            if doc["order_id"] == order_id:
                return doc
        return None

    def create_if_absent(self, order: Order) -> bool:
        with self._lock:
            if self._by_order_id(order.order_id) is not None:
                return False
            self._orders[order.id] = copy.deepcopy(order.to_dict())
            return True

    def find_by(self, field: str, value: str) -> Order | None:
        _check_field(field)
        with self._lock:
            for doc in self._orders.values():
                if doc.get(field) is not None and doc.get(field) == value:
                    return Order.from_dict(copy.deepcopy(doc))
        return None

    def append_files(self, order_id: str, files: list[MediaFile]) -> None:
        with self._lock:
            doc = self._by_order_id(order_id)
            if doc is None:
                return
            doc["files"].extend(asdict(f) for f in files)
            doc["updated_at"] = utcnow_iso()

    def record_fulfillment(
        self,
        order_id: str,
        refs: list[FulfillmentReference],
        source_order_id: str,
        fulfillment_id: str | None,
        fulfillment_url: str | None,
    ) -> None:
        with self._lock:
            doc = self._by_order_id(order_id)
            if doc is None:
                return
            doc["fulfillment_refs"].extend(asdict(r) for r in refs)
            doc["source_order_id"] = source_order_id
            doc["fulfillment_id"] = fulfillment_id
            doc["fulfillment_url"] = fulfillment_url
            if doc["status"] == "pending":
                doc["status"] = "submitted"
            doc["updated_at"] = utcnow_iso()

    def apply_status(
        self,
        storage_id: str,
        status: str | None,
        event: StatusEvent | None,
        shipment: ShipmentEvent | None,
    ) -> StatusUpdate | None:
        if event is None:
            status = None
        with self._lock:
            doc = self._orders.get(storage_id)
            if doc is None:
                return None
            history = doc["status_history"]
            last = history[-1]["status"] if history else None
            status_appended = status is not None and last != status
            if status_appended:
                history.append(asdict(event))
            if shipment is not None:
                doc["shipments"].append(asdict(shipment))
            if status is not None:
                doc["status"] = status
            doc["updated_at"] = utcnow_iso()
            return StatusUpdate(status_appended=status_appended, shipment_appended=shipment is not None)

    def list_recent(self, limit: int = 50) -> list[Order]:
        with self._lock:
            docs = sorted(self._orders.values(), key=lambda d: d["created_at"], reverse=True)
            return [Order.from_dict(copy.deepcopy(d)) for d in docs[:limit]]


# ── Postgres ──────────────────────────────────────────────────────────────

_CREATE_TABLE = """
    CREATE TABLE IF NOT EXISTS orders (
        id               TEXT PRIMARY KEY,
        order_id         TEXT NOT NULL UNIQUE,
        order_number     TEXT,
        customer_email   TEXT,
        customer_name    TEXT,
        shipping_address JSONB,
        raw_payload      JSONB DEFAULT '{}',
        line_items       JSONB DEFAULT '[]',
        files            JSONB NOT NULL DEFAULT '[]',
        fulfillment_refs JSONB NOT NULL DEFAULT '[]',
        source_order_id  TEXT,
        fulfillment_id   TEXT,
        fulfillment_url  TEXT,
        status           TEXT,
        status_history   JSONB NOT NULL DEFAULT '[]',
        shipments        JSONB NOT NULL DEFAULT '[]',
        created_at       TIMESTAMPTZ DEFAULT now(),
        updated_at       TIMESTAMPTZ
    )
"""

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS orders_source_order_id_idx ON orders (source_order_id)",
    "CREATE INDEX IF NOT EXISTS orders_fulfillment_id_idx ON orders (fulfillment_id)",
    "CREATE INDEX IF NOT EXISTS orders_order_number_idx ON orders (order_number)",
)

_INSERT = """
    INSERT INTO orders (
        id, order_id, order_number, customer_email, customer_name,
        shipping_address, raw_payload, line_items, status, created_at
    ) VALUES (
        %(id)s, %(order_id)s, %(order_number)s, %(customer_email)s, %(customer_name)s,
        %(shipping_address)s, %(raw_payload)s, %(line_items)s, %(status)s, %(created_at)s::timestamptz
    )
"""

# Dedup against the last history entry inside the same statement.
_APPLY_STATUS = """
    WITH prev AS (
        SELECT id, status_history -> -1 ->> 'status' AS last_status
        FROM orders WHERE id = %(id)s
        FOR UPDATE
    )
    UPDATE orders AS o SET
        status_history = CASE
            WHEN %(status)s::text IS NULL
              OR prev.last_status IS NOT DISTINCT FROM %(status)s::text
            THEN o.status_history
            ELSE o.status_history || %(event)s
        END,
        shipments = o.shipments || %(shipments)s,
        status = COALESCE(%(status)s::text, o.status),
        updated_at = now()
    FROM prev
    WHERE o.id = prev.id
    RETURNING prev.last_status
"""


class PostgresOrderStore(OrderStore):
    """psycopg-backed store. One lazily opened autocommit connection."""

    def __init__(self, db_url: str):
        self._db_url = db_url
        self._conn: psycopg.Connection | None = None
        self._conn_lock = threading.Lock()

    def _get_conn(self) -> psycopg.Connection:
        with self._conn_lock:
            if self._conn is None or self._conn.closed:
                self._conn = psycopg.connect(self._db_url, autocommit=True, row_factory=dict_row)
            return self._conn

    def init_tables(self) -> None:
        conn = self._get_conn()
        conn.execute(_CREATE_TABLE)
        for stmt in _INDEXES:
            conn.execute(stmt)
        logger.info("Order tables initialized")

    def create_if_absent(self, order: Order) -> bool:
        if self.find_by("order_id", order.order_id) is not None:
            logger.info("Order %s already exists", order.order_id)
            return False

        doc = order.to_dict()
        params = {
            "id": order.id,
            "order_id": order.order_id,
            "order_number": order.order_number,
            "customer_email": order.customer_email,
            "customer_name": order.customer_name,
            "shipping_address": Jsonb(order.shipping_address),
            "raw_payload": Jsonb(order.raw_payload),
            "line_items": Jsonb(doc["line_items"]),
            "status": order.status,
            "created_at": order.created_at,
        }
        try:
            self._get_conn().execute(_INSERT, params)
        except pg_errors.UniqueViolation:
            # Lost a race with a concurrent delivery of the same order.
            logger.info("Order %s created concurrently; treating as existing", order.order_id)
            return False
        logger.info("Saved new order %s", order.order_id)
        return True

    def find_by(self, field: str, value: str) -> Order | None:
        _check_field(field)
        query = sql.SQL("SELECT * FROM orders WHERE {} = %s LIMIT 1").format(sql.Identifier(field))
        row = self._get_conn().execute(query, (value,)).fetchone()
        return Order.from_dict(row) if row else None

    def append_files(self, order_id: str, files: list[MediaFile]) -> None:
        self._get_conn().execute(
            "UPDATE orders SET files = files || %s, updated_at = now() WHERE order_id = %s",
            (Jsonb([asdict(f) for f in files]), order_id),
        )

    def record_fulfillment(
        self,
        order_id: str,
        refs: list[FulfillmentReference],
        source_order_id: str,
        fulfillment_id: str | None,
        fulfillment_url: str | None,
    ) -> None:
        self._get_conn().execute(
            """UPDATE orders SET
                   fulfillment_refs = fulfillment_refs || %s,
                   source_order_id = %s,
                   fulfillment_id = %s,
                   fulfillment_url = %s,
                   status = CASE WHEN status = 'pending' THEN 'submitted' ELSE status END,
                   updated_at = now()
               WHERE order_id = %s""",
            (
                Jsonb([asdict(r) for r in refs]),
                source_order_id,
                fulfillment_id,
                fulfillment_url,
                order_id,
            ),
        )

    def apply_status(
        self,
        storage_id: str,
        status: str | None,
        event: StatusEvent | None,
        shipment: ShipmentEvent | None,
    ) -> StatusUpdate | None:
        if event is None:
            status = None
        params = {
            "id": storage_id,
            "status": status,
            "event": Jsonb([asdict(event)] if event is not None else []),
            "shipments": Jsonb([asdict(shipment)] if shipment is not None else []),
        }
        row = self._get_conn().execute(_APPLY_STATUS, params).fetchone()
        if row is None:
            return None
        return StatusUpdate(
            status_appended=status is not None and row["last_status"] != status,
            shipment_appended=shipment is not None,
        )

    def list_recent(self, limit: int = 50) -> list[Order]:
        rows = self._get_conn().execute(
            "SELECT * FROM orders ORDER BY created_at DESC LIMIT %s", (limit,)
        ).fetchall()
        return [Order.from_dict(r) for r in rows]

    def ping(self) -> bool:
        try:
            self._get_conn().execute("SELECT 1")
            return True
        except psycopg.Error:
            logger.warning("Order store ping failed", exc_info=True)
            return False

    def close(self) -> None:
        with self._conn_lock:
            if self._conn is not None and not self._conn.closed:
                self._conn.close()
            self._conn = None
