"""Order matchers for partner callbacks.

SiteFlow echoes back identifiers that only loosely correlate with ours, so
a callback is resolved by trying an ordered list of strategies, each
against every candidate identifier, first hit wins.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from keepr.errors import NoMatchingOrder
from keepr.models import Order, is_storage_id
from keepr.payloads import StatusCallback
from keepr.store.orders import OrderStore
from keepr.tools.fulfillment import SOURCE_ORDER_PREFIX

logger = logging.getLogger(__name__)

_PREFIXED_RE = re.compile(rf"^{re.escape(SOURCE_ORDER_PREFIX)}(.+)$")


def build_candidates(callback: StatusCallback) -> list[str]:
    """Candidate identifiers in precedence order, prefix-stripped forms last."""
    literal = [
        c
        for c in (callback.source_order_id, callback.order_id, callback.nested_source_order_id)
        if c
    ]
    stripped = [m.group(1) for c in literal if (m := _PREFIXED_RE.match(c))]

    candidates: list[str] = []
    for c in literal + stripped:
        if c not in candidates:
            candidates.append(c)
    return candidates


class OrderMatcher(Protocol):
    name: str

    def try_match(self, candidates: list[str]) -> Order | None:
        ...


class FieldMatcher:
    """Exact match of each candidate against one or more order fields."""

    def __init__(self, store: OrderStore, name: str, fields: tuple[str, ...]):
        self._store = store
        self.name = name
        self.fields = fields

    def _accepts(self, candidate: str) -> bool:
        return True

    def try_match(self, candidates: list[str]) -> Order | None:
        for candidate in candidates:
            if not self._accepts(candidate):
                continue
            for field in self.fields:
                order = self._store.find_by(field, candidate)
                if order is not None:
                    logger.debug("Matched %r on %s via %s", candidate, field, self.name)
                    return order
        return None


class FulfillmentReferenceMatcher(FieldMatcher):
    def __init__(self, store: OrderStore):
        super().__init__(store, "fulfillment_reference", ("source_order_id", "fulfillment_id"))


class OrderIdMatcher(FieldMatcher):
    def __init__(self, store: OrderStore):
        super().__init__(store, "order_id", ("order_id", "order_number"))


class StorageIdMatcher(FieldMatcher):
    """Last resort: the candidate is our own storage id."""

    def __init__(self, store: OrderStore):
        super().__init__(store, "storage_id", ("id",))

    def _accepts(self, candidate: str) -> bool:
        return is_storage_id(candidate)


def default_matchers(store: OrderStore) -> list[OrderMatcher]:
    return [
        FulfillmentReferenceMatcher(store),
        OrderIdMatcher(store),
        StorageIdMatcher(store),
    ]


def resolve_order(candidates: list[str], matchers: list[OrderMatcher]) -> tuple[Order, str]:
    """Return (order, matcher name) or raise NoMatchingOrder."""
    if candidates:
        for matcher in matchers:
            order = matcher.try_match(candidates)
            if order is not None:
                return order, matcher.name
    raise NoMatchingOrder(candidates)
