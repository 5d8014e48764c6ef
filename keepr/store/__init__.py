"""Order persistence."""

from keepr.store.orders import InMemoryOrderStore, OrderStore, PostgresOrderStore

__all__ = ["InMemoryOrderStore", "OrderStore", "PostgresOrderStore"]
