"""Store adapters: the primary document store and the secondary relational store."""

from stock_services.stores.base import Collection, Record, StoreAdapter, TransactionScope
from stock_services.stores.document_store import DocumentStoreAdapter
from stock_services.stores.relational_store import RelationalStoreAdapter

__all__ = [
    "Collection",
    "DocumentStoreAdapter",
    "Record",
    "RelationalStoreAdapter",
    "StoreAdapter",
    "TransactionScope",
]
