"""Persistence layer: sqlite-backed stores, execution contexts, and fetch requests."""

from datahero.persistence.context import ExecutionContext
from datahero.persistence.objects import ManagedObject
from datahero.persistence.requests import FetchRequest, Predicate, SortDescriptor
from datahero.persistence.store import (
    PersistentStore,
    StoreClosedError,
    StoreError,
    StoreType,
    delete_store_files,
    store_file_paths,
)

__all__ = [
    "ExecutionContext",
    "FetchRequest",
    "ManagedObject",
    "PersistentStore",
    "Predicate",
    "SortDescriptor",
    "StoreClosedError",
    "StoreError",
    "StoreType",
    "delete_store_files",
    "store_file_paths",
]
