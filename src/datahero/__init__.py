"""
datahero — persistence stack wrapper

Purpose
- Package root. Bring a model-backed sqlite store online, run count, fetch,
  create, delete, and save operations on serial execution contexts, and tear
  the stack down again including its database files.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from datahero.errors import (
    ContextClosedError,
    ContextNotFoundError,
    DataHeroError,
    ModelLoadError,
    MultipleResultsWarning,
    ObjectHasNoContextError,
    ObjectValidationError,
    StackAlreadyInitializedError,
    StoreFilesDeletionError,
    StoreLoadError,
)
from datahero.operations import DataOperator
from datahero.persistence import (
    ExecutionContext,
    FetchRequest,
    ManagedObject,
    PersistentStore,
    Predicate,
    SortDescriptor,
    StoreType,
)
from datahero.stack import PersistenceStack

__version__ = "0.1.0"

__all__ = [
    "ContextClosedError",
    "ContextNotFoundError",
    "DataHeroError",
    "DataOperator",
    "ExecutionContext",
    "FetchRequest",
    "ManagedObject",
    "ModelLoadError",
    "MultipleResultsWarning",
    "ObjectHasNoContextError",
    "ObjectValidationError",
    "PersistenceStack",
    "PersistentStore",
    "Predicate",
    "SortDescriptor",
    "StackAlreadyInitializedError",
    "StoreFilesDeletionError",
    "StoreLoadError",
    "StoreType",
    "__version__",
]
