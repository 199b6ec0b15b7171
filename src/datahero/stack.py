"""
datahero — persistence stack lifecycle

Purpose
- Bring a model and its backing store online with one default context.
- Take the stack fully offline: close the default context, detach each store,
  and delete the database file triplet of disk stores.

Functional requirements
- ``teardown()`` followed by ``initialize()`` is the only re-entry path.
- A store that fails to detach still has its files deleted.
- A missing store file counts as deleted; other deletion failures are reported
  once every file has been attempted.
"""

from __future__ import annotations

import itertools
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from datahero.constants import CHILD_CONTEXT_NAME, DEFAULT_CONTEXT_NAME
from datahero.domain.model import ManagedObjectModel, load_model, resolve_model_path
from datahero.errors import (
    ContextNotFoundError,
    StackAlreadyInitializedError,
    StoreFilesDeletionError,
)
from datahero.persistence.context import ExecutionContext
from datahero.persistence.store import (
    DEFAULT_BUSY_TIMEOUT_MS,
    PersistentStore,
    StoreError,
    delete_store_files,
)

if TYPE_CHECKING:
    from datahero.config.loader import StackConfig

ModelSource = ManagedObjectModel | str | Path


class PersistenceStack:
    """Owns the model, the backing store, and the default execution context."""

    def __init__(
        self,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        logger: structlog.typing.FilteringBoundLogger | None = None,
    ) -> None:
        self._busy_timeout_ms = busy_timeout_ms
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.RLock()
        self._model: ManagedObjectModel | None = None
        self._stores: list[PersistentStore] = []
        self._default_context: ExecutionContext | None = None
        self._child_counter = itertools.count(1)

    @classmethod
    def from_config(
        cls,
        config: StackConfig,
        *,
        logger: structlog.typing.FilteringBoundLogger | None = None,
    ) -> PersistenceStack:
        stack = cls(busy_timeout_ms=config.busy_timeout_ms, logger=logger)
        stack.initialize(config.model, config.database_path, bundle=config.bundle)
        return stack

    @property
    def is_initialized(self) -> bool:
        return self._default_context is not None

    @property
    def model(self) -> ManagedObjectModel | None:
        return self._model

    @property
    def default_context(self) -> ExecutionContext | None:
        return self._default_context

    @property
    def stores(self) -> tuple[PersistentStore, ...]:
        return tuple(self._stores)

    @property
    def persistent_store_paths(self) -> tuple[Path, ...]:
        """Database paths of every disk-persisted store in the stack."""
        return tuple(store.path for store in self._stores if store.path is not None)

    def initialize(
        self,
        model: ModelSource,
        database_path: str | Path | None = None,
        *,
        bundle: str | Path | None = None,
    ) -> None:
        """Load ``model`` and open its store.

        ``model`` is a model file path, a model name looked up in ``bundle``, or
        an already loaded ``ManagedObjectModel``. Without ``database_path`` the
        store lives in memory only.

        Raises ``ModelLoadError`` or ``StoreLoadError``; callers decide whether
        either is fatal.
        """

        with self._lock:
            if self._default_context is not None:
                raise StackAlreadyInitializedError(
                    "stack is already initialized; call teardown() first"
                )
            resolved = _resolve_model(model, bundle)
            store = PersistentStore.open(
                resolved,
                database_path,
                busy_timeout_ms=self._busy_timeout_ms,
                logger=self._logger,
            )
            self._model = resolved
            self._stores = [store]
            self._default_context = ExecutionContext(
                store, name=DEFAULT_CONTEXT_NAME, logger=self._logger
            )

        self._logger.info(
            "stack_initialized",
            model=resolved.name,
            store_type=store.type.value,
            path=None if store.path is None else str(store.path),
        )

    def create_child_context(self) -> ExecutionContext:
        """Return a new context whose parent is the default context."""

        default = self._default_context
        if default is None:
            raise ContextNotFoundError()
        return ExecutionContext(
            default.store,
            parent=default,
            name=f"{CHILD_CONTEXT_NAME}-{next(self._child_counter)}",
            logger=self._logger,
        )

    def teardown(self) -> None:
        """Close the default context, detach every store, and delete store files.

        Raises ``StoreFilesDeletionError`` after cleanup when a file could not be
        deleted for a reason other than not existing. The stack is reset either way.
        """

        with self._lock:
            context = self._default_context
            stores = self._stores
            self._default_context = None
            self._stores = []
            self._model = None

        if context is None and not stores:
            return

        if context is not None:
            context.close()

        failures: list[tuple[Path, OSError]] = []
        for store in stores:
            try:
                store.close()
            except StoreError as exc:
                self._logger.warning("store_detach_failed", path=str(store.path), error=str(exc))

            if store.path is None:
                continue
            for path, exc in delete_store_files(store.path):
                self._logger.warning("store_file_delete_failed", path=str(path), error=str(exc))
                failures.append((path, exc))

        self._logger.info("stack_torn_down", stores=len(stores), failed_deletions=len(failures))
        if failures:
            raise StoreFilesDeletionError(tuple(failures))


def _resolve_model(model: ModelSource, bundle: str | Path | None) -> ManagedObjectModel:
    if isinstance(model, ManagedObjectModel):
        return model
    if bundle is not None:
        return load_model(resolve_model_path(str(model), bundle))
    return load_model(model)


__all__ = ["ModelSource", "PersistenceStack"]
