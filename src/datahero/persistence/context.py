"""
datahero — execution contexts

Purpose
- Bind a serial task queue to a working set of managed objects.
- Track pending inserts, updates, and deletes until a save pushes them to the
  parent context (child contexts) or writes them to the store (root contexts).

Functional requirements
- Work dispatched to one context runs in FIFO order on its single worker thread.
- ``perform_and_wait`` blocks the caller until the work completes and re-raises
  the work's exception unchanged; dispatching from the worker thread runs inline.
- Queries see the pending changes of the context and of its ancestors.

Non-functional requirements
- No timeouts and no cancellation: a caller blocked on a stalled queue waits.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import TYPE_CHECKING, ParamSpec, TypeVar

import structlog

from datahero.domain.ids import generate_object_id
from datahero.errors import ContextClosedError, ObjectValidationError
from datahero.persistence.objects import ManagedObject, ObjectKey, resolve_entity
from datahero.persistence.store import ChangeSet

if TYPE_CHECKING:
    import sqlite3

    from datahero.domain.model import EntityDescription
    from datahero.persistence.requests import FetchRequest, Predicate
    from datahero.persistence.store import PersistentStore

P = ParamSpec("P")
T = TypeVar("T")


class _WorkerIdentity:
    """Thread ident of a context's worker, recorded by the executor initializer."""

    __slots__ = ("ident",)

    def __init__(self) -> None:
        self.ident: int | None = None

    def bind(self) -> None:
        self.ident = threading.get_ident()


class ExecutionContext:
    """A serial queue plus the managed objects registered with it."""

    def __init__(
        self,
        store: PersistentStore,
        *,
        parent: ExecutionContext | None = None,
        name: str = "context",
        logger: structlog.typing.FilteringBoundLogger | None = None,
    ) -> None:
        if parent is not None and parent.store is not store:
            raise ValueError("a child context must share its parent's store")
        self._store = store
        self._parent = parent
        self._name = name
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._worker = _WorkerIdentity()
        # The initializer must not reference ``self``: the worker thread keeps it
        # alive, and the executor has to be collectable along with the context.
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"datahero-{name}",
            initializer=self._worker.bind,
        )
        self._closed = False
        self._registered: dict[ObjectKey, ManagedObject] = {}
        self._inserted: dict[ObjectKey, ManagedObject] = {}
        self._updated: dict[ObjectKey, ManagedObject] = {}
        self._deleted: dict[ObjectKey, ManagedObject] = {}

    def __repr__(self) -> str:
        parent = None if self._parent is None else self._parent.name
        return f"ExecutionContext(name={self._name!r}, parent={parent!r})"

    @property
    def name(self) -> str:
        return self._name

    @property
    def parent(self) -> ExecutionContext | None:
        return self._parent

    @property
    def store(self) -> PersistentStore:
        return self._store

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_on_queue(self) -> bool:
        """True when the calling thread is this context's worker."""
        return self._worker.ident == threading.get_ident()

    # Dispatch

    def perform_and_wait(self, fn: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """Run ``fn`` on this context's queue and block until it finishes."""

        if self.is_on_queue:
            return fn(*args, **kwargs)
        return self.perform(fn, *args, **kwargs).result()

    def perform(self, fn: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> Future[T]:
        """Enqueue ``fn`` without waiting for it."""

        try:
            return self._executor.submit(fn, *args, **kwargs)
        except RuntimeError as exc:
            raise ContextClosedError(f"context {self._name!r} is closed") from exc

    def close(self) -> None:
        """Stop the queue; already-enqueued work still runs."""

        self._closed = True
        self._executor.shutdown(wait=not self.is_on_queue)

    # Working set

    @property
    def has_changes(self) -> bool:
        return self.perform_and_wait(self._has_changes)

    @property
    def registered_objects(self) -> tuple[ManagedObject, ...]:
        return self.perform_and_wait(lambda: tuple(self._registered.values()))

    def is_pending_insert(self, obj: ManagedObject) -> bool:
        return obj.key in self._inserted

    def is_pending_delete(self, obj: ManagedObject) -> bool:
        return obj.key in self._deleted

    def note_updated(self, obj: ManagedObject) -> None:
        """Mark ``obj`` updated on the queue, after any work already running there."""

        if self._closed:
            self._note_updated(obj)
            return
        self.perform_and_wait(self._note_updated, obj)

    def _note_updated(self, obj: ManagedObject) -> None:
        key = obj.key
        if key in self._inserted or key in self._deleted:
            return
        self._updated[key] = obj

    def insert_new_object(
        self, entity_type: str | type[ManagedObject]
    ) -> ManagedObject | None:
        """Register a new object; returns ``None`` for an entity the model lacks."""

        return self.perform_and_wait(self._insert_new_object, entity_type)

    def delete_object(self, obj: ManagedObject) -> None:
        self.perform_and_wait(self._delete_object, obj)

    def count(self, request: FetchRequest) -> int:
        def _count(conn: sqlite3.Connection) -> int:
            return self._store.count(conn, request)

        return self.perform_and_wait(self._run_query, _count)

    def fetch(
        self, request: FetchRequest, cls: type[ManagedObject] | None = None
    ) -> list[ManagedObject]:
        return self.perform_and_wait(self._fetch, request, cls)

    def save(self) -> None:
        """Push pending changes to the parent context, or write them to the store."""

        self.perform_and_wait(self._save)

    def batch_delete(self, entity: EntityDescription, predicate: Predicate | None) -> int:
        """Delete matching rows in the store directly and evict them from this context."""

        return self.perform_and_wait(self._batch_delete, entity, predicate)

    # Queue-side implementations

    def _has_changes(self) -> bool:
        return bool(self._inserted or self._updated or self._deleted)

    def _insert_new_object(
        self, entity_type: str | type[ManagedObject]
    ) -> ManagedObject | None:
        resolved = resolve_entity(self._store.model, entity_type)
        if resolved is None:
            self._logger.warning("insert_unknown_entity", entity_type=repr(entity_type))
            return None
        entity, cls = resolved
        obj = cls(entity, generate_object_id(), values=entity.default_values(), context=self)
        self._registered[obj.key] = obj
        self._inserted[obj.key] = obj
        return obj

    def _delete_object(self, obj: ManagedObject) -> None:
        if obj.context is not self:
            raise ValueError(f"{obj!r} is not registered with context {self._name!r}")
        key = obj.key
        if self._inserted.pop(key, None) is not None:
            self._registered.pop(key, None)
            obj._attach(None)
            return
        self._updated.pop(key, None)
        self._deleted[key] = obj

    def _fetch(
        self, request: FetchRequest, cls: type[ManagedObject] | None
    ) -> list[ManagedObject]:
        rows = self._run_query(lambda conn: self._store.select(conn, request))
        object_cls = cls or self._store.model.class_for(request.entity.name) or ManagedObject
        out: list[ManagedObject] = []
        for row in rows:
            key = (request.entity.name, row.object_id)
            obj = self._registered.get(key)
            if obj is None:
                obj = object_cls(request.entity, row.object_id, values=row.values, context=self)
                self._registered[key] = obj
            elif key not in self._inserted and key not in self._updated:
                obj._replace_values(row.values)
            out.append(obj)
        return out

    def _run_query(self, query: Callable[[sqlite3.Connection], T]) -> T:
        chain = self._pending_chain()
        if not chain:
            with self._store.connection() as conn:
                return query(conn)
        with self._store.scratch() as conn:
            for changes in chain:
                self._store.apply_changes(conn, changes)
            return query(conn)

    def _pending_chain(self) -> list[ChangeSet]:
        chain: list[ChangeSet] = []
        if self._parent is not None:
            chain.extend(self._parent.perform_and_wait(self._parent._pending_chain))
        own = self._change_set()
        if not own.is_empty:
            chain.append(own)
        return chain

    def _change_set(self) -> ChangeSet:
        return ChangeSet(
            inserted={key: obj.values() for key, obj in self._inserted.items()},
            updated={key: obj.values() for key, obj in self._updated.items()},
            deleted=frozenset(self._deleted),
        )

    def _save(self) -> None:
        changes = self._change_set()
        if changes.is_empty:
            return

        if self._parent is not None:
            self._parent.perform_and_wait(self._parent._merge_changes, changes)
        else:
            self._validate(changes)
            self._store.save(changes)

        self._clear_pending(changes)
        self._logger.debug(
            "context_saved",
            context=self._name,
            target="parent" if self._parent is not None else "store",
            inserted=len(changes.inserted),
            updated=len(changes.updated),
            deleted=len(changes.deleted),
        )

    def _validate(self, changes: ChangeSet) -> None:
        model = self._store.model
        for key, values in (*changes.inserted.items(), *changes.updated.items()):
            entity = model.entity(key[0])
            if entity is None:
                continue
            for name, attribute in entity.attributes.items():
                if not attribute.optional and values.get(name) is None:
                    raise ObjectValidationError(
                        f"{entity.name}.{name} is required (object {key[1]})"
                    )

    def _clear_pending(self, changes: ChangeSet) -> None:
        for key in changes.inserted:
            self._inserted.pop(key, None)
        for key in changes.updated:
            self._updated.pop(key, None)
        for key in changes.deleted:
            obj = self._deleted.pop(key, None)
            self._registered.pop(key, None)
            if obj is not None:
                obj._attach(None)

    def _merge_changes(self, changes: ChangeSet) -> None:
        for key, values in changes.inserted.items():
            self._inserted[key] = self._merged_object(key, values)

        for key, values in changes.updated.items():
            obj = self._merged_object(key, values)
            if key not in self._inserted:
                self._updated[key] = obj

        for key in changes.deleted:
            if self._inserted.pop(key, None) is not None:
                dropped = self._registered.pop(key, None)
                if dropped is not None:
                    dropped._attach(None)
                continue
            self._updated.pop(key, None)
            self._deleted[key] = self._merged_object(key, None)

    def _merged_object(self, key: ObjectKey, values: dict[str, object] | None) -> ManagedObject:
        obj = self._registered.get(key)
        if obj is not None:
            if values is not None:
                obj._replace_values(values)
            return obj

        entity_name, object_id = key
        entity = self._store.model.entity(entity_name)
        if entity is None:
            raise ValueError(f"entity {entity_name!r} is not part of the model")
        cls = self._store.model.class_for(entity_name) or ManagedObject
        obj = cls(entity, object_id, values=values, context=self)
        self._registered[key] = obj
        return obj

    def _batch_delete(self, entity: EntityDescription, predicate: Predicate | None) -> int:
        deleted_ids = self._store.batch_delete(entity, predicate)
        keys = [(entity.name, object_id) for object_id in deleted_ids]
        self._forget(keys)
        ancestor = self._parent
        while ancestor is not None:
            ancestor.perform_and_wait(ancestor._forget, keys)
            ancestor = ancestor.parent
        return len(deleted_ids)

    def _forget(self, keys: Iterable[ObjectKey]) -> None:
        for key in keys:
            self._updated.pop(key, None)
            self._deleted.pop(key, None)
            obj = self._registered.pop(key, None)
            if obj is not None:
                obj._attach(None)


__all__ = ["ExecutionContext"]
