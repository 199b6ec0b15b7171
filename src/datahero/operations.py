"""
datahero — context-dispatched operations

Every operation takes an optional ``context``; without one the stack's default
context is used, and with neither the call raises ``ContextNotFoundError``
before doing any work. Each operation runs synchronously on the target
context's queue, and exceptions raised there reach the caller unchanged.
"""

from __future__ import annotations

import warnings
from collections.abc import Sequence
from typing import TYPE_CHECKING

import structlog

from datahero.errors import ContextNotFoundError, MultipleResultsWarning, ObjectHasNoContextError
from datahero.persistence.objects import ManagedObject, entity_name_of, resolve_entity
from datahero.persistence.requests import make_fetch_request

if TYPE_CHECKING:
    from datahero.domain.model import EntityDescription
    from datahero.persistence.context import ExecutionContext
    from datahero.persistence.requests import PredicateLike, SortDescriptor
    from datahero.stack import PersistenceStack

EntityType = str | type[ManagedObject]


class DataOperator:
    """Thread-safe count, fetch, create, and delete helpers over a stack."""

    def __init__(
        self,
        stack: PersistenceStack,
        *,
        logger: structlog.typing.FilteringBoundLogger | None = None,
    ) -> None:
        self._stack = stack
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def stack(self) -> PersistenceStack:
        return self._stack

    # Count

    def count(
        self,
        entity_type: EntityType,
        predicate: PredicateLike | None = None,
        *,
        context: ExecutionContext | None = None,
    ) -> int:
        """Return how many objects match; no matches is ``0``.

        Runs ``SELECT COUNT(*)`` only, so no objects are materialized.
        """

        target = self._resolve_context(context)
        entity = self._require_entity(target, entity_type)
        return target.count(make_fetch_request(entity, predicate))

    def exists(
        self,
        entity_type: EntityType,
        predicate: PredicateLike | None = None,
        *,
        context: ExecutionContext | None = None,
    ) -> bool:
        return self.count(entity_type, predicate, context=context) > 0

    # Create

    def new_instance(
        self,
        entity_type: EntityType,
        *,
        context: ExecutionContext | None = None,
    ) -> ManagedObject | None:
        """Insert a new object into the context; it is persisted by the next save.

        Returns ``None`` when the model has no such entity.
        """

        target = self._resolve_context(context)
        return target.insert_new_object(entity_type)

    # Fetch

    def fetch(
        self,
        entity_type: EntityType,
        predicate: PredicateLike | None = None,
        *,
        context: ExecutionContext | None = None,
    ) -> ManagedObject | None:
        """Fetch the single matching object.

        Zero matches returns ``None``. More than one match violates the caller's
        contract: a ``MultipleResultsWarning`` is emitted and ``None`` is returned.
        """

        target = self._resolve_context(context)
        entity = self._require_entity(target, entity_type)
        object_cls = _object_class(entity_type)

        def _fetch_one() -> tuple[int, ManagedObject | None]:
            matches = target.count(make_fetch_request(entity, predicate))
            if matches != 1:
                return matches, None
            results = target.fetch(make_fetch_request(entity, predicate, limit=1), object_cls)
            return matches, results[0] if results else None

        matches, result = target.perform_and_wait(_fetch_one)
        if matches > 1:
            self._logger.error(
                "fetch_multiple_results",
                entity=entity.name,
                matches=matches,
                context=target.name,
            )
            warnings.warn(
                f"fetch of {entity.name} matched {matches} objects; expected at most one",
                MultipleResultsWarning,
                stacklevel=2,
            )
            return None
        return result

    def fetch_multiple(
        self,
        entity_type: EntityType,
        predicate: PredicateLike | None = None,
        *,
        sort_descriptors: Sequence[SortDescriptor] | None = None,
        limit: int | None = None,
        batch_size: int | None = None,
        context: ExecutionContext | None = None,
    ) -> list[ManagedObject]:
        """Fetch every match, sorted and truncated as requested; ``[]`` when none.

        ``batch_size`` only tunes how rows are paged out of the engine.
        """

        target = self._resolve_context(context)
        entity = self._require_entity(target, entity_type)
        request = make_fetch_request(
            entity,
            predicate,
            sort_descriptors=sort_descriptors,
            limit=limit,
            batch_size=batch_size,
        )
        return target.fetch(request, _object_class(entity_type))

    # Delete

    def delete(self, obj: ManagedObject) -> None:
        """Delete ``obj`` from its context and save that context."""

        target = obj.context
        if target is None:
            raise ObjectHasNoContextError(obj)

        def _delete_and_save() -> None:
            target.delete_object(obj)
            target.save()

        target.perform_and_wait(_delete_and_save)

    def delete_all(
        self,
        entity_type: EntityType,
        predicate: PredicateLike | None = None,
        *,
        use_bulk_delete: bool = False,
        context: ExecutionContext | None = None,
    ) -> None:
        """Delete every matching object and save the context.

        Bulk deletion issues one statement against the store and needs a
        disk-persisted store; otherwise each match is fetched and deleted.
        """

        target = self._resolve_context(context)
        entity = self._require_entity(target, entity_type)
        request = make_fetch_request(entity, predicate)

        def _delete_all() -> None:
            use_bulk = use_bulk_delete and target.store.supports_batch_delete
            if use_bulk_delete and not use_bulk:
                self._logger.debug(
                    "bulk_delete_fallback",
                    entity=entity.name,
                    store_type=target.store.type.value,
                )
            if use_bulk:
                target.batch_delete(entity, request.predicate)
            else:
                for obj in target.fetch(request):
                    target.delete_object(obj)
            target.save()

        target.perform_and_wait(_delete_all)

    # Save

    def save_default_context(self) -> None:
        """Save the default context; a no-op without one or without changes."""

        default = self._stack.default_context
        if default is None:
            return
        default.save()

    def save_and_merge(self, context: ExecutionContext) -> None:
        """Save a child of the default context, then save the default context.

        Does nothing when there is no default context, when ``context`` is the
        default context or not its direct child, or when it has no changes.
        """

        default = self._stack.default_context
        if default is None or context is default or context.parent is not default:
            return

        def _save_child() -> bool:
            if not context.has_changes:
                return False
            context.save()
            return True

        if context.perform_and_wait(_save_child):
            default.save()

    def _resolve_context(self, context: ExecutionContext | None) -> ExecutionContext:
        target = context if context is not None else self._stack.default_context
        if target is None:
            raise ContextNotFoundError()
        return target

    def _require_entity(
        self, context: ExecutionContext, entity_type: EntityType
    ) -> EntityDescription:
        resolved = resolve_entity(context.store.model, entity_type)
        if resolved is None:
            raise KeyError(
                f"entity {entity_name_of(entity_type)!r} is not part of model "
                f"{context.store.model.name!r}"
            )
        return resolved[0]


def _object_class(entity_type: EntityType) -> type[ManagedObject] | None:
    return entity_type if isinstance(entity_type, type) else None


__all__ = ["DataOperator", "EntityType"]
