"""Managed objects: entity instances owned by one execution context at a time."""

from __future__ import annotations

from typing import TYPE_CHECKING, ClassVar

from datahero.domain.ids import short_id

if TYPE_CHECKING:
    from datahero.domain.model import EntityDescription, ManagedObjectModel
    from datahero.persistence.context import ExecutionContext

ObjectKey = tuple[str, str]


class ManagedObject:
    """An addressable record of an entity type.

    Attributes declared by the entity read and write through to the object's
    values; writing one marks the object updated in its owning context.
    Objects are confined to their context: write attributes from the thread
    that owns the context or inside ``context.perform``, never concurrently with
    a save or fetch running on that context.
    Subclasses bind themselves to an entity by class name, or by setting
    ``entity_name`` explicitly.
    """

    entity_name: ClassVar[str | None] = None

    def __init__(
        self,
        entity: EntityDescription,
        object_id: str,
        *,
        values: dict[str, object] | None = None,
        context: ExecutionContext | None = None,
    ) -> None:
        object.__setattr__(self, "_entity", entity)
        object.__setattr__(self, "_object_id", object_id)
        object.__setattr__(self, "_values", dict(values or {}))
        object.__setattr__(self, "_context", context)

    @property
    def entity(self) -> EntityDescription:
        return self._entity

    @property
    def object_id(self) -> str:
        return self._object_id

    @property
    def key(self) -> ObjectKey:
        return (self._entity.name, self._object_id)

    @property
    def context(self) -> ExecutionContext | None:
        """The owning context, or ``None`` once the object is detached."""
        return self._context

    @property
    def is_inserted(self) -> bool:
        return self._context is not None and self._context.is_pending_insert(self)

    @property
    def is_deleted(self) -> bool:
        return self._context is not None and self._context.is_pending_delete(self)

    def values(self) -> dict[str, object]:
        return dict(self._values)

    def __getattr__(self, name: str) -> object:
        # Only reached when normal lookup fails.
        if name.startswith("_"):
            raise AttributeError(name)
        state = self.__dict__
        entity = state.get("_entity")
        if entity is not None and name in entity.attributes:
            return state["_values"].get(name)
        raise AttributeError(f"{type(self).__name__!s} has no attribute {name!r}")

    def __setattr__(self, name: str, value: object) -> None:
        if name in self._entity.attributes:
            self._values[name] = value
            if self._context is not None:
                self._context.note_updated(self)
            return
        if name.startswith("_") or hasattr(type(self), name):
            object.__setattr__(self, name, value)
            return
        raise AttributeError(f"entity {self._entity.name} has no attribute {name!r}")

    def __repr__(self) -> str:
        rendered = ", ".join(f"{key}={value!r}" for key, value in self._values.items())
        return f"<{self._entity.name} {short_id(self._object_id)} {rendered}>"

    # Internal hooks used by ExecutionContext.

    def _attach(self, context: ExecutionContext | None) -> None:
        object.__setattr__(self, "_context", context)

    def _replace_values(self, values: dict[str, object]) -> None:
        object.__setattr__(self, "_values", dict(values))


def entity_name_of(entity_type: str | type[ManagedObject]) -> str:
    """Return the entity name for an entity name or a ``ManagedObject`` subclass."""

    if isinstance(entity_type, str):
        return entity_type
    if isinstance(entity_type, type) and issubclass(entity_type, ManagedObject):
        return entity_type.entity_name or entity_type.__name__
    raise TypeError(
        f"entity type must be a str or ManagedObject subclass, got {entity_type!r}"
    )


def resolve_entity(
    model: ManagedObjectModel, entity_type: str | type[ManagedObject]
) -> tuple[EntityDescription, type[ManagedObject]] | None:
    """Look up the entity description and object class for ``entity_type``.

    Returns ``None`` when the model has no such entity. A class passed here is
    bound to its entity the first time it is seen.
    """

    name = entity_name_of(entity_type)
    entity = model.entity(name)
    if entity is None:
        return None
    if isinstance(entity_type, type):
        if model.class_for(name) is None:
            model.register_class(name, entity_type)
        return entity, entity_type
    return entity, model.class_for(name) or ManagedObject


__all__ = ["ManagedObject", "ObjectKey", "entity_name_of", "resolve_entity"]
