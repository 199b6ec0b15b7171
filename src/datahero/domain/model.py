"""
Managed object model: entity and attribute descriptions loaded from YAML.

A model file declares entity types and their typed attributes:

    name: Library
    entities:
      Book:
        attributes:
          title: {type: string}
          pages: {type: integer, optional: true, default: 0}

The model is an opaque schema for the rest of the package: the store turns each
entity into one table and each attribute into one column.
"""

from __future__ import annotations

import base64
import hashlib
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Final, cast

import yaml

from datahero.errors import ModelLoadError

if TYPE_CHECKING:
    from datahero.persistence.objects import ManagedObject

MODEL_FILE_SUFFIXES: Final[tuple[str, ...]] = (".yaml", ".yml")
ID_COLUMN: Final[str] = "_id"

_IDENTIFIER_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_ALLOWED_MODEL_FIELDS: Final[frozenset[str]] = frozenset({"name", "entities"})
_ALLOWED_ENTITY_FIELDS: Final[frozenset[str]] = frozenset({"attributes"})
_ALLOWED_ATTRIBUTE_FIELDS: Final[frozenset[str]] = frozenset({"type", "optional", "default"})
# Names taken by ManagedObject itself.
_RESERVED_ATTRIBUTE_NAMES: Final[frozenset[str]] = frozenset(
    {"context", "entity", "entity_name", "is_deleted", "is_inserted", "key", "object_id", "values"}
)


class AttributeType(StrEnum):
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    BINARY = "binary"
    DATE = "date"


_SQL_COLUMN_TYPES: Final[dict[AttributeType, str]] = {
    AttributeType.STRING: "TEXT",
    AttributeType.INTEGER: "INTEGER",
    AttributeType.FLOAT: "REAL",
    AttributeType.BOOLEAN: "INTEGER",
    AttributeType.BINARY: "BLOB",
    AttributeType.DATE: "TEXT",
}


@dataclass(frozen=True, slots=True)
class AttributeDescription:
    name: str
    type: AttributeType
    optional: bool = False
    default: object = None

    @property
    def column_type(self) -> str:
        return _SQL_COLUMN_TYPES[self.type]

    def to_sql(self, value: object) -> object:
        """Convert a Python attribute value to the value bound into SQL."""
        if value is None:
            return None
        if self.type is AttributeType.BOOLEAN:
            return 1 if value else 0
        if self.type is AttributeType.DATE and isinstance(value, date):
            return value.isoformat()
        return value

    def from_sql(self, value: object) -> object:
        if value is None:
            return None
        if self.type is AttributeType.BOOLEAN:
            return bool(value)
        if self.type is AttributeType.DATE and isinstance(value, str):
            # Plain dates are stored without a time part.
            if "T" in value:
                return datetime.fromisoformat(value)
            return date.fromisoformat(value)
        return value

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type.value,
            "optional": self.optional,
            "default": _json_default(self.to_sql(self.default)),
        }


@dataclass(frozen=True, slots=True)
class EntityDescription:
    name: str
    attributes: Mapping[str, AttributeDescription]

    def attribute(self, name: str) -> AttributeDescription | None:
        return self.attributes.get(name)

    @property
    def attribute_names(self) -> tuple[str, ...]:
        return tuple(self.attributes)

    def default_values(self) -> dict[str, object]:
        return {name: attribute.default for name, attribute in self.attributes.items()}

    def to_dict(self) -> dict[str, object]:
        return {
            "attributes": {
                name: attribute.to_dict() for name, attribute in self.attributes.items()
            }
        }


@dataclass(slots=True)
class ManagedObjectModel:
    """Entity descriptions plus the Python classes bound to them."""

    name: str
    entities: Mapping[str, EntityDescription]
    source_path: Path | None = None
    _classes: dict[str, type[ManagedObject]] = field(default_factory=dict, repr=False)

    def entity(self, name: str) -> EntityDescription | None:
        return self.entities.get(name)

    @property
    def entity_names(self) -> tuple[str, ...]:
        return tuple(self.entities)

    def register_class(self, entity_name: str, cls: type[ManagedObject]) -> None:
        """Bind ``cls`` to ``entity_name`` so fetched rows materialize as ``cls``."""
        if entity_name not in self.entities:
            raise KeyError(f"unknown entity: {entity_name}")
        self._classes[entity_name] = cls

    def class_for(self, entity_name: str) -> type[ManagedObject] | None:
        return self._classes.get(entity_name)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "entities": {name: entity.to_dict() for name, entity in self.entities.items()},
        }

    @property
    def checksum(self) -> str:
        canonical = json.dumps(
            self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def resolve_model_path(name: str, bundle: str | Path) -> Path:
    """Locate ``<bundle>/<name>.yaml`` (or ``.yml``)."""

    bundle_dir = Path(bundle).expanduser()
    for suffix in MODEL_FILE_SUFFIXES:
        candidate = bundle_dir / f"{name}{suffix}"
        if candidate.is_file():
            return candidate
    raise ModelLoadError(f"failed to find model {name!r} in bundle {bundle_dir}")


def load_model(path: str | Path) -> ManagedObjectModel:
    """Load and validate a model description file."""

    model_path = Path(path).expanduser()
    try:
        with model_path.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except OSError as exc:
        raise ModelLoadError(f"{model_path}: cannot read model ({exc})") from exc
    except yaml.YAMLError as exc:
        raise ModelLoadError(f"{model_path}: invalid YAML ({exc})") from exc

    return parse_model(loaded, location=str(model_path), source_path=model_path)


def parse_model(
    value: object, *, location: str = "model", source_path: Path | None = None
) -> ManagedObjectModel:
    parsed = _as_string_key_mapping(value, location)
    _reject_unknown_fields(parsed, _ALLOWED_MODEL_FIELDS, location)

    default_name = source_path.stem if source_path is not None else "model"
    name = parsed.get("name", default_name)
    if not isinstance(name, str) or not name.strip():
        raise ModelLoadError(f"{location}.name: expected non-empty string")

    raw_entities = _as_string_key_mapping(parsed.get("entities", {}), f"{location}.entities")
    entities: dict[str, EntityDescription] = {}
    for entity_name, raw_entity in raw_entities.items():
        entity_location = f"{location}.{entity_name}"
        _validate_identifier(entity_name, entity_location)
        entities[entity_name] = _parse_entity(entity_name, raw_entity, location=entity_location)

    return ManagedObjectModel(name=name.strip(), entities=entities, source_path=source_path)


def _parse_entity(name: str, value: object, *, location: str) -> EntityDescription:
    parsed = _as_string_key_mapping({} if value is None else value, location)
    _reject_unknown_fields(parsed, _ALLOWED_ENTITY_FIELDS, location)

    raw_attributes = _as_string_key_mapping(
        parsed.get("attributes", {}), f"{location}.attributes"
    )
    attributes: dict[str, AttributeDescription] = {}
    for attribute_name, raw_attribute in raw_attributes.items():
        attribute_location = f"{location}.attributes.{attribute_name}"
        _validate_identifier(attribute_name, attribute_location)
        if attribute_name in _RESERVED_ATTRIBUTE_NAMES:
            raise ModelLoadError(f"{attribute_location}: attribute name is reserved")
        attributes[attribute_name] = _parse_attribute(
            attribute_name, raw_attribute, location=attribute_location
        )
    return EntityDescription(name=name, attributes=attributes)


def _parse_attribute(name: str, value: object, *, location: str) -> AttributeDescription:
    # Shorthand: `title: string`.
    if isinstance(value, str):
        value = {"type": value}
    parsed = _as_string_key_mapping(value, location)
    _reject_unknown_fields(parsed, _ALLOWED_ATTRIBUTE_FIELDS, location)

    raw_type = parsed.get("type")
    try:
        attribute_type = AttributeType(raw_type)
    except ValueError as exc:
        allowed = sorted(item.value for item in AttributeType)
        raise ModelLoadError(
            f"{location}.type: unsupported attribute type {raw_type!r}; allowed: {allowed}"
        ) from exc

    optional = parsed.get("optional", False)
    if not isinstance(optional, bool):
        raise ModelLoadError(f"{location}.optional: expected boolean")

    default = parsed.get("default")
    if default is not None:
        _validate_default(attribute_type, default, f"{location}.default")

    return AttributeDescription(
        name=name, type=attribute_type, optional=optional, default=default
    )


def _validate_default(attribute_type: AttributeType, default: object, location: str) -> None:
    valid: bool
    if attribute_type is AttributeType.STRING:
        valid = isinstance(default, str)
    elif attribute_type is AttributeType.INTEGER:
        valid = isinstance(default, int) and not isinstance(default, bool)
    elif attribute_type is AttributeType.FLOAT:
        valid = isinstance(default, (int, float)) and not isinstance(default, bool)
    elif attribute_type is AttributeType.BOOLEAN:
        valid = isinstance(default, bool)
    elif attribute_type is AttributeType.DATE:
        valid = isinstance(default, date)
    else:
        valid = isinstance(default, bytes)
    if not valid:
        raise ModelLoadError(
            f"{location}: default {default!r} does not match type {attribute_type.value}"
        )


def _json_default(value: object) -> object:
    if isinstance(value, bytes):
        return base64.b64encode(value).decode("ascii")
    return value


def _validate_identifier(value: str, location: str) -> None:
    if _IDENTIFIER_RE.fullmatch(value) is None:
        raise ModelLoadError(
            f"{location}: {value!r} must start with a letter and contain only "
            "letters, digits, and underscores"
        )


def _reject_unknown_fields(
    parsed: Mapping[str, object], allowed: frozenset[str], location: str
) -> None:
    unknown = sorted(set(parsed) - allowed)
    if unknown:
        raise ModelLoadError(
            f"{location}: unexpected fields: {unknown}; allowed fields: {sorted(allowed)}"
        )


def _as_string_key_mapping(value: object, location: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        raise ModelLoadError(f"{location}: expected mapping, got {type(value).__name__}")
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ModelLoadError(f"{location}: keys must be strings, got {key!r}")
        out[key] = item
    return out


__all__ = [
    "ID_COLUMN",
    "MODEL_FILE_SUFFIXES",
    "AttributeDescription",
    "AttributeType",
    "EntityDescription",
    "ManagedObjectModel",
    "load_model",
    "parse_model",
    "resolve_model_path",
]
