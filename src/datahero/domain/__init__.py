"""
datahero — domain layer

Purpose
- Model descriptions (entities and their attributes) and object identifiers.

Non-functional requirements
- Domain layer stays free of IO beyond reading model files.
"""

from datahero.domain.ids import generate_object_id, short_id, validate_object_id
from datahero.domain.model import (
    AttributeDescription,
    AttributeType,
    EntityDescription,
    ManagedObjectModel,
    load_model,
    parse_model,
    resolve_model_path,
)

__all__ = [
    "AttributeDescription",
    "AttributeType",
    "EntityDescription",
    "ManagedObjectModel",
    "generate_object_id",
    "load_model",
    "parse_model",
    "resolve_model_path",
    "short_id",
    "validate_object_id",
]
