"""Shared deterministic fixtures and builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Final

from datahero.domain.model import ManagedObjectModel, load_model, parse_model
from datahero.persistence.store import ChangeSet

FIXTURES_DIR: Final[Path] = Path(__file__).resolve().parents[2] / "fixtures"
MODELS_DIR: Final[Path] = FIXTURES_DIR / "models"
LIBRARY_MODEL_PATH: Final[Path] = MODELS_DIR / "library.yaml"

_BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def fixed_now(seed: int) -> datetime:
    return _BASE_TS + timedelta(seconds=seed)


def library_model() -> ManagedObjectModel:
    """A fresh model per call; class registrations never leak between tests."""
    return load_model(LIBRARY_MODEL_PATH)


def tiny_model() -> ManagedObjectModel:
    return parse_model(
        {
            "name": "Tiny",
            "entities": {"Note": {"attributes": {"body": {"type": "string", "optional": True}}}},
        }
    )


def book_values(title: str, *, pages: int = 0, **extra: object) -> dict[str, object]:
    values: dict[str, object] = {
        "title": title,
        "pages": pages,
        "rating": None,
        "available": True,
        "published": None,
        "cover": None,
    }
    values.update(extra)
    return values


def insert_books(*books: tuple[str, dict[str, object]]) -> ChangeSet:
    return ChangeSet(inserted={("Book", object_id): values for object_id, values in books})
