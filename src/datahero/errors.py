"""Exception and warning types shared across the stack, contexts, and operator."""

from __future__ import annotations

from pathlib import Path

_NO_CONTEXT_MESSAGE = "no execution context available; initialize the stack first"


class DataHeroError(RuntimeError):
    """Base class for errors raised by datahero itself."""


class ModelLoadError(DataHeroError, ValueError):
    """Raised when a model description cannot be located, read, or parsed."""


class StoreLoadError(DataHeroError):
    """Raised when the backing store cannot be opened during stack initialization."""


class StackAlreadyInitializedError(DataHeroError):
    """Raised when ``initialize`` is called on a stack that was not torn down."""


class ContextNotFoundError(DataHeroError):
    """Raised when an operation has no context to run on."""

    def __init__(self, message: str = _NO_CONTEXT_MESSAGE) -> None:
        super().__init__(message)


class ContextClosedError(DataHeroError):
    """Raised when work is dispatched to a context whose queue was shut down."""


class ObjectHasNoContextError(DataHeroError):
    """Raised when an operation needs the owning context of a detached object."""

    def __init__(self, obj: object) -> None:
        super().__init__(f"object is not registered with any context: {obj!r}")
        self.obj = obj


class ObjectValidationError(DataHeroError, ValueError):
    """Raised on save when an object is missing a required attribute."""


class StoreFilesDeletionError(DataHeroError):
    """Raised by teardown after all store files were attempted and some could not be deleted."""

    def __init__(self, failures: tuple[tuple[Path, OSError], ...]) -> None:
        rendered = ", ".join(f"{path}: {exc}" for path, exc in failures)
        super().__init__(f"failed to delete store file(s): {rendered}")
        self.failures = failures


class MultipleResultsWarning(UserWarning):
    """Emitted when a single-object fetch matches more than one object."""


__all__ = [
    "ContextClosedError",
    "ContextNotFoundError",
    "DataHeroError",
    "ModelLoadError",
    "MultipleResultsWarning",
    "ObjectHasNoContextError",
    "ObjectValidationError",
    "StackAlreadyInitializedError",
    "StoreFilesDeletionError",
    "StoreLoadError",
]
