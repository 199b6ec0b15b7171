"""Stable constants shared across the stack, store, and config layers."""

from __future__ import annotations

from typing import Final

# Side files sqlite keeps next to a WAL-mode database.
SHARED_MEMORY_SUFFIX: Final[str] = "-shm"
WRITE_AHEAD_LOG_SUFFIX: Final[str] = "-wal"
STORE_FILE_SUFFIXES: Final[tuple[str, ...]] = ("", SHARED_MEMORY_SUFFIX, WRITE_AHEAD_LOG_SUFFIX)

DEFAULT_CONFIG_FILE: Final[str] = "datahero.toml"
ENV_PREFIX: Final[str] = "DATAHERO_"
LOGGER_NAME: Final[str] = "datahero"

DEFAULT_CONTEXT_NAME: Final[str] = "default"
CHILD_CONTEXT_NAME: Final[str] = "child"

__all__ = [
    "CHILD_CONTEXT_NAME",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_CONTEXT_NAME",
    "ENV_PREFIX",
    "LOGGER_NAME",
    "SHARED_MEMORY_SUFFIX",
    "STORE_FILE_SUFFIXES",
    "WRITE_AHEAD_LOG_SUFFIX",
]
