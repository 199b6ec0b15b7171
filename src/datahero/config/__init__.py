"""
datahero config package public API.

Purpose
- Export the stack config loader, the validated ``StackConfig``, and its error type.

Functional requirements
- Support loading from ``datahero.toml`` + ``DATAHERO_`` env overrides.
"""

from datahero.config.loader import (
    ConfigLoadError,
    StackConfig,
    default_config,
    load_config,
    normalize_paths,
)

__all__ = [
    "ConfigLoadError",
    "StackConfig",
    "default_config",
    "load_config",
    "normalize_paths",
]
