"""
datahero — stack config loader.

Purpose
- Load the effective stack config from defaults, a TOML file, env vars, and
  explicit overrides.

What should be included in this file
- Precedence logic: overrides > env (DATAHERO_) > file > defaults.
- TOML loading via ``tomllib``.
- Deterministic environment variable mapping and coercion.
- Path normalization relative to the config file location.

Functional requirements
- Reject unknown sections, unknown keys, and mistyped values with ``ConfigLoadError``.

Non-functional requirements
- Keep loading deterministic and reproducible.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

from datahero.constants import DEFAULT_CONFIG_FILE, ENV_PREFIX
from datahero.persistence.store import DEFAULT_BUSY_TIMEOUT_MS

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

_ValueType = Literal["str", "int", "bool"]


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: _ValueType


_BINDINGS: Final[tuple[_Binding, ...]] = (
    _Binding(("stack", "model"), "str"),
    _Binding(("stack", "bundle"), "str"),
    _Binding(("stack", "database_path"), "str"),
    _Binding(("stack", "busy_timeout_ms"), "int"),
    _Binding(("logging", "level"), "str"),
    _Binding(("logging", "log_dir"), "str"),
    _Binding(("logging", "log_to_stdout"), "bool"),
)

# Path fields are resolved against the config file; ``stack.model`` only when
# it names a file rather than a model inside ``stack.bundle``.
_PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("stack", "bundle"),
    ("stack", "database_path"),
    ("logging", "log_dir"),
)


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class StackConfig:
    """Validated settings for bringing a ``PersistenceStack`` online."""

    model: str | Path
    bundle: Path | None = None
    database_path: Path | None = None
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    log_level: str = "INFO"
    log_dir: Path | None = None
    log_to_stdout: bool = True

    @property
    def is_in_memory(self) -> bool:
        return self.database_path is None


def default_config() -> dict[str, Any]:
    return {
        "stack": {"busy_timeout_ms": DEFAULT_BUSY_TIMEOUT_MS},
        "logging": {"level": "INFO", "log_to_stdout": True},
    }


def load_config(
    config_path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> StackConfig:
    """Load effective config with deterministic precedence: overrides > env > file > defaults.

    Without ``config_path``, ``datahero.toml`` in the working directory is read
    when it exists. ``overrides`` keys are dotted paths such as ``stack.model``.
    """

    resolved_path = _resolve_config_path(config_path)
    explicit_path = config_path is not None
    env_map = dict(os.environ if environ is None else environ)

    merged = default_config()
    _merge_mapping(merged, _load_toml_file(resolved_path, required=explicit_path))
    _assert_known_keys(merged, source=str(resolved_path))
    _merge_mapping(merged, _collect_env_overrides(env_map))
    _merge_mapping(merged, _materialize_overrides(overrides or {}))
    _assert_known_keys(merged, source="overrides")

    normalize_paths(merged, base_dir=resolved_path.parent)
    return _build_stack_config(merged)


def normalize_paths(config: dict[str, Any], *, base_dir: Path) -> None:
    """Normalize configured path fields in place relative to ``base_dir``."""

    for field_path in _PATH_FIELDS:
        _normalize_path_field(config, field_path, base_dir)
    if _get_nested(config, ("stack", "bundle")) is None:
        _normalize_path_field(config, ("stack", "model"), base_dir)


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    return parsed


def _assert_known_keys(config: Mapping[str, object], *, source: str) -> None:
    known: dict[str, set[str]] = {}
    for binding in _BINDINGS:
        known.setdefault(binding.path[0], set()).add(binding.path[1])

    for section in sorted(config):
        keys = config[section]
        if section not in known:
            raise ConfigLoadError(f"{source}: unknown config section [{section}]")
        if not isinstance(keys, Mapping):
            raise ConfigLoadError(f"{source}: [{section}] must be a table")
        unknown = sorted(set(keys) - known[section])
        if unknown:
            raise ConfigLoadError(
                f"{source}: unknown key(s) in [{section}]: {', '.join(unknown)}"
            )


def _collect_env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for binding in _BINDINGS:
        env_name = _env_name_for_path(binding.path)
        raw = environ.get(env_name)
        if raw is None:
            continue
        value = _coerce_env(raw, binding.value_type, env_name, binding.path)
        _set_nested(overrides, binding.path, value)
    return overrides


def _coerce_env(
    raw: str,
    value_type: _ValueType,
    env_name: str,
    path: tuple[str, ...],
) -> object:
    value = raw.strip()
    if value_type == "str":
        return value
    if value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} must be an integer") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(
        f"{env_name} -> {'.'.join(path)} must be a boolean (true/false/1/0/yes/no/on/off)"
    )


def _materialize_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(overrides):
        path = tuple(part for part in key.split(".") if part)
        if len(path) != 2:
            raise ConfigLoadError(f"invalid override key {key!r}; expected 'section.key'")
        value = overrides[key]
        if isinstance(value, Path):
            value = str(value)
        _set_nested(payload, path, value)
    return payload


def _build_stack_config(config: Mapping[str, Any]) -> StackConfig:
    stack = config["stack"]
    logging_section = config["logging"]

    model = _optional_str(stack, "model", "stack")
    if model is None:
        raise ConfigLoadError("stack.model is required")
    bundle = _optional_str(stack, "bundle", "stack")
    database_path = _optional_str(stack, "database_path", "stack")
    log_dir = _optional_str(logging_section, "log_dir", "logging")

    busy_timeout_ms = stack["busy_timeout_ms"]
    if isinstance(busy_timeout_ms, bool) or not isinstance(busy_timeout_ms, int):
        raise ConfigLoadError("stack.busy_timeout_ms must be an integer")
    if busy_timeout_ms < 0:
        raise ConfigLoadError("stack.busy_timeout_ms must be >= 0")

    level = logging_section["level"]
    if not isinstance(level, str) or not level.strip():
        raise ConfigLoadError("logging.level must be a non-empty string")
    log_to_stdout = logging_section["log_to_stdout"]
    if not isinstance(log_to_stdout, bool):
        raise ConfigLoadError("logging.log_to_stdout must be a boolean")

    return StackConfig(
        model=model if bundle is not None else Path(model),
        bundle=None if bundle is None else Path(bundle),
        database_path=None if database_path is None else Path(database_path),
        busy_timeout_ms=busy_timeout_ms,
        log_level=level.strip().upper(),
        log_dir=None if log_dir is None else Path(log_dir),
        log_to_stdout=log_to_stdout,
    )


def _optional_str(section: Mapping[str, Any], key: str, section_name: str) -> str | None:
    value = section.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigLoadError(f"{section_name}.{key} must be a string")
    stripped = value.strip()
    return stripped or None


def _merge_mapping(target: dict[str, Any], source: Mapping[str, object]) -> None:
    for key in sorted(source):
        value = source[key]
        if isinstance(value, Mapping):
            child = target.get(key)
            if not isinstance(child, dict):
                child = {}
                target[key] = child
            _merge_mapping(child, value)
        else:
            target[key] = value


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        next_node = cursor.get(part)
        if not isinstance(next_node, dict):
            next_node = {}
            cursor[part] = next_node
        cursor = next_node
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping):
            return None
        if part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _normalize_path_field(config: dict[str, Any], path: tuple[str, ...], base_dir: Path) -> None:
    value = _get_nested(config, path)
    if not isinstance(value, str) or not value.strip():
        return
    _set_nested(config, path, _normalize_one_path(value.strip(), base_dir))


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    expanded = os.path.expandvars(raw)
    candidate = Path(expanded).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    normalized = Path(os.path.normpath(str(candidate)))
    return normalized.as_posix()


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "ConfigLoadError",
    "StackConfig",
    "default_config",
    "load_config",
    "normalize_paths",
]
