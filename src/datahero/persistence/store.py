"""
datahero — persistent store

Purpose
- Own the sqlite connection behind a stack: schema creation from the model,
  connection pragmas, and transactions.
- Delete the database file triplet (``<db>``, ``<db>-shm``, ``<db>-wal``).

Functional requirements
- A store is disk-persisted (WAL journal) when it has a path, memory-only otherwise.
- Engine errors (`sqlite3.Error`) reach the caller unmodified; the connection busy
  timeout is the only wait on a locked database.
- Queries may run inside a scratch savepoint that is always rolled back, so
  unsaved context changes can be evaluated by the engine without persisting them.

Non-functional requirements
- One long-lived connection per store; every access holds the store lock.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Final

import structlog

from datahero.constants import STORE_FILE_SUFFIXES
from datahero.domain.model import ID_COLUMN, EntityDescription, ManagedObjectModel
from datahero.errors import DataHeroError, StoreLoadError
from datahero.persistence.requests import FetchRequest, Predicate, quote_identifier

if TYPE_CHECKING:
    from datahero.persistence.objects import ObjectKey
    from datahero.persistence.requests import SQLValue

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000

METADATA_TABLE: Final[str] = "_datahero_metadata"
_MEMORY_DATABASE: Final[str] = ":memory:"
_SCRATCH_SAVEPOINT: Final[str] = "datahero_scratch"


class StoreType(StrEnum):
    SQLITE = "sqlite"
    MEMORY = "memory"


class StoreError(DataHeroError):
    pass


class StoreClosedError(StoreError):
    pass


@dataclass(frozen=True, slots=True)
class ChangeSet:
    """Pending changes of one context, as plain attribute values keyed by object."""

    inserted: Mapping[ObjectKey, dict[str, object]] = field(default_factory=dict)
    updated: Mapping[ObjectKey, dict[str, object]] = field(default_factory=dict)
    deleted: frozenset[ObjectKey] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not (self.inserted or self.updated or self.deleted)


@dataclass(frozen=True, slots=True)
class FetchedRow:
    object_id: str
    values: dict[str, object]


def store_file_paths(path: str | Path) -> tuple[Path, ...]:
    """Return the database, shared-memory, and write-ahead-log paths for ``path``."""

    database = Path(path)
    return tuple(database.with_name(database.name + suffix) for suffix in STORE_FILE_SUFFIXES)


def delete_store_files(path: str | Path) -> tuple[tuple[Path, OSError], ...]:
    """Delete the store file triplet for ``path``.

    A missing file counts as deleted. Every file is attempted; failures are
    returned rather than raised.
    """

    failures: list[tuple[Path, OSError]] = []
    for file_path in store_file_paths(path):
        try:
            file_path.unlink(missing_ok=True)
        except OSError as exc:
            failures.append((file_path, exc))
    return tuple(failures)


class PersistentStore:
    """One backing store (disk or memory) for a managed object model."""

    def __init__(
        self,
        model: ManagedObjectModel,
        path: str | Path | None = None,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        logger: structlog.typing.FilteringBoundLogger | None = None,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")

        self._model = model
        self._path = None if path is None else Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._closed = False

    @classmethod
    def open(
        cls,
        model: ManagedObjectModel,
        path: str | Path | None = None,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        logger: structlog.typing.FilteringBoundLogger | None = None,
    ) -> PersistentStore:
        """Construct and load a store; raises ``StoreLoadError`` on failure."""

        store = cls(model, path, busy_timeout_ms=busy_timeout_ms, logger=logger)
        store.load()
        return store

    @property
    def model(self) -> ManagedObjectModel:
        return self._model

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def type(self) -> StoreType:
        return StoreType.MEMORY if self._path is None else StoreType.SQLITE

    @property
    def is_persisted(self) -> bool:
        return self._path is not None

    @property
    def supports_batch_delete(self) -> bool:
        return self.is_persisted

    @property
    def is_closed(self) -> bool:
        return self._closed

    def load(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            try:
                self._conn = self._connect()
                self._create_schema(self._conn)
            except (OSError, sqlite3.Error, StoreError) as exc:
                self._discard_connection()
                location = self._describe_location()
                raise StoreLoadError(
                f"failed to load {self.type.value} store at {location}: {exc}"
                ) from exc

        self._logger.debug(
            "store_loaded",
            store_type=self.type.value,
            path=None if self._path is None else str(self._path),
            model=self._model.name,
        )

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._closed:
                raise StoreClosedError(f"store at {self._describe_location()} is closed")
            if self._conn is None:
                raise StoreError(f"store at {self._describe_location()} is not loaded")
            yield self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise

    @contextmanager
    def scratch(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a savepoint that is rolled back on exit."""

        with self.connection() as conn:
            conn.execute(f"SAVEPOINT {_SCRATCH_SAVEPOINT}")
            try:
                yield conn
            finally:
                conn.execute(f"ROLLBACK TO SAVEPOINT {_SCRATCH_SAVEPOINT}")
                conn.execute(f"RELEASE SAVEPOINT {_SCRATCH_SAVEPOINT}")

    def count(self, conn: sqlite3.Connection, request: FetchRequest) -> int:
        sql, params = request.count_sql()
        row = conn.execute(sql, params).fetchone()
        return 0 if row is None else int(row[0])

    def select(self, conn: sqlite3.Connection, request: FetchRequest) -> list[FetchedRow]:
        sql, params = request.select_sql()
        cursor = conn.execute(sql, params)
        rows: list[sqlite3.Row] = []
        if request.batch_size is None:
            rows = cursor.fetchall()
        else:
            while batch := cursor.fetchmany(request.batch_size):
                rows.extend(batch)
        return [_fetched_row(request.entity, row) for row in rows]

    def apply_changes(self, conn: sqlite3.Connection, changes: ChangeSet) -> None:
        for (entity_name, object_id), values in changes.inserted.items():
            entity = self._require_entity(entity_name)
            columns = [ID_COLUMN, *entity.attributes]
            placeholders = ", ".join("?" for _ in columns)
            conn.execute(
                f"INSERT INTO {quote_identifier(entity_name)} "
                f"({', '.join(quote_identifier(column) for column in columns)}) "
                f"VALUES ({placeholders})",
                (object_id, *_sql_values(entity, values)),
            )

        for (entity_name, object_id), values in changes.updated.items():
            entity = self._require_entity(entity_name)
            if not entity.attributes:
                continue
            assignments = ", ".join(f"{quote_identifier(name)} = ?" for name in entity.attributes)
            conn.execute(
                f"UPDATE {quote_identifier(entity_name)} SET {assignments} "
                f"WHERE {quote_identifier(ID_COLUMN)} = ?",
                (*_sql_values(entity, values), object_id),
            )

        for entity_name, object_id in sorted(changes.deleted):
            self._require_entity(entity_name)
            conn.execute(
                f"DELETE FROM {quote_identifier(entity_name)} "
                f"WHERE {quote_identifier(ID_COLUMN)} = ?",
                (object_id,),
            )

    def save(self, changes: ChangeSet) -> None:
        """Write ``changes`` in a single transaction."""

        if changes.is_empty:
            return
        with self.transaction() as conn:
            self.apply_changes(conn, changes)

    def batch_delete(
        self, entity: EntityDescription, predicate: Predicate | None
    ) -> tuple[str, ...]:
        """Delete every row matching ``predicate`` with one statement; return deleted IDs."""

        if not self.supports_batch_delete:
            raise StoreError(f"batch delete is not supported by {self.type.value} stores")

        where = "" if predicate is None else f" WHERE {predicate.sql}"
        params: tuple[SQLValue, ...] = () if predicate is None else predicate.params
        table = quote_identifier(entity.name)
        with self.transaction() as conn:
            rows = conn.execute(
                f"SELECT {quote_identifier(ID_COLUMN)} FROM {table}{where}",
                params,
            ).fetchall()
            conn.execute(f"DELETE FROM {table}{where}", params)
        return tuple(str(row[0]) for row in rows)

    def metadata(self) -> dict[str, str]:
        with self.connection() as conn:
            rows = conn.execute(f"SELECT key, value FROM {METADATA_TABLE}").fetchall()
        return {str(row[0]): str(row[1]) for row in rows}

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        with self.connection() as conn:
            rows = conn.execute(f"PRAGMA integrity_check({max_errors})").fetchall()
        messages = tuple(str(row[0]) for row in rows)
        if messages == ("ok",):
            return ()
        return messages

    def backup(self, destination: str | Path) -> Path:
        """Create a consistent snapshot using the sqlite backup API."""

        destination_path = Path(destination).expanduser()
        destination_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as source:
            target = sqlite3.connect(destination_path)
            try:
                source.backup(target)
            finally:
                target.close()
        return destination_path

    def close(self) -> None:
        """Detach the store. Raises ``StoreError`` if the engine refuses to close."""

        with self._lock:
            if self._closed:
                return
            conn = self._conn
            self._conn = None
            self._closed = True
            if conn is None:
                return
            try:
                conn.close()
            except sqlite3.Error as exc:
                location = self._describe_location()
                raise StoreError(f"failed to close store at {location}: {exc}") from exc

        self._logger.debug(
            "store_closed",
            store_type=self.type.value,
            path=None if self._path is None else str(self._path),
        )

    def _connect(self) -> sqlite3.Connection:
        if self._path is None:
            database = _MEMORY_DATABASE
        else:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            database = str(self._path)

        conn = sqlite3.connect(
            database,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            self._configure_connection(conn)
        except BaseException:
            conn.close()
            raise
        return conn

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        if self._path is None:
            return
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None:
            raise StoreError("failed to configure journal_mode")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise StoreError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("BEGIN IMMEDIATE")
        try:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {METADATA_TABLE} "
                "(key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            for entity in self._model.entities.values():
                self._create_entity_table(conn, entity)
            conn.executemany(
                f"INSERT INTO {METADATA_TABLE} (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                (
                    ("model_name", self._model.name),
                    ("model_checksum", self._model.checksum),
                    ("loaded_at", _utc_now_iso()),
                ),
            )
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _create_entity_table(self, conn: sqlite3.Connection, entity: EntityDescription) -> None:
        table = quote_identifier(entity.name)
        # Columns stay nullable: required attributes are checked on save so that
        # unsaved objects can be evaluated in a scratch savepoint.
        column_defs = [f"{quote_identifier(ID_COLUMN)} TEXT PRIMARY KEY"]
        column_defs.extend(
            f"{quote_identifier(name)} {attribute.column_type}"
            for name, attribute in entity.attributes.items()
        )
        conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({', '.join(column_defs)})")

        existing = {str(row[1]) for row in conn.execute(f"PRAGMA table_info({table})")}
        for name, attribute in entity.attributes.items():
            if name in existing:
                continue
            conn.execute(
                f"ALTER TABLE {table} ADD COLUMN {quote_identifier(name)} {attribute.column_type}"
            )
            self._logger.info("store_column_added", entity=entity.name, attribute=name)

    def _require_entity(self, entity_name: str) -> EntityDescription:
        entity = self._model.entity(entity_name)
        if entity is None:
            raise StoreError(f"entity {entity_name!r} is not part of model {self._model.name!r}")
        return entity

    def _discard_connection(self) -> None:
        conn = self._conn
        self._conn = None
        if conn is not None:
            conn.close()

    def _describe_location(self) -> str:
        return _MEMORY_DATABASE if self._path is None else str(self._path)

def _sql_values(entity: EntityDescription, values: Mapping[str, object]) -> list[object]:
    return [attribute.to_sql(values.get(name)) for name, attribute in entity.attributes.items()]


def _fetched_row(entity: EntityDescription, row: sqlite3.Row) -> FetchedRow:
    return FetchedRow(
        object_id=str(row[ID_COLUMN]),
        values={
            name: attribute.from_sql(row[name]) for name, attribute in entity.attributes.items()
        },
    )


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "METADATA_TABLE",
    "ChangeSet",
    "FetchedRow",
    "PersistentStore",
    "StoreClosedError",
    "StoreError",
    "StoreType",
    "delete_store_files",
    "store_file_paths",
]
