"""PersistentStore behavior: schema, pragmas, queries, writes, and the file triplet."""

from __future__ import annotations

import sqlite3
from typing import TYPE_CHECKING, Any

import pytest

from datahero.domain.model import parse_model
from datahero.errors import StoreLoadError
from datahero.persistence.requests import Predicate, SortDescriptor, make_fetch_request
from datahero.persistence.store import (
    METADATA_TABLE,
    ChangeSet,
    PersistentStore,
    StoreClosedError,
    StoreError,
    StoreType,
    delete_store_files,
    store_file_paths,
)

from . import book_values, fixed_now, insert_books, library_model

if TYPE_CHECKING:
    from pathlib import Path

    from datahero.persistence.requests import FetchRequest


def _book_request(
    store: PersistentStore, predicate: Predicate | str | None = None, **kwargs: Any
) -> FetchRequest:
    entity = store.model.entity("Book")
    assert entity is not None
    return make_fetch_request(entity, predicate, **kwargs)


def test_disk_store_uses_wal_and_creates_the_file_triplet(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "library.sqlite"
    store = PersistentStore.open(library_model(), db_path)
    try:
        assert store.type is StoreType.SQLITE
        assert store.is_persisted
        assert store.supports_batch_delete

        with store.connection() as conn:
            journal_mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
            busy_timeout = conn.execute("PRAGMA busy_timeout").fetchone()[0]
        assert str(journal_mode).lower() == "wal"
        assert int(busy_timeout) == 5_000

        assert all(path.exists() for path in store_file_paths(db_path))
    finally:
        store.close()


def test_memory_store_has_no_path_and_no_batch_delete() -> None:
    store = PersistentStore.open(library_model())
    try:
        assert store.type is StoreType.MEMORY
        assert store.path is None
        assert not store.is_persisted
        assert not store.supports_batch_delete

        entity = store.model.entity("Book")
        assert entity is not None
        with pytest.raises(StoreError, match="not supported"):
            store.batch_delete(entity, None)
    finally:
        store.close()


def test_schema_creates_one_table_per_entity_and_records_metadata(tmp_path: Path) -> None:
    model = library_model()
    store = PersistentStore.open(model, tmp_path / "library.sqlite")
    try:
        with store.connection() as conn:
            tables = {
                str(row[0])
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
            book_columns = [str(row[1]) for row in conn.execute('PRAGMA table_info("Book")')]

        assert {"Book", "Author", METADATA_TABLE} <= tables
        assert book_columns == [
            "_id", "title", "pages", "rating", "available", "published", "cover"
        ]

        metadata = store.metadata()
        assert metadata["model_name"] == "Library"
        assert metadata["model_checksum"] == model.checksum
        assert metadata["loaded_at"].endswith("Z")
    finally:
        store.close()


def test_reopening_with_a_grown_model_adds_columns(tmp_path: Path) -> None:
    db_path = tmp_path / "notes.sqlite"
    first = parse_model({"name": "Notes", "entities": {"Note": {"attributes": {"body": "string"}}}})
    store = PersistentStore.open(first, db_path)
    store.save(ChangeSet(inserted={("Note", "obj-1"): {"body": "kept"}}))
    store.close()

    grown = parse_model(
        {
            "name": "Notes",
            "entities": {
                "Note": {
                    "attributes": {
                        "body": "string",
                        "pinned": {"type": "boolean", "optional": True},
                    }
                }
            },
        }
    )
    reopened = PersistentStore.open(grown, db_path)
    try:
        entity = grown.entity("Note")
        assert entity is not None
        with reopened.connection() as conn:
            rows = reopened.select(conn, make_fetch_request(entity))
        assert [(row.object_id, row.values) for row in rows] == [
            ("obj-1", {"body": "kept", "pinned": None})
        ]
    finally:
        reopened.close()


def test_save_count_and_select_with_sort_limit_and_batches() -> None:
    store = PersistentStore.open(library_model())
    try:
        store.save(
            insert_books(
                ("obj-a", book_values("Dune", pages=412)),
                ("obj-b", book_values("Emma", pages=474)),
                ("obj-c", book_values("Ubik", pages=202)),
            )
        )

        with store.connection() as conn:
            assert store.count(conn, _book_request(store)) == 3
            assert store.count(conn, _book_request(store, Predicate.where("pages > ?", 300))) == 2
            assert store.count(conn, _book_request(store, "title = 'Nope'")) == 0

            rows = store.select(
                conn,
                _book_request(
                    store,
                    sort_descriptors=[SortDescriptor("pages", ascending=False)],
                    limit=2,
                    batch_size=1,
                ),
            )

        assert [row.values["title"] for row in rows] == ["Emma", "Dune"]
        assert rows[0].object_id == "obj-b"
    finally:
        store.close()


def test_attribute_values_round_trip_through_sql_types() -> None:
    store = PersistentStore.open(library_model())
    published = fixed_now(5)
    try:
        store.save(
            insert_books(
                (
                    "obj-a",
                    book_values(
                        "Dune",
                        rating=4.5,
                        available=False,
                        published=published,
                        cover=b"\x89PNG",
                    ),
                )
            )
        )
        with store.connection() as conn:
            (row,) = store.select(conn, _book_request(store))
            raw = conn.execute('SELECT available, published FROM "Book"').fetchone()

        assert row.values["available"] is False
        assert row.values["published"] == published
        assert row.values["rating"] == pytest.approx(4.5)
        assert row.values["cover"] == b"\x89PNG"
        assert raw[0] == 0
        assert raw[1] == published.isoformat()
    finally:
        store.close()


def test_apply_changes_updates_and_deletes() -> None:
    store = PersistentStore.open(library_model())
    try:
        store.save(
            insert_books(("obj-a", book_values("Dune")), ("obj-b", book_values("Emma")))
        )
        store.save(
            ChangeSet(
                updated={("Book", "obj-a"): book_values("Dune Messiah", pages=256)},
                deleted=frozenset({("Book", "obj-b")}),
            )
        )
        with store.connection() as conn:
            rows = store.select(conn, _book_request(store))
        assert [(row.object_id, row.values["title"], row.values["pages"]) for row in rows] == [
            ("obj-a", "Dune Messiah", 256)
        ]
    finally:
        store.close()


def test_save_is_atomic_when_a_write_fails() -> None:
    store = PersistentStore.open(library_model())
    try:
        store.save(insert_books(("obj-a", book_values("Dune"))))

        with pytest.raises(sqlite3.IntegrityError):
            store.save(
                insert_books(("obj-b", book_values("Emma")), ("obj-a", book_values("Again")))
            )

        with store.connection() as conn:
            assert store.count(conn, _book_request(store)) == 1
            assert not conn.in_transaction
    finally:
        store.close()


def test_scratch_savepoint_is_always_rolled_back() -> None:
    store = PersistentStore.open(library_model())
    try:
        with store.scratch() as conn:
            store.apply_changes(conn, insert_books(("obj-a", book_values("Dune"))))
            assert store.count(conn, _book_request(store)) == 1

        with pytest.raises(RuntimeError, match="boom"):
            with store.scratch() as conn:
                store.apply_changes(conn, insert_books(("obj-b", book_values("Emma"))))
                raise RuntimeError("boom")

        with store.connection() as conn:
            assert store.count(conn, _book_request(store)) == 0
            assert not conn.in_transaction
    finally:
        store.close()


def test_batch_delete_removes_matches_with_one_statement_and_returns_ids(tmp_path: Path) -> None:
    store = PersistentStore.open(library_model(), tmp_path / "library.sqlite")
    try:
        store.save(
            insert_books(
                ("obj-a", book_values("Dune", pages=412)),
                ("obj-b", book_values("Emma", pages=474)),
                ("obj-c", book_values("Ubik", pages=202)),
            )
        )
        entity = store.model.entity("Book")
        assert entity is not None

        deleted = store.batch_delete(entity, Predicate.where("pages > ?", 300))
        assert sorted(deleted) == ["obj-a", "obj-b"]

        with store.connection() as conn:
            assert store.count(conn, _book_request(store)) == 1
    finally:
        store.close()


def test_closed_store_rejects_access_and_close_is_idempotent() -> None:
    store = PersistentStore.open(library_model())
    store.close()
    store.close()

    assert store.is_closed
    with pytest.raises(StoreClosedError, match="closed"):
        with store.connection():
            pass


def test_load_failure_is_reported_as_store_load_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(StoreLoadError, match="failed to load sqlite store"):
        PersistentStore.open(library_model(), blocker / "library.sqlite")


def test_opening_a_non_database_file_is_a_load_error(tmp_path: Path) -> None:
    bogus = tmp_path / "bogus.sqlite"
    bogus.write_bytes(b"this is definitely not a sqlite database" * 64)

    with pytest.raises(StoreLoadError):
        PersistentStore.open(library_model(), bogus)


def test_engine_errors_reach_the_caller_unwrapped() -> None:
    store = PersistentStore.open(library_model())
    try:
        with store.connection() as conn, pytest.raises(sqlite3.OperationalError) as excinfo:
            store.count(conn, _book_request(store, "no_such_column = 1"))
    finally:
        store.close()

    assert not isinstance(excinfo.value, StoreError)
    assert "no_such_column" in str(excinfo.value)


def test_locked_database_fails_after_busy_timeout_without_retry(tmp_path: Path) -> None:
    db_path = tmp_path / "library.sqlite"
    store = PersistentStore.open(library_model(), db_path, busy_timeout_ms=0)
    blocker = sqlite3.connect(db_path, timeout=0, isolation_level=None)
    try:
        blocker.execute("BEGIN EXCLUSIVE")
        with pytest.raises(sqlite3.OperationalError, match="locked"):
            store.save(insert_books(("obj-a", book_values("Dune"))))
        blocker.execute("ROLLBACK")

        store.save(insert_books(("obj-a", book_values("Dune"))))
        with store.connection() as conn:
            assert store.count(conn, _book_request(store)) == 1
    finally:
        blocker.close()
        store.close()


def test_integrity_check_and_backup(tmp_path: Path) -> None:
    store = PersistentStore.open(library_model(), tmp_path / "library.sqlite")
    try:
        store.save(insert_books(("obj-a", book_values("Dune"))))
        assert store.integrity_check() == ()
        with pytest.raises(ValueError, match="max_errors"):
            store.integrity_check(max_errors=0)

        snapshot = store.backup(tmp_path / "backups" / "library-copy.sqlite")
    finally:
        store.close()

    conn = sqlite3.connect(snapshot)
    try:
        assert conn.execute('SELECT title FROM "Book"').fetchall() == [("Dune",)]
    finally:
        conn.close()


def test_store_file_paths_append_fixed_suffixes(tmp_path: Path) -> None:
    db_path = tmp_path / "app.sqlite"
    assert store_file_paths(db_path) == (
        db_path,
        tmp_path / "app.sqlite-shm",
        tmp_path / "app.sqlite-wal",
    )


def test_delete_store_files_treats_missing_files_as_deleted(tmp_path: Path) -> None:
    db_path = tmp_path / "app.sqlite"
    db_path.write_bytes(b"")
    (tmp_path / "app.sqlite-wal").write_bytes(b"")

    assert delete_store_files(db_path) == ()
    assert not any(path.exists() for path in store_file_paths(db_path))
    assert delete_store_files(db_path) == ()


def test_delete_store_files_attempts_every_file_and_reports_failures(tmp_path: Path) -> None:
    db_path = tmp_path / "app.sqlite"
    db_path.write_bytes(b"")
    # A directory cannot be unlinked, which stands in for a permission failure.
    (tmp_path / "app.sqlite-shm").mkdir()
    (tmp_path / "app.sqlite-wal").write_bytes(b"")

    failures = delete_store_files(db_path)

    assert [path for path, _ in failures] == [tmp_path / "app.sqlite-shm"]
    assert isinstance(failures[0][1], OSError)
    assert not db_path.exists()
    assert not (tmp_path / "app.sqlite-wal").exists()


def test_constructor_rejects_negative_tuning() -> None:
    with pytest.raises(ValueError, match="busy_timeout_ms"):
        PersistentStore(library_model(), busy_timeout_ms=-1)
