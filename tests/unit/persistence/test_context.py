"""ExecutionContext dispatch, working-set tracking, and parent/child propagation."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import TYPE_CHECKING

import pytest

from datahero.errors import ContextClosedError, ObjectValidationError
from datahero.persistence.context import ExecutionContext
from datahero.persistence.requests import Predicate, make_fetch_request
from datahero.persistence.store import PersistentStore

from . import book_values, insert_books, library_model

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def store() -> Iterator[PersistentStore]:
    opened = PersistentStore.open(library_model())
    yield opened
    opened.close()


@pytest.fixture
def context(store: PersistentStore) -> Iterator[ExecutionContext]:
    ctx = ExecutionContext(store, name="root")
    yield ctx
    ctx.close()


def _store_count(store: PersistentStore, predicate: str | None = None) -> int:
    entity = store.model.entity("Book")
    assert entity is not None
    with store.connection() as conn:
        return store.count(conn, make_fetch_request(entity, predicate))


def _book_count(context: ExecutionContext, predicate: str | None = None) -> int:
    entity = context.store.model.entity("Book")
    assert entity is not None
    return context.count(make_fetch_request(entity, predicate))


def test_perform_and_wait_returns_results_and_reraises_unchanged(
    context: ExecutionContext,
) -> None:
    assert context.perform_and_wait(lambda a, b: a + b, 2, b=3) == 5

    error = LookupError("engine said no")

    def _fail() -> None:
        raise error

    with pytest.raises(LookupError) as excinfo:
        context.perform_and_wait(_fail)
    assert excinfo.value is error


def test_work_runs_on_a_single_worker_thread_in_fifo_order(context: ExecutionContext) -> None:
    seen: list[int] = []
    threads: set[int] = set()
    gate = threading.Event()

    def _record(index: int) -> None:
        gate.wait(timeout=5)
        threads.add(threading.get_ident())
        seen.append(index)

    futures = [context.perform(_record, index) for index in range(20)]
    gate.set()
    for future in futures:
        future.result(timeout=5)

    assert seen == list(range(20))
    assert len(threads) == 1
    assert threading.get_ident() not in threads


def test_nested_dispatch_from_the_worker_runs_inline(context: ExecutionContext) -> None:
    def _outer() -> tuple[bool, int]:
        inner = context.perform_and_wait(lambda: 41 + 1)
        return context.is_on_queue, inner

    assert context.perform_and_wait(_outer) == (True, 42)
    assert not context.is_on_queue


def test_closed_context_rejects_new_work(store: PersistentStore) -> None:
    ctx = ExecutionContext(store)
    ctx.close()

    assert ctx.is_closed
    with pytest.raises(ContextClosedError, match="closed"):
        ctx.perform_and_wait(lambda: None)


def test_child_must_share_the_parent_store(store: PersistentStore) -> None:
    other = PersistentStore.open(library_model())
    parent = ExecutionContext(store)
    try:
        with pytest.raises(ValueError, match="share its parent's store"):
            ExecutionContext(other, parent=parent)
    finally:
        parent.close()
        other.close()


def test_insert_registers_without_persisting_until_save(
    context: ExecutionContext, store: PersistentStore
) -> None:
    book = context.insert_new_object("Book")
    assert book is not None
    book.title = "Dune"

    assert book.is_inserted
    assert book.pages == 0
    assert book.available is True
    assert book.object_id.startswith("obj-")
    assert context.has_changes
    assert context.registered_objects == (book,)
    assert _store_count(store) == 0

    context.save()

    assert not context.has_changes
    assert not book.is_inserted
    assert _store_count(store) == 1


def test_insert_of_unknown_entity_returns_none(context: ExecutionContext) -> None:
    assert context.insert_new_object("Dragon") is None
    assert not context.has_changes


def test_queries_see_unsaved_changes_without_persisting_them(
    context: ExecutionContext, store: PersistentStore
) -> None:
    store.save(insert_books(("obj-a", book_values("Emma", pages=474))))
    book = context.insert_new_object("Book")
    assert book is not None
    book.title = "Dune"
    book.pages = 412

    assert _book_count(context) == 2
    assert _book_count(context, "pages > 400") == 2
    entity = store.model.entity("Book")
    assert entity is not None
    fetched = context.fetch(make_fetch_request(entity, Predicate.where("title = ?", "Dune")))
    assert fetched == [book]
    assert _store_count(store) == 1


def test_save_validates_required_attributes(
    context: ExecutionContext, store: PersistentStore
) -> None:
    book = context.insert_new_object("Book")
    assert book is not None

    with pytest.raises(ObjectValidationError, match=r"Book\.title is required"):
        context.save()

    assert context.has_changes
    assert _store_count(store) == 0


def test_fetch_reuses_registered_objects_and_saves_updates(
    context: ExecutionContext, store: PersistentStore
) -> None:
    store.save(insert_books(("obj-a", book_values("Dune", pages=412))))
    entity = store.model.entity("Book")
    assert entity is not None
    request = make_fetch_request(entity)

    (first,) = context.fetch(request)
    (again,) = context.fetch(request)
    assert first is again
    assert not context.has_changes

    first.pages = 500
    assert context.has_changes
    context.save()

    assert _store_count(store, "pages = 500") == 1


def test_attribute_writes_from_other_threads_wait_for_queued_work(
    context: ExecutionContext, store: PersistentStore
) -> None:
    store.save(insert_books(("obj-a", book_values("Dune", pages=412))))
    entity = store.model.entity("Book")
    assert entity is not None
    (book,) = context.fetch(make_fetch_request(entity))

    release = threading.Event()
    context.perform(release.wait)
    writer = threading.Thread(target=setattr, args=(book, "pages", 500))
    writer.start()
    writer.join(timeout=0.2)
    assert writer.is_alive()

    release.set()
    writer.join()
    assert context.has_changes
    context.save()
    assert _store_count(store, "pages = 500") == 1


def test_deleting_a_pending_insert_just_forgets_it(context: ExecutionContext) -> None:
    book = context.insert_new_object("Book")
    assert book is not None

    context.delete_object(book)

    assert book.context is None
    assert not context.has_changes
    assert context.registered_objects == ()


def test_deleting_a_saved_object_removes_it_on_save(
    context: ExecutionContext, store: PersistentStore
) -> None:
    store.save(insert_books(("obj-a", book_values("Dune"))))
    entity = store.model.entity("Book")
    assert entity is not None
    (book,) = context.fetch(make_fetch_request(entity))

    context.delete_object(book)
    assert book.is_deleted
    assert _book_count(context) == 0
    assert _store_count(store) == 1

    context.save()

    assert book.context is None
    assert _store_count(store) == 0


def test_delete_rejects_objects_of_another_context(
    context: ExecutionContext, store: PersistentStore
) -> None:
    other = ExecutionContext(store)
    try:
        book = other.insert_new_object("Book")
        assert book is not None
        with pytest.raises(ValueError, match="not registered"):
            context.delete_object(book)
    finally:
        other.close()


def test_child_save_pushes_changes_to_the_parent_only(
    context: ExecutionContext, store: PersistentStore
) -> None:
    child = ExecutionContext(store, parent=context, name="child")
    try:
        book = child.insert_new_object("Book")
        assert book is not None
        book.title = "Dune"

        assert _book_count(child) == 1
        assert _book_count(context) == 0

        child.save()

        assert not child.has_changes
        assert context.has_changes
        assert _book_count(context) == 1
        assert _store_count(store) == 0

        (merged,) = context.registered_objects
        assert merged is not book
        assert merged.object_id == book.object_id
        assert merged.title == "Dune"

        context.save()
        assert _store_count(store) == 1
    finally:
        child.close()


def test_child_queries_include_parent_pending_changes(
    context: ExecutionContext, store: PersistentStore
) -> None:
    parent_book = context.insert_new_object("Book")
    assert parent_book is not None
    parent_book.title = "Dune"

    child = ExecutionContext(store, parent=context)
    try:
        assert _book_count(child) == 1
    finally:
        child.close()


def test_child_delete_propagates_through_parent_to_store(
    context: ExecutionContext, store: PersistentStore
) -> None:
    store.save(insert_books(("obj-a", book_values("Dune"))))
    entity = store.model.entity("Book")
    assert entity is not None
    child = ExecutionContext(store, parent=context)
    try:
        (book,) = child.fetch(make_fetch_request(entity))
        child.delete_object(book)
        child.save()

        assert _book_count(context) == 0
        assert _store_count(store) == 1

        context.save()
        assert _store_count(store) == 0
    finally:
        child.close()


def test_batch_delete_evicts_objects_from_context_and_ancestors(tmp_path: Path) -> None:
    disk_store = PersistentStore.open(library_model(), tmp_path / "library.sqlite")
    parent = ExecutionContext(disk_store, name="root")
    child = ExecutionContext(disk_store, parent=parent, name="child")
    try:
        disk_store.save(
            insert_books(("obj-a", book_values("Dune")), ("obj-b", book_values("Emma")))
        )
        entity = disk_store.model.entity("Book")
        assert entity is not None
        (parent_copy,) = parent.fetch(make_fetch_request(entity, "title = 'Dune'"))
        child.fetch(make_fetch_request(entity))

        removed = child.batch_delete(entity, Predicate.where("title = ?", "Dune"))

        assert removed == 1
        assert parent_copy.context is None
        assert parent.registered_objects == ()
        assert [obj.title for obj in child.registered_objects] == ["Emma"]
        assert _store_count(disk_store) == 1
    finally:
        child.close()
        parent.close()
        disk_store.close()
