import threading
from datetime import timezone
from uuid import uuid4

import pytest
from sqlmodel import Session

from services.lending_service.catalog import BookQuery, CatalogStore, derive_availability
from services.lending_service.errors import (
    ConflictError,
    InsufficientStockError,
    MalformedReferenceError,
    NotFoundError,
    ValidationError,
)


@pytest.fixture()
def store(session):
    return CatalogStore(session)


@pytest.mark.parametrize(
    "previous, copies, expected",
    [
        (True, 0, False),
        (False, 0, False),
        (False, 3, True),
        (True, 3, True),
    ],
)
def test_derive_availability(previous, copies, expected):
    assert derive_availability(previous, copies) is expected


def test_create_sets_availability_and_timestamps(store, book_fields):
    book = store.create(book_fields(title="  The Hobbit  "))
    assert book.title == "The Hobbit"
    assert book.available is True
    assert book.created_at is not None and book.updated_at is not None

    empty = store.create(book_fields(isbn="9780000000001", copies=0, available=True))
    assert empty.available is False


@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"title": ""}, "title"),
        ({"genre": "POETRY"}, "genre"),
        ({"copies": -1}, "copies"),
    ],
)
def test_create_rejects_invalid_fields(store, book_fields, overrides, field):
    with pytest.raises(ValidationError) as excinfo:
        store.create(book_fields(**overrides))
    assert field in excinfo.value.detail


def test_create_requires_mandatory_fields(store, book_fields):
    fields = book_fields()
    del fields["author"]
    with pytest.raises(ValidationError):
        store.create(fields)


def test_duplicate_isbn_conflicts_and_keeps_first(store, book_fields):
    first = store.create(book_fields())
    with pytest.raises(ConflictError):
        store.create(book_fields(title="Another"))

    fetched = store.get(first.id)
    assert fetched.title == "The Hobbit"
    assert fetched.copies == 5


def test_get_errors(store):
    with pytest.raises(MalformedReferenceError):
        store.get("not-an-id")
    with pytest.raises(NotFoundError):
        store.get(uuid4().hex)


def test_list_filters_sorts_and_limits(store, book_fields):
    store.create(book_fields(title="Dune", genre="FICTION", isbn="1"))
    store.create(book_fields(title="Cosmos", genre="SCIENCE", isbn="2"))
    store.create(book_fields(title="Beloved", genre="FICTION", isbn="3"))

    fiction = store.list(BookQuery.parse(genre="fiction", sort_by="title"))
    assert [b.title for b in fiction] == ["Beloved", "Dune"]

    descending = store.list(BookQuery.parse(sort_by="title", sort="desc"))
    assert [b.title for b in descending] == ["Dune", "Cosmos", "Beloved"]

    assert len(store.list(BookQuery.parse(genre="POETRY"))) == 3
    assert len(store.list(BookQuery.parse(limit=0))) == 1
    assert len(store.list(BookQuery.parse(limit=1))) == 1


def test_query_defaults():
    query = BookQuery.parse(sort_by="shelf", sort="asc", limit=-4)
    assert query == BookQuery(genre=None, sort_field="created_at", descending=True, limit=1)
    assert BookQuery.parse().limit == 10


def test_update_ratchet(store, book_fields):
    book = store.create(book_fields(copies=2))

    closed = store.update(book.id, {"available": False})
    assert closed.copies == 2
    assert closed.available is False

    reopened = store.update(book.id, {"copies": 4})
    assert reopened.available is True

    emptied = store.update(book.id, {"copies": 0})
    assert emptied.available is False

    forced = store.update(book.id, {"available": True})
    assert forced.available is False


def test_update_validates_result(store, book_fields):
    book = store.create(book_fields())
    store.create(book_fields(isbn="9780000000002"))

    with pytest.raises(ValidationError):
        store.update(book.id, {"copies": -3})
    with pytest.raises(ValidationError):
        store.update(book.id, {"title": None})
    with pytest.raises(ConflictError):
        store.update(book.id, {"isbn": "9780000000002"})
    with pytest.raises(NotFoundError):
        store.update(uuid4().hex, {"title": "Gone"})

    assert store.get(book.id).copies == 5


def test_delete(store, book_fields):
    book = store.create(book_fields())
    assert store.delete(book.id) is None
    with pytest.raises(NotFoundError):
        store.get(book.id)
    with pytest.raises(NotFoundError):
        store.delete(book.id)


def test_decrement_copies(store, book_fields):
    book = store.create(book_fields(copies=3))

    after = store.decrement_copies(book.id, 2)
    assert (after.copies, after.available) == (1, True)

    with pytest.raises(InsufficientStockError):
        store.decrement_copies(book.id, 2)
    assert store.get(book.id).copies == 1

    empty = store.decrement_copies(book.id, 1)
    assert (empty.copies, empty.available) == (0, False)

    with pytest.raises(NotFoundError):
        store.decrement_copies(uuid4().hex, 1)
    with pytest.raises(ValidationError):
        store.decrement_copies(book.id, 0)


def test_concurrent_decrements_cannot_oversell(engine, store, book_fields):
    book_id = store.create(book_fields(copies=5)).id
    barrier = threading.Barrier(2)
    outcomes = []

    def take_three():
        with Session(engine) as session:
            barrier.wait()
            try:
                CatalogStore(session).decrement_copies(book_id, 3)
                outcomes.append("ok")
            except InsufficientStockError:
                outcomes.append("insufficient")

    threads = [threading.Thread(target=take_three) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["insufficient", "ok"]
    store.session.expire_all()
    book = store.get(book_id)
    assert (book.copies, book.available) == (2, True)


def test_timestamps_round_trip_as_utc(store, book_fields):
    book = store.create(book_fields())
    created_at = book.created_at

    store.session.expire_all()
    stored = store.get(book.id)
    assert stored.created_at == created_at
    assert stored.created_at.tzinfo == timezone.utc

    updated = store.decrement_copies(book.id, 1)
    assert updated.updated_at.tzinfo == timezone.utc
    assert updated.updated_at >= created_at
