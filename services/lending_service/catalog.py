import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import pydantic
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from services.lending_service.errors import (
    ConflictError,
    InsufficientStockError,
    MalformedReferenceError,
    NotFoundError,
    ValidationError,
)
from services.lending_service.models import Book, BookFields, BookUpdate, Genre, utcnow


logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10

# Public sort keys mapped to Book attributes.
SORT_FIELDS = {
    "title": "title",
    "author": "author",
    "genre": "genre",
    "isbn": "isbn",
    "copies": "copies",
    "available": "available",
    "createdAt": "created_at",
    "created_at": "created_at",
    "updatedAt": "updated_at",
    "updated_at": "updated_at",
}


def derive_availability(previous_available: bool, new_copies: int) -> bool:
    """Availability ratchet.

    Zero copies always clears the flag and a positive count re-opens a closed
    flag. An open flag with a positive count is left as stored.
    """
    if new_copies == 0:
        return False
    if new_copies > 0 and previous_available is False:
        return True
    return previous_available


def parse_reference(value: Any) -> str:
    """Normalize a book or borrow id, rejecting anything outside the id space."""
    if not isinstance(value, str):
        raise MalformedReferenceError(f"Invalid format for id: {value!r}")
    try:
        return UUID(hex=value).hex
    except ValueError as exc:
        raise MalformedReferenceError(f"Invalid format for id: {value}") from exc


def validation_detail(exc: pydantic.ValidationError) -> dict[str, str]:
    return {".".join(str(part) for part in err["loc"]): err["msg"] for err in exc.errors()}


@dataclass(frozen=True)
class BookQuery:
    genre: Optional[Genre] = None
    sort_field: str = "created_at"
    descending: bool = True
    limit: int = DEFAULT_LIMIT

    @classmethod
    def parse(
        cls,
        genre: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> "BookQuery":
        """Build a query from loosely typed request values.

        Unknown genres and sort fields are ignored rather than rejected, and
        a limit below one is raised to one.
        """
        parsed_genre = None
        if genre:
            try:
                parsed_genre = Genre(genre.upper())
            except ValueError:
                parsed_genre = None

        if sort_by in SORT_FIELDS:
            sort_field = SORT_FIELDS[sort_by]
            descending = sort in ("desc", "-1")
        else:
            sort_field, descending = "created_at", True

        actual_limit = DEFAULT_LIMIT if limit is None else max(1, limit)
        return cls(genre=parsed_genre, sort_field=sort_field, descending=descending, limit=actual_limit)


class CatalogStore:
    """Book records plus the copies/availability invariant."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, fields: dict[str, Any]) -> Book:
        try:
            validated = BookFields.model_validate(fields)
        except pydantic.ValidationError as exc:
            raise ValidationError(validation_detail(exc)) from exc

        self._ensure_isbn_free(validated.isbn)
        book = Book(
            **validated.model_dump(),
            available=derive_availability(True, validated.copies),
        )
        self._commit(book)
        logger.info("Book created id=%s isbn=%s copies=%s", book.id, book.isbn, book.copies)
        return book

    def get(self, book_id: Any) -> Book:
        book = self.session.get(Book, parse_reference(book_id))
        if not book:
            raise NotFoundError("Book with the given ID does not exist.")
        return book

    def list(self, query: BookQuery = BookQuery()) -> list[Book]:
        statement = select(Book)
        if query.genre is not None:
            statement = statement.where(Book.genre == query.genre)
        column = getattr(Book, query.sort_field)
        statement = statement.order_by(column.desc() if query.descending else column.asc())
        return list(self.session.exec(statement.limit(query.limit)).all())

    def update(self, book_id: Any, changes: dict[str, Any]) -> Book:
        book = self.get(book_id)
        try:
            patch = BookUpdate.model_validate(changes).model_dump(exclude_unset=True)
        except pydantic.ValidationError as exc:
            raise ValidationError(validation_detail(exc)) from exc

        available = patch.pop("available", book.available)
        current = book.model_dump(include=set(BookFields.model_fields))
        try:
            validated = BookFields.model_validate({**current, **patch})
        except pydantic.ValidationError as exc:
            raise ValidationError(validation_detail(exc)) from exc

        if validated.isbn != book.isbn:
            self._ensure_isbn_free(validated.isbn)

        for key, value in validated.model_dump().items():
            setattr(book, key, value)
        if available is None:
            available = book.available
        # A zero count always closes the flag, even when only the flag changed.
        if "copies" in patch or book.copies == 0:
            available = derive_availability(available, book.copies)
        book.available = available
        book.updated_at = utcnow()
        self._commit(book)
        return book

    def delete(self, book_id: Any) -> None:
        book = self.get(book_id)
        self.session.delete(book)
        self.session.commit()
        logger.info("Book deleted id=%s", book.id)

    def decrement_copies(self, book_id: Any, quantity: int) -> Book:
        """Take ``quantity`` copies off a book in one conditional update.

        The ``copies >= quantity`` guard lives in the UPDATE itself, so two
        racing requests cannot both pass it.
        """
        book_id = parse_reference(book_id)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError({"quantity": "Quantity must be a positive number"})

        table = Book.__table__
        statement = (
            update(table)
            .where(table.c.id == book_id, table.c.copies >= quantity)
            .values(copies=table.c.copies - quantity, updated_at=utcnow())
        )
        result = self.session.connection().execute(statement)
        if result.rowcount == 0:
            self.session.rollback()
            book = self.get(book_id)
            raise InsufficientStockError(
                f'Only {book.copies} copies of "{book.title}" are available.'
            )

        book = self.session.get(Book, book_id, populate_existing=True)
        book.available = derive_availability(book.available, book.copies)
        self.session.add(book)
        self.session.commit()
        self.session.refresh(book)
        return book

    def _ensure_isbn_free(self, isbn: str) -> None:
        if self.session.exec(select(Book).where(Book.isbn == isbn)).first():
            raise ConflictError(f"A book with this isbn already exists: {isbn}")

    def _commit(self, book: Book) -> None:
        self.session.add(book)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(f"A book with this isbn already exists: {book.isbn}") from exc
        self.session.refresh(book)
