import logging
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import func
from sqlmodel import Session, select

from services.lending_service.catalog import CatalogStore, parse_reference
from services.lending_service.errors import (
    InsufficientStockError,
    LibraryError,
    MalformedReferenceError,
    NotFoundError,
    ValidationError,
)
from services.lending_service.models import (
    Book,
    Borrow,
    BorrowSummary,
    SummaryBook,
    as_utc,
    utcnow,
)


logger = logging.getLogger(__name__)


class LendingStage(str, Enum):
    VALIDATING = "validating"
    STOCK_CHECKING = "stock_checking"
    DECREMENTING = "decrementing"
    RECORDING = "recording"
    COMMITTED = "committed"


class LendingLedger:
    """Borrow records and the lending transaction that creates them."""

    def __init__(self, session: Session, catalog: CatalogStore | None = None):
        self.session = session
        self.catalog = catalog or CatalogStore(session)

    def record_loan(self, book_id: Any, quantity: Any, due_date: datetime) -> Borrow:
        """Lend ``quantity`` copies of a book until ``due_date``.

        The copy decrement and the borrow insert are committed separately. If
        the insert fails the copies stay taken and no borrow exists; that case
        is logged and the error re-raised.
        """
        stage = LendingStage.VALIDATING
        try:
            book = self._load_book(book_id)
            book_id = book.id
            due_date = self._validate_terms(quantity, due_date)

            stage = LendingStage.STOCK_CHECKING
            if book.copies < quantity:
                raise InsufficientStockError(
                    f'Only {book.copies} copies of "{book.title}" are available.'
                )

            stage = LendingStage.DECREMENTING
            self.catalog.decrement_copies(book_id, quantity)
        except LibraryError as exc:
            exc.stage = stage
            logger.warning("Loan rejected book=%s stage=%s: %s", book_id, stage.value, exc.detail)
            raise

        stage = LendingStage.RECORDING
        borrow = Borrow(book_id=book_id, quantity=quantity, due_date=due_date)
        try:
            self.session.add(borrow)
            self.session.commit()
        except Exception:
            self.session.rollback()
            logger.error(
                "Copies decremented without a borrow record book=%s quantity=%s",
                book_id,
                quantity,
            )
            raise
        self.session.refresh(borrow)

        stage = LendingStage.COMMITTED
        logger.info("Loan %s book=%s quantity=%s id=%s", stage.value, book_id, quantity, borrow.id)
        return borrow

    def summarize(self) -> list[BorrowSummary]:
        total = func.sum(Borrow.quantity).label("total_quantity")
        statement = (
            select(Book.title, Book.isbn, total)
            .select_from(Borrow)
            .join(Book, Book.id == Borrow.book_id)
            .group_by(Borrow.book_id, Book.title, Book.isbn)
        )
        rows = self.session.exec(statement).all()
        return [
            BorrowSummary(book=SummaryBook(title=title, isbn=isbn), total_quantity=quantity)
            for title, isbn, quantity in rows
        ]

    def _load_book(self, book_id: Any) -> Book:
        try:
            return self.catalog.get(parse_reference(book_id))
        except MalformedReferenceError as exc:
            raise MalformedReferenceError(
                "The provided book ID is not a valid book reference.", message="Invalid Book ID"
            ) from exc
        except NotFoundError as exc:
            raise NotFoundError("Book with the provided ID does not exist.") from exc

    @staticmethod
    def _validate_terms(quantity: Any, due_date: Any) -> datetime:
        errors = {}
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            errors["quantity"] = "Quantity must be a positive number"
        if not isinstance(due_date, datetime):
            errors["dueDate"] = "Due date is mandatory"
        elif as_utc(due_date) <= utcnow():
            errors["dueDate"] = "Due date must be in the future"
        if errors:
            raise ValidationError(errors)
        return as_utc(due_date)
