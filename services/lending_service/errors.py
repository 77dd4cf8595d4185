from __future__ import annotations

from typing import Any


class LibraryError(Exception):
    """Base class for failures the lending core reports to its caller."""

    status_code = 500
    message = "Something went wrong on the server."

    def __init__(self, detail: Any = None, message: str | None = None):
        super().__init__(message or self.message)
        if message is not None:
            self.message = message
        self.detail = detail if detail is not None else self.message
        self.stage = None


class ValidationError(LibraryError):
    status_code = 400
    message = "Validation failed"


class MalformedReferenceError(LibraryError):
    status_code = 400
    message = "Invalid ID provided."


class NotFoundError(LibraryError):
    status_code = 404
    message = "Book not found"


class ConflictError(LibraryError):
    status_code = 409
    message = "Duplicate field value entered."


class InsufficientStockError(LibraryError):
    status_code = 400
    message = "Not enough copies available"
