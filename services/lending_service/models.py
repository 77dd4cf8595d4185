from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import Field as PydanticField
from pydantic.alias_generators import to_camel
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC copy of ``value``; naive input is taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware column that always hands back UTC.

    SQLite keeps no offset, so values read from it are re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return as_utc(value)


def new_id() -> str:
    return uuid4().hex


class Genre(str, Enum):
    FICTION = "FICTION"
    NON_FICTION = "NON_FICTION"
    SCIENCE = "SCIENCE"
    HISTORY = "HISTORY"
    BIOGRAPHY = "BIOGRAPHY"
    FANTASY = "FANTASY"


class Book(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    title: str
    author: str
    genre: Genre = Field(index=True)
    isbn: str = Field(index=True, unique=True)
    description: Optional[str] = None
    copies: int = Field(default=0)
    available: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime, index=True)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Borrow(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    # No foreign key: a borrow outlives the book it references.
    book_id: str = Field(index=True)
    quantity: int
    due_date: datetime = Field(sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class BookFields(BaseModel):
    """Complete, validated state of a catalog entry."""

    title: str = PydanticField(min_length=1)
    author: str = PydanticField(min_length=1)
    genre: Genre
    isbn: str = PydanticField(min_length=1)
    description: Optional[str] = None
    copies: int = PydanticField(ge=0)

    @field_validator("title", "author", "isbn", "description", mode="before")
    @classmethod
    def strip_text(cls, value):
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("genre", mode="before")
    @classmethod
    def upper_genre(cls, value):
        if isinstance(value, str):
            return value.upper()
        return value


class BookCreate(BaseModel):
    title: str
    author: str
    genre: str
    isbn: str
    description: Optional[str] = None
    copies: int


class BookUpdate(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    genre: Optional[str] = None
    isbn: Optional[str] = None
    description: Optional[str] = None
    copies: Optional[int] = None
    available: Optional[bool] = None


class BorrowCreate(BaseModel):
    book: str
    quantity: int
    dueDate: datetime


class ReadModel(BaseModel):
    """Response shape: snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class BookRead(ReadModel):
    id: str
    title: str
    author: str
    genre: Genre
    isbn: str
    description: Optional[str]
    copies: int
    available: bool
    created_at: datetime
    updated_at: datetime


class BorrowRead(ReadModel):
    id: str
    book_id: str = PydanticField(serialization_alias="book")
    quantity: int
    due_date: datetime
    created_at: datetime
    updated_at: datetime


class SummaryBook(ReadModel):
    title: str
    isbn: str


class BorrowSummary(ReadModel):
    book: SummaryBook
    total_quantity: int
