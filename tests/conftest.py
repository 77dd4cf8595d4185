from datetime import timedelta
from pathlib import Path

import pytest
from sqlmodel import Session, SQLModel, create_engine

from services.lending_service.models import utcnow


@pytest.fixture()
def engine(tmp_path: Path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'lending.db'}", connect_args={"check_same_thread": False}
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture()
def book_fields():
    def build(**overrides):
        fields = {
            "title": "The Hobbit",
            "author": "J. R. R. Tolkien",
            "genre": "FANTASY",
            "isbn": "9780547928227",
            "description": "There and back again.",
            "copies": 5,
        }
        fields.update(overrides)
        return fields

    return build


@pytest.fixture()
def next_week():
    return utcnow() + timedelta(days=7)
