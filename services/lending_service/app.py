import logging
import os
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session, SQLModel, create_engine
from starlette.exceptions import HTTPException as StarletteHTTPException

from services.lending_service.catalog import BookQuery, CatalogStore
from services.lending_service.errors import LibraryError
from services.lending_service.ledger import LendingLedger
from services.lending_service.models import Book, BookCreate, BookRead, BookUpdate, BorrowCreate, BorrowRead
from services.lending_service.responses import error_response, success_response
from services.shared.messaging import publish_event


DATABASE_URL = os.getenv("LENDING_DB_URL", "sqlite:///./services/lending_service/lending.db")
AMQP_URL = os.getenv("AMQP_URL")
LOG_LEVEL = os.getenv("LENDING_LOG_LEVEL", "INFO")
DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", "10"))

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

engine = create_engine(
    DATABASE_URL, connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {}
)
app = FastAPI(title="Lending Service", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def create_db():
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session


@app.on_event("startup")
def startup_event():
    create_db()


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content=error_response(exc.message, exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = {".".join(str(part) for part in err["loc"][1:]): err["msg"] for err in exc.errors()}
    return JSONResponse(status_code=400, content=error_response("Validation failed", errors))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        detail = {"path": request.url.path, "method": request.method}
        return JSONResponse(status_code=404, content=error_response("API Not Found", detail))
    return JSONResponse(status_code=exc.status_code, content=error_response(str(exc.detail), exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=error_response("Something went wrong on the server.", str(exc) or "An unexpected error occurred."),
    )


@app.get("/health")
def health():
    return {"status": "ok", "service": "lending"}


@app.post("/api/books", status_code=status.HTTP_201_CREATED)
def create_book(payload: BookCreate, session: Session = Depends(get_session)):
    book = CatalogStore(session).create(payload.model_dump(exclude_unset=True))
    return success_response("Book created successfully", BookRead.model_validate(book))


@app.get("/api/books")
def list_books(
    filter: Optional[str] = Query(default=None, description="Genre to filter by"),
    sortBy: Optional[str] = Query(default=None, description="Field to sort by"),
    sort: Optional[str] = Query(default=None, description="asc or desc"),
    limit: Optional[int] = Query(default=None),
    session: Session = Depends(get_session),
):
    query = BookQuery.parse(filter, sortBy, sort, DEFAULT_PAGE_LIMIT if limit is None else limit)
    books = CatalogStore(session).list(query)
    return success_response("Books retrieved successfully", [BookRead.model_validate(b) for b in books])


@app.get("/api/books/{book_id}")
def read_book(book_id: str, session: Session = Depends(get_session)):
    book = CatalogStore(session).get(book_id)
    return success_response("Book retrieved successfully", BookRead.model_validate(book))


@app.put("/api/books/{book_id}")
def update_book(book_id: str, payload: BookUpdate, session: Session = Depends(get_session)):
    book = CatalogStore(session).update(book_id, payload.model_dump(exclude_unset=True))
    return success_response("Book updated successfully", BookRead.model_validate(book))


@app.delete("/api/books/{book_id}")
def delete_book(book_id: str, session: Session = Depends(get_session)):
    CatalogStore(session).delete(book_id)
    return success_response("Book deleted successfully", None)


@app.post("/api/borrow", status_code=status.HTTP_201_CREATED)
async def borrow_book(payload: BorrowCreate, session: Session = Depends(get_session)):
    # Blocking store calls; a contended decrement waits here on the row lock.
    borrow = await run_in_threadpool(
        LendingLedger(session).record_loan, payload.book, payload.quantity, payload.dueDate
    )
    book = await run_in_threadpool(session.get, Book, borrow.book_id)

    await publish_event(
        AMQP_URL,
        "borrow.created",
        {
            "borrow_id": borrow.id,
            "book_id": borrow.book_id,
            "book_title": book.title if book else None,
            "quantity": borrow.quantity,
            "due_date": borrow.due_date.isoformat(),
        },
    )
    return success_response("Book borrowed successfully", BorrowRead.model_validate(borrow))


@app.get("/api/borrow")
def borrowed_books_summary(session: Session = Depends(get_session)):
    summary = LendingLedger(session).summarize()
    return success_response("Borrowed books summary retrieved successfully", summary)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
