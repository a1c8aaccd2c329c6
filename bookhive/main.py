import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from bookhive import config
from bookhive.borrowing import borrow_book, get_borrow, list_borrows
from bookhive.crud import (
    create_book,
    delete_book,
    get_book,
    list_available_books,
    list_books,
    list_books_by_genre,
    refresh_availability,
    update_book,
)
from bookhive.exceptions import add_exception_handlers
from bookhive.reporting import (
    book_borrow_report,
    borrow_summary,
    overdue_books,
    statistics,
)
from bookhive.schemas import (
    ApiResponse,
    BookCreate,
    BookFilterParams,
    BookSortField,
    BookUpdate,
    BorrowCreate,
    BorrowFilterParams,
    BorrowSortField,
    Pagination,
    SortOrder,
)
from bookhive.storage import close_db_connection, ensure_indexes, get_database, init_db

# Set up logging
logging.basicConfig(level=config.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        logger.info("Initializing database connection")
        await init_db()
        app.state.db = get_database()
        await ensure_indexes(app.state.db)
    yield
    if not app.state.testing:
        logger.info("Closing database connection")
        await close_db_connection()


app = FastAPI(
    title="BookHive API",
    lifespan=lifespan,
    description="Library catalog and borrowing backend",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)

add_exception_handlers(app)


def get_db():
    return app.state.db


def page_params(
    page: int = Query(1, ge=1),
    limit: int = Query(config.DEFAULT_PAGE_LIMIT, ge=1, le=config.MAX_PAGE_LIMIT),
):
    return page, limit


API = "/api"
RESPONSE = dict(response_model=ApiResponse, response_model_exclude_none=True)


@app.get("/", response_class=PlainTextResponse)
async def health():
    return "BookHive API is running!"


# Books


@app.get(f"{API}/books", **RESPONSE)
async def read_books(
    genre: Optional[str] = None,
    available: Optional[bool] = None,
    author: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: Optional[BookSortField] = None,
    sort_order: SortOrder = "asc",
    paging: tuple = Depends(page_params),
    db=Depends(get_db),
):
    page, limit = paging
    filters = BookFilterParams(
        genre=genre,
        available=available,
        author=author,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    books, total = await list_books(db, filters, page, limit)
    return ApiResponse(data=books, pagination=Pagination.build(page, limit, total))


@app.get(f"{API}/books/available", **RESPONSE)
async def read_available_books(db=Depends(get_db)):
    books = await list_available_books(db)
    return ApiResponse(data=books, count=len(books))


@app.get(f"{API}/books/genre/{{genre}}", **RESPONSE)
async def read_books_by_genre(genre: str, db=Depends(get_db)):
    books = await list_books_by_genre(db, genre)
    return ApiResponse(data=books, count=len(books), genre=genre)


@app.get(f"{API}/books/{{book_id}}", **RESPONSE)
async def read_book(book_id: str, db=Depends(get_db)):
    book = await get_book(db, book_id)
    return ApiResponse(data=book)


@app.post(f"{API}/books", status_code=status.HTTP_201_CREATED, **RESPONSE)
async def add_book(book: BookCreate, db=Depends(get_db)):
    logger.info(f"Received request to add book: {book.title}")
    new_book = await create_book(db, book)
    return ApiResponse(message="Book created successfully", data=new_book)


@app.api_route(f"{API}/books/{{book_id}}", methods=["PATCH", "PUT"], **RESPONSE)
async def modify_book(book_id: str, book_update: BookUpdate, db=Depends(get_db)):
    updated_book = await update_book(db, book_id, book_update)
    return ApiResponse(message="Book updated successfully", data=updated_book)


@app.api_route(
    f"{API}/books/{{book_id}}/availability", methods=["PATCH", "PUT"], **RESPONSE
)
async def modify_book_availability(book_id: str, db=Depends(get_db)):
    availability = await refresh_availability(db, book_id)
    return ApiResponse(message="Book availability updated", data=availability)


@app.delete(f"{API}/books/{{book_id}}", **RESPONSE)
async def remove_book(book_id: str, db=Depends(get_db)):
    await delete_book(db, book_id)
    return ApiResponse(
        message="Book and associated borrow records deleted successfully"
    )


# Borrows


@app.get(f"{API}/borrows", **RESPONSE)
async def read_borrows(
    book: Optional[str] = None,
    overdue: bool = False,
    sort_by: Optional[BorrowSortField] = None,
    sort_order: SortOrder = "asc",
    paging: tuple = Depends(page_params),
    db=Depends(get_db),
):
    page, limit = paging
    filters = BorrowFilterParams(
        book=book, overdue=overdue, sort_by=sort_by, sort_order=sort_order
    )
    borrows, total = await list_borrows(db, filters, page, limit)
    return ApiResponse(data=borrows, pagination=Pagination.build(page, limit, total))


@app.post(f"{API}/borrows", status_code=status.HTTP_201_CREATED, **RESPONSE)
async def add_borrow(borrow: BorrowCreate, db=Depends(get_db)):
    borrow_entry = await borrow_book(db, borrow)
    return ApiResponse(message="Book borrowed successfully", data=borrow_entry)


@app.get(f"{API}/borrows/summary", **RESPONSE)
async def read_borrow_summary(db=Depends(get_db)):
    summary = await borrow_summary(db)
    return ApiResponse(data=summary, count=len(summary))


@app.get(f"{API}/borrows/overdue", **RESPONSE)
async def read_overdue_books(db=Depends(get_db)):
    overdue = await overdue_books(db)
    return ApiResponse(data=overdue, count=len(overdue))


@app.get(f"{API}/borrows/statistics", **RESPONSE)
async def read_borrow_statistics(db=Depends(get_db)):
    return ApiResponse(data=await statistics(db))


@app.get(f"{API}/borrows/book/{{book_id}}", **RESPONSE)
async def read_total_borrowed_for_book(book_id: str, db=Depends(get_db)):
    return ApiResponse(data=await book_borrow_report(db, book_id))


@app.get(f"{API}/borrows/{{borrow_id}}", **RESPONSE)
async def read_borrow(borrow_id: str, db=Depends(get_db)):
    return ApiResponse(data=await get_borrow(db, borrow_id))


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)
