import logging
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for library-related errors."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, errors: Optional[dict] = None):
        self.message = message
        self.errors = errors
        super().__init__(message)


class InvalidDataError(LibraryException):
    """Raised when client input fails a business rule."""


class InvalidIdError(InvalidDataError):
    def __init__(self, value, field: str = "id"):
        self.value = value
        self.field = field
        label = field[: -len("_id")] if field.endswith("_id") else field
        if label == "id":
            label = "book"
        super().__init__(
            f"Invalid {label} ID format", {field: "Invalid ID format"}
        )


class BookNotFoundError(LibraryException):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, book_id):
        self.book_id = book_id
        super().__init__("Book not found")


class BorrowNotFoundError(LibraryException):
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, borrow_id):
        self.borrow_id = borrow_id
        super().__init__("Borrow record not found")


class InsufficientCopiesError(LibraryException):
    """Raised when a book cannot cover the requested borrow quantity."""

    def __init__(self, book_id, available_copies: int = 0):
        self.book_id = book_id
        self.available_copies = available_copies
        super().__init__(
            f"Not enough copies available. Only {available_copies} copies left."
        )


class DuplicateIsbnError(LibraryException):
    def __init__(self, isbn: Optional[str] = None):
        self.isbn = isbn
        super().__init__(
            "Book with this ISBN already exists",
            {"isbn": "isbn already exists"},
        )


class DatabaseError(LibraryException):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, operation: str, details: str):
        self.operation = operation
        self.details = details
        super().__init__(f"Database error during {operation}: {details}")


def error_body(message: str, errors: Optional[dict] = None) -> dict:
    body = {"success": False, "message": message}
    if errors:
        body["errors"] = errors
    return body


# Exception handlers
async def library_exception_handler(request: Request, exc: LibraryException):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body("Internal Server Error"),
        )
    logger.warning(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code, content=error_body(exc.message, exc.errors)
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP error {exc.status_code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code, content=error_body(str(exc.detail))
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors[".".join(loc) or "body"] = error.get("msg")
    logger.warning(f"Request validation error: {errors}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("Validation failed", errors),
    )


async def response_validation_exception_handler(
    request: Request, exc: ResponseValidationError
):
    logger.error(f"Response validation error: {exc.errors()}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body(
            "The server encountered an unexpected error. Please contact support."
        ),
    )


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unexpected error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Internal Server Error"),
    )


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(
        ResponseValidationError, response_validation_exception_handler
    )
    app.add_exception_handler(LibraryException, library_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
