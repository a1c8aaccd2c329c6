import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from bookhive.exceptions import (
    BookNotFoundError,
    DatabaseError,
    DuplicateIsbnError,
    InvalidDataError,
    InvalidIdError,
)
from bookhive.models import AvailabilityModel, BookModel
from bookhive.schemas import BookCreate, BookFilterParams, BookUpdate
from bookhive.storage import run_in_transaction

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ("title", "author", "isbn")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_object_id(value, field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise InvalidIdError(value, field)
    return ObjectId(value)


def _availability_stages(delta: int, now: datetime) -> list:
    # Aggregation-pipeline update: later stages see the new copies value
    return [
        {"$set": {"copies": {"$add": ["$copies", delta]}, "updated_at": now}},
        {"$set": {"available": {"$gt": ["$copies", 0]}}},
    ]


def build_book_filter(filters: BookFilterParams) -> dict:
    query = {}
    if filters.genre:
        query["genre"] = filters.genre
    if filters.available is not None:
        query["available"] = filters.available
    if filters.author:
        query["author"] = {"$regex": re.escape(filters.author), "$options": "i"}
    return query


def build_sort(sort_by: Optional[str], sort_order: str) -> list:
    if not sort_by:
        return [("created_at", DESCENDING)]
    return [(sort_by, DESCENDING if sort_order == "desc" else ASCENDING)]


def regex_search_clause(term: str) -> dict:
    pattern = re.escape(term)
    return {
        "$or": [{field: {"$regex": pattern, "$options": "i"}} for field in SEARCH_FIELDS]
    }


async def search_clause(db: AsyncIOMotorDatabase, query: dict, term: str) -> dict:
    text_query = {**query, "$text": {"$search": term}}
    try:
        match = await db.books.find_one(text_query, {"_id": 1})
    except OperationFailure as e:
        logger.warning(f"Text search failed, falling back to regex search: {e}")
        return regex_search_clause(term)
    if match:
        return {"$text": {"$search": term}}
    return regex_search_clause(term)


async def create_book(db: AsyncIOMotorDatabase, book: BookCreate) -> BookModel:
    now = utcnow()
    document = {
        **book.model_dump(),
        "available": book.copies > 0,
        "created_at": now,
        "updated_at": now,
    }
    try:
        result = await db.books.insert_one(document)
    except DuplicateKeyError:
        raise DuplicateIsbnError(book.isbn)
    except PyMongoError as e:
        raise DatabaseError("create book", str(e))
    document["_id"] = result.inserted_id
    logger.info(f"Book created: {result.inserted_id} ({book.title})")
    return BookModel(**document)


async def get_book(db: AsyncIOMotorDatabase, book_id) -> BookModel:
    oid = to_object_id(book_id)
    try:
        book = await db.books.find_one({"_id": oid})
    except PyMongoError as e:
        raise DatabaseError("get book", str(e))
    if book is None:
        raise BookNotFoundError(book_id)
    return BookModel(**book)


async def list_books(
    db: AsyncIOMotorDatabase,
    filters: BookFilterParams,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[BookModel], int]:
    query = build_book_filter(filters)
    try:
        if filters.search:
            query.update(await search_clause(db, query, filters.search))
        cursor = (
            db.books.find(query)
            .sort(build_sort(filters.sort_by, filters.sort_order))
            .skip((page - 1) * limit)
            .limit(limit)
        )
        books = [BookModel(**book) async for book in cursor]
        total = await db.books.count_documents(query)
    except PyMongoError as e:
        raise DatabaseError("list books", str(e))
    return books, total


async def list_available_books(db: AsyncIOMotorDatabase) -> List[BookModel]:
    try:
        cursor = db.books.find({"available": True, "copies": {"$gt": 0}})
        return [BookModel(**book) async for book in cursor]
    except PyMongoError as e:
        raise DatabaseError("list available books", str(e))


async def list_books_by_genre(db: AsyncIOMotorDatabase, genre: str) -> List[BookModel]:
    try:
        cursor = db.books.find({"genre": genre})
        return [BookModel(**book) async for book in cursor]
    except PyMongoError as e:
        raise DatabaseError("list books by genre", str(e))


async def update_book(
    db: AsyncIOMotorDatabase, book_id, book_update: BookUpdate
) -> BookModel:
    oid = to_object_id(book_id)
    changes = book_update.model_dump(exclude_unset=True)
    nulls = [k for k, v in changes.items() if v is None and k != "description"]
    if nulls:
        raise InvalidDataError(
            "Validation failed", {k: f"{k} cannot be null" for k in nulls}
        )
    if not changes:
        return await get_book(db, book_id)

    if "copies" in changes:
        changes["available"] = changes["copies"] > 0
    changes["updated_at"] = utcnow()

    try:
        book = await db.books.find_one_and_update(
            {"_id": oid},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise DuplicateIsbnError(changes.get("isbn"))
    except PyMongoError as e:
        raise DatabaseError("update book", str(e))
    if book is None:
        raise BookNotFoundError(book_id)
    return BookModel(**book)


async def refresh_availability(db: AsyncIOMotorDatabase, book_id) -> AvailabilityModel:
    oid = to_object_id(book_id)
    try:
        book = await db.books.find_one_and_update(
            {"_id": oid},
            [{"$set": {"available": {"$gt": ["$copies", 0]}, "updated_at": utcnow()}}],
            projection={"available": 1, "copies": 1},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as e:
        raise DatabaseError("update availability", str(e))
    if book is None:
        raise BookNotFoundError(book_id)
    return AvailabilityModel(available=book["available"], copies=book["copies"])


async def conditional_decrement(
    db: AsyncIOMotorDatabase, book_id: ObjectId, quantity: int, session=None
) -> Optional[BookModel]:
    """Take ``quantity`` copies in a single conditional write.

    Matches only while the book is available and holds at least ``quantity``
    copies; ``available`` is recomputed in the same write. Returns the
    updated book, or None when nothing matched.
    """
    book = await db.books.find_one_and_update(
        {"_id": book_id, "available": True, "copies": {"$gte": quantity}},
        _availability_stages(-quantity, utcnow()),
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    return BookModel(**book) if book else None


async def restore_copies(
    db: AsyncIOMotorDatabase, book_id: ObjectId, quantity: int, session=None
):
    await db.books.update_one(
        {"_id": book_id},
        _availability_stages(quantity, utcnow()),
        session=session,
    )


async def delete_book(db: AsyncIOMotorDatabase, book_id) -> int:
    """Delete a book and its borrow records; returns the records removed."""
    oid = to_object_id(book_id)

    async def _delete(session):
        # Book first: once it is gone no new borrow can reference it
        result = await db.books.delete_one({"_id": oid}, session=session)
        if result.deleted_count == 0:
            raise BookNotFoundError(book_id)
        borrows = await db.borrows.delete_many({"book": oid}, session=session)
        return borrows.deleted_count

    try:
        deleted = await run_in_transaction(db, _delete)
    except PyMongoError as e:
        raise DatabaseError("delete book", str(e))
    logger.info(f"Book {book_id} deleted with {deleted} borrow records")
    return deleted
