import logging
from typing import Iterable, List, Tuple

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from bookhive.crud import (
    as_utc,
    build_sort,
    conditional_decrement,
    restore_copies,
    to_object_id,
    utcnow,
)
from bookhive.exceptions import (
    BookNotFoundError,
    BorrowNotFoundError,
    DatabaseError,
    InsufficientCopiesError,
    InvalidDataError,
)
from bookhive.models import PopulatedBorrow
from bookhive.schemas import BorrowCreate, BorrowFilterParams
from bookhive.storage import run_in_transaction

logger = logging.getLogger(__name__)

LISTING_BOOK_FIELDS = ("title", "author", "isbn", "genre")


def populate_book_stages(fields: Iterable[str]) -> list:
    """Replace the ``book`` reference with a subset of the book document."""
    projection = {"_id": "$book._id"}
    projection.update({field: f"$book.{field}" for field in fields})
    return [
        {
            "$lookup": {
                "from": "books",
                "localField": "book",
                "foreignField": "_id",
                "as": "book",
            }
        },
        {"$unwind": {"path": "$book", "preserveNullAndEmptyArrays": True}},
        {"$set": {"book": projection}},
    ]


def to_populated_borrow(document: dict) -> PopulatedBorrow:
    # An unmatched lookup projects to an empty document
    book = document.get("book") or None
    return PopulatedBorrow(**{**document, "book": book})


async def _reject_borrow(db: AsyncIOMotorDatabase, book_id: ObjectId, quantity: int, session):
    # Read-only; tells the caller why the conditional write matched nothing
    book = await db.books.find_one({"_id": book_id}, {"copies": 1}, session=session)
    if book is None:
        raise BookNotFoundError(str(book_id))
    copies = book.get("copies", 0)
    logger.info(
        f"Borrow of {quantity} copies rejected for book {book_id}: {copies} left"
    )
    raise InsufficientCopiesError(str(book_id), copies)


async def record_persisted(db: AsyncIOMotorDatabase, borrow_id: ObjectId) -> bool:
    return await db.borrows.find_one({"_id": borrow_id}, {"_id": 1}) is not None


async def borrow_book(db: AsyncIOMotorDatabase, borrow: BorrowCreate) -> PopulatedBorrow:
    book_id = to_object_id(borrow.book, "book")
    if borrow.quantity < 1:
        raise InvalidDataError(
            "Quantity must be at least 1", {"quantity": "Quantity must be at least 1"}
        )
    now = utcnow()
    due_date = as_utc(borrow.due_date)
    if due_date <= now:
        raise InvalidDataError(
            "Due date must be in the future",
            {"due_date": "Due date must be in the future"},
        )

    async def _borrow(session):
        book = await conditional_decrement(db, book_id, borrow.quantity, session=session)
        if book is None:
            await _reject_borrow(db, book_id, borrow.quantity, session)

        document = {
            "_id": ObjectId(),
            "book": book_id,
            "quantity": borrow.quantity,
            "due_date": due_date,
            "created_at": now,
            "updated_at": now,
        }
        try:
            await db.borrows.insert_one(document, session=session)
        except PyMongoError as e:
            if session is not None:
                raise
            # The write may have been applied before the error reached us
            if await record_persisted(db, document["_id"]):
                logger.warning(
                    f"Borrow record {document['_id']} was stored despite "
                    f"insert error: {e}"
                )
                return book, document
            logger.error(
                f"Borrow record insert failed for book {book_id}; "
                f"restoring {borrow.quantity} copies"
            )
            await restore_copies(db, book_id, borrow.quantity)
            raise
        return book, document

    try:
        book, document = await run_in_transaction(db, _borrow)
    except PyMongoError as e:
        raise DatabaseError("borrow", str(e))

    logger.info(
        f"Borrowed {borrow.quantity} copies of book {book_id}; {book.copies} left"
    )
    brief = {"_id": book.id, "title": book.title, "author": book.author, "isbn": book.isbn}
    return PopulatedBorrow(**{**document, "book": brief})


async def list_borrows(
    db: AsyncIOMotorDatabase,
    filters: BorrowFilterParams,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[PopulatedBorrow], int]:
    query = {}
    if filters.book:
        query["book"] = to_object_id(filters.book, "book")
    if filters.overdue:
        query["due_date"] = {"$lt": utcnow()}

    pipeline = [
        {"$match": query},
        {"$sort": dict(build_sort(filters.sort_by, filters.sort_order))},
        {"$skip": (page - 1) * limit},
        {"$limit": limit},
        *populate_book_stages(LISTING_BOOK_FIELDS),
    ]
    try:
        documents = await db.borrows.aggregate(pipeline).to_list(length=None)
        total = await db.borrows.count_documents(query)
    except PyMongoError as e:
        raise DatabaseError("list borrows", str(e))
    return [to_populated_borrow(doc) for doc in documents], total


async def get_borrow(db: AsyncIOMotorDatabase, borrow_id) -> PopulatedBorrow:
    oid = to_object_id(borrow_id, "borrow_id")
    pipeline = [{"$match": {"_id": oid}}, *populate_book_stages(LISTING_BOOK_FIELDS)]
    try:
        documents = await db.borrows.aggregate(pipeline).to_list(length=1)
    except PyMongoError as e:
        raise DatabaseError("get borrow", str(e))
    if not documents:
        raise BorrowNotFoundError(borrow_id)
    return to_populated_borrow(documents[0])
