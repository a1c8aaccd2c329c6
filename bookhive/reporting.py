"""Read-only aggregation reports over the borrow ledger."""
import logging
from datetime import datetime
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from bookhive.borrowing import populate_book_stages, to_populated_borrow
from bookhive.crud import get_book, to_object_id, utcnow
from bookhive.exceptions import DatabaseError
from bookhive.models import (
    BookBorrowReport,
    BorrowStatistics,
    BorrowSummaryItem,
    PopulatedBorrow,
)

logger = logging.getLogger(__name__)

MONTHS_IN_REPORT = 12
TOP_BOOKS_IN_REPORT = 5


def summary_pipeline() -> list:
    return [
        {
            "$group": {
                "_id": "$book",
                "total_quantity_borrowed": {"$sum": "$quantity"},
                "borrow_count": {"$sum": 1},
                "last_borrow_date": {"$max": "$created_at"},
            }
        },
        {
            "$lookup": {
                "from": "books",
                "localField": "_id",
                "foreignField": "_id",
                "as": "book",
            }
        },
        {"$unwind": "$book"},
        {
            "$project": {
                "book": {
                    "_id": "$book._id",
                    "title": "$book.title",
                    "author": "$book.author",
                    "isbn": "$book.isbn",
                    "genre": "$book.genre",
                },
                "total_quantity_borrowed": 1,
                "borrow_count": 1,
                "last_borrow_date": 1,
            }
        },
        {"$sort": {"total_quantity_borrowed": -1}},
    ]


def statistics_pipeline(now: datetime) -> list:
    return [
        {
            "$facet": {
                "total_borrows": [{"$count": "count"}],
                "total_quantity_borrowed": [
                    {"$group": {"_id": None, "total": {"$sum": "$quantity"}}}
                ],
                "overdue_count": [
                    {"$match": {"due_date": {"$lt": now}}},
                    {"$count": "count"},
                ],
                "borrows_by_month": [
                    {
                        "$group": {
                            "_id": {
                                "year": {"$year": "$created_at"},
                                "month": {"$month": "$created_at"},
                            },
                            "count": {"$sum": 1},
                            "quantity": {"$sum": "$quantity"},
                        }
                    },
                    {"$sort": {"_id.year": -1, "_id.month": -1}},
                    {"$limit": MONTHS_IN_REPORT},
                    {
                        "$project": {
                            "_id": 0,
                            "year": "$_id.year",
                            "month": "$_id.month",
                            "count": 1,
                            "quantity": 1,
                        }
                    },
                ],
                "most_borrowed_books": [
                    {
                        "$group": {
                            "_id": "$book",
                            "total_borrowed": {"$sum": "$quantity"},
                            "borrow_count": {"$sum": 1},
                        }
                    },
                    {
                        "$lookup": {
                            "from": "books",
                            "localField": "_id",
                            "foreignField": "_id",
                            "as": "book_details",
                        }
                    },
                    {"$unwind": "$book_details"},
                    {
                        "$project": {
                            "title": "$book_details.title",
                            "author": "$book_details.author",
                            "total_borrowed": 1,
                            "borrow_count": 1,
                        }
                    },
                    {"$sort": {"total_borrowed": -1}},
                    {"$limit": TOP_BOOKS_IN_REPORT},
                ],
            }
        }
    ]


def _first(rows: list, key: str, default=0):
    return rows[0].get(key, default) if rows else default


async def borrow_summary(db: AsyncIOMotorDatabase) -> List[BorrowSummaryItem]:
    try:
        rows = await db.borrows.aggregate(summary_pipeline()).to_list(length=None)
    except PyMongoError as e:
        raise DatabaseError("borrow summary", str(e))
    return [BorrowSummaryItem(**row) for row in rows]


async def overdue_books(
    db: AsyncIOMotorDatabase, now: Optional[datetime] = None
) -> List[PopulatedBorrow]:
    pipeline = [
        {"$match": {"due_date": {"$lt": now or utcnow()}}},
        {"$sort": {"due_date": 1}},
        *populate_book_stages(("title", "author", "isbn")),
    ]
    try:
        rows = await db.borrows.aggregate(pipeline).to_list(length=None)
    except PyMongoError as e:
        raise DatabaseError("overdue books", str(e))
    return [to_populated_borrow(row) for row in rows]


async def total_borrowed_for_book(db: AsyncIOMotorDatabase, book_id) -> int:
    oid = to_object_id(book_id, "book_id")
    pipeline = [
        {"$match": {"book": oid}},
        {"$group": {"_id": None, "total": {"$sum": "$quantity"}}},
    ]
    try:
        rows = await db.borrows.aggregate(pipeline).to_list(length=1)
    except PyMongoError as e:
        raise DatabaseError("total borrowed", str(e))
    return _first(rows, "total")


async def book_borrow_report(db: AsyncIOMotorDatabase, book_id) -> BookBorrowReport:
    book = await get_book(db, book_id)
    total = await total_borrowed_for_book(db, book_id)
    return BookBorrowReport(
        book_id=book.id,
        title=book.title,
        total_borrowed=total,
        remaining_copies=book.copies,
    )


async def statistics(
    db: AsyncIOMotorDatabase, now: Optional[datetime] = None
) -> BorrowStatistics:
    try:
        result = await db.borrows.aggregate(
            statistics_pipeline(now or utcnow())
        ).to_list(length=1)
    except PyMongoError as e:
        raise DatabaseError("borrow statistics", str(e))
    if not result:
        return BorrowStatistics()
    facets = result[0]
    return BorrowStatistics(
        total_borrows=_first(facets.get("total_borrows", []), "count"),
        total_quantity_borrowed=_first(
            facets.get("total_quantity_borrowed", []), "total"
        ),
        overdue_count=_first(facets.get("overdue_count", []), "count"),
        borrows_by_month=facets.get("borrows_by_month", []),
        most_borrowed_books=facets.get("most_borrowed_books", []),
    )
