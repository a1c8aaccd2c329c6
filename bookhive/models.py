from datetime import datetime
from typing import Annotated, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

# ObjectIds leave the store as bson.ObjectId and are exposed as strings
PyObjectId = Annotated[str, BeforeValidator(str)]


class MongoModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: PyObjectId = Field(alias="_id", serialization_alias="id")


class BookModel(MongoModel):
    title: str
    author: str
    genre: str
    isbn: str
    description: Optional[str] = None
    copies: int
    available: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_available(self) -> bool:
        return self.available and self.copies > 0


class BookBrief(MongoModel):
    """The subset of a book embedded into borrow listings and reports."""

    title: str
    author: str
    isbn: Optional[str] = None
    genre: Optional[str] = None


class BorrowModel(MongoModel):
    book: PyObjectId
    quantity: int
    due_date: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_overdue(self, now: datetime) -> bool:
        return now > self.due_date


class PopulatedBorrow(BorrowModel):
    book: Optional[BookBrief] = None


class AvailabilityModel(BaseModel):
    available: bool
    copies: int


class BorrowSummaryItem(MongoModel):
    book: BookBrief
    total_quantity_borrowed: int
    borrow_count: int
    last_borrow_date: Optional[datetime] = None


class BookBorrowReport(BaseModel):
    book_id: PyObjectId
    title: str
    total_borrowed: int
    remaining_copies: int


class MonthlyBorrows(BaseModel):
    year: int
    month: int
    count: int
    quantity: int


class MostBorrowedBook(MongoModel):
    title: str
    author: str
    total_borrowed: int
    borrow_count: int


class BorrowStatistics(BaseModel):
    total_borrows: int = 0
    total_quantity_borrowed: int = 0
    overdue_count: int = 0
    borrows_by_month: List[MonthlyBorrows] = []
    most_borrowed_books: List[MostBorrowedBook] = []
