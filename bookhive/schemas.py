import math
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class BookBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=200)
    author: str = Field(min_length=1, max_length=100)
    genre: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    description: Optional[str] = Field(None, max_length=1000)
    copies: int = Field(ge=0)


class BookCreate(BookBase):
    pass


class BookUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    author: Optional[str] = Field(None, min_length=1, max_length=100)
    genre: Optional[str] = Field(None, min_length=1)
    isbn: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, max_length=1000)
    copies: Optional[int] = Field(None, ge=0)


class BorrowCreate(BaseModel):
    book: str
    quantity: int = Field(ge=1)
    due_date: datetime


BookSortField = Literal["title", "author", "genre", "copies", "created_at", "updated_at"]
BorrowSortField = Literal["quantity", "due_date", "created_at", "updated_at"]
SortOrder = Literal["asc", "desc"]


class BookFilterParams(BaseModel):
    genre: Optional[str] = None
    available: Optional[bool] = None
    author: Optional[str] = None
    search: Optional[str] = None
    sort_by: Optional[BookSortField] = None
    sort_order: SortOrder = "asc"


class BorrowFilterParams(BaseModel):
    book: Optional[str] = None
    overdue: bool = False
    sort_by: Optional[BorrowSortField] = None
    sort_order: SortOrder = "asc"


class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = math.ceil(total / limit) if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_items=total,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class ApiResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    data: Any = None
    count: Optional[int] = None
    genre: Optional[str] = None
    pagination: Optional[Pagination] = None
    errors: Optional[dict] = None
