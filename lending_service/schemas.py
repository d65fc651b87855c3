"""Request models for the HTTP layer.

Bodies and query strings are parsed into these before any service call, so
the services only ever see typed, range-checked values.
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .stores import BookPatch, CategoryPatch

LoanStatusFilter = Literal["active", "returned", "overdue"]
SortOrder = Literal["ASC", "DESC", "asc", "desc"]


class RequestModel(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")


def _as_naive_utc(value):
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# ----------------- users & books -----------------

class UserCreate(RequestModel):
    name: str = Field(min_length=1, max_length=255)
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    role: Literal["member", "librarian"] = "member"
    max_books_allowed: Optional[int] = Field(default=None, ge=0)


class BookCreate(RequestModel):
    isbn: str = Field(min_length=1, max_length=20)
    title: str = Field(min_length=1, max_length=500)
    author: str = Field(min_length=1, max_length=300)
    publisher: Optional[str] = Field(default=None, max_length=200)
    year: Optional[int] = None
    total_copies: int = Field(default=1, ge=1)
    available_copies: Optional[int] = Field(default=None, ge=0)
    category_ids: List[int] = Field(default_factory=list)


class BookUpdate(RequestModel):
    # the available count follows loans and returns; it is not editable
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    isbn: Optional[str] = Field(default=None, min_length=1, max_length=20)
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    author: Optional[str] = Field(default=None, min_length=1, max_length=300)
    publisher: Optional[str] = Field(default=None, max_length=200)
    year: Optional[int] = None
    total_copies: Optional[int] = Field(default=None, ge=1)
    category_ids: Optional[List[int]] = None

    def to_patch(self):
        values = self.model_dump(exclude_unset=True, exclude={"category_ids"})
        # only nullable columns may be cleared
        values = {
            name: value
            for name, value in values.items()
            if value is not None or name in ("publisher", "year")
        }
        return BookPatch(**values)


class BookSearchQuery(RequestModel):
    search: Optional[str] = None
    author: Optional[str] = None
    category: Optional[str] = None
    available_only: bool = False
    page: int = Field(default=1, ge=1)
    limit: Optional[int] = Field(default=None, ge=1, le=100)


class BooksByCategoryQuery(RequestModel):
    available_only: bool = False
    page: int = Field(default=1, ge=1)
    limit: Optional[int] = Field(default=None, ge=1, le=100)


class RecentBooksQuery(RequestModel):
    limit: int = Field(default=10, ge=1, le=50)
    available_only: bool = False


# ----------------- categories -----------------

class CategoryCreate(RequestModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


class CategoryUpdate(RequestModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)

    def to_patch(self):
        values = self.model_dump(exclude_unset=True)
        if values.get("name", "") is None:
            del values["name"]
        return CategoryPatch(**values)


class CategoryListQuery(RequestModel):
    search: Optional[str] = None
    include_book_count: bool = False
    page: int = Field(default=1, ge=1)
    limit: Optional[int] = Field(default=None, ge=1, le=100)


class CategorySearchQuery(RequestModel):
    q: str = ""
    include_book_count: bool = False
    limit: int = Field(default=20, ge=1, le=100)


class PopularCategoriesQuery(RequestModel):
    limit: int = Field(default=10, ge=1, le=50)


# ----------------- loans -----------------

class BorrowRequest(RequestModel):
    book_id: int = Field(ge=1)
    loan_period_days: Optional[int] = Field(default=None, ge=1, le=60)
    notes: Optional[str] = Field(default=None, max_length=500)


class ReturnRequest(RequestModel):
    return_date: Optional[datetime] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("return_date")
    @classmethod
    def naive_utc(cls, value):
        # range checks against the service clock happen in the loan service
        return _as_naive_utc(value) if value is not None else value


class ForceReturnRequest(ReturnRequest):
    notes: str = Field(min_length=10, max_length=500)


class RenewRequest(RequestModel):
    extension_days: Optional[int] = Field(default=None, ge=1, le=30)
    notes: Optional[str] = Field(default=None, max_length=500)


class UserLoansQuery(RequestModel):
    status: Optional[LoanStatusFilter] = None
    page: int = Field(default=1, ge=1)
    limit: Optional[int] = Field(default=None, ge=1, le=100)


class AllLoansQuery(UserLoansQuery):
    user_id: Optional[int] = None
    book_id: Optional[int] = None
    overdue_only: bool = False
    sort_by: Literal["loan_date", "due_date", "return_date", "status", "created_at"] = "loan_date"
    sort_order: SortOrder = "DESC"


class OverdueQuery(RequestModel):
    limit: int = Field(default=50, ge=1, le=100)


class MostBorrowedQuery(RequestModel):
    limit: int = Field(default=10, ge=1, le=50)
    period_days: int = Field(default=30, ge=1, le=365)
