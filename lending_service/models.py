import math
from datetime import datetime, timezone

from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Table,
    Text,
    text,
)

Base = declarative_base()

ROLE_MEMBER = "member"
ROLE_LIBRARIAN = "librarian"
ROLES = (ROLE_MEMBER, ROLE_LIBRARIAN)

LOAN_ACTIVE = "active"
LOAN_OVERDUE = "overdue"
LOAN_RETURNED = "returned"
LOAN_STATUSES = (LOAN_ACTIVE, LOAN_OVERDUE, LOAN_RETURNED)

# Loans that still hold a copy and a borrowing slot
OUTSTANDING_STATUSES = (LOAN_ACTIVE, LOAN_OVERDUE)


def utcnow():
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(
        Enum(*ROLES, name="user_role"),
        nullable=False,
        default=ROLE_MEMBER,
    )
    max_books_allowed = Column(Integer, nullable=False, default=10)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("max_books_allowed >= 0", name="check_max_books_allowed"),
    )

    @property
    def is_librarian(self):
        return self.role == ROLE_LIBRARIAN

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "max_books_allowed": self.max_books_allowed,
        }


book_categories = Table(
    "book_categories",
    Base.metadata,
    Column(
        "book_id",
        Integer,
        ForeignKey("books.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "category_id",
        Integer,
        ForeignKey("categories.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    ),
    Column("created_at", DateTime, nullable=False, default=utcnow),
)


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    def to_dict(self, book_count=None):
        data = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
        }
        if book_count is not None:
            data["book_count"] = book_count
        return data


class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True, nullable=False)
    title = Column(String(500), nullable=False)
    author = Column(String(300), nullable=False)
    publisher = Column(String(200))
    year = Column(Integer)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("total_copies >= 1", name="check_total_copies"),
        CheckConstraint(
            "available_copies >= 0 AND available_copies <= total_copies",
            name="check_available_copies",
        ),
    )

    categories = relationship(
        "Category",
        secondary=book_categories,
        order_by="Category.name",
        lazy="selectin",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "isbn": self.isbn,
            "title": self.title,
            "author": self.author,
            "publisher": self.publisher,
            "year": self.year,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "categories": [
                {"id": c.id, "name": c.name}
                for c in self.__dict__.get("categories", ())
            ],
        }


class Loan(Base):
    __tablename__ = "book_loans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    loan_date = Column(DateTime, nullable=False, default=utcnow)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime)
    status = Column(
        Enum(*LOAN_STATUSES, name="loan_status"),
        nullable=False,
        default=LOAN_ACTIVE,
    )
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(
        DateTime,
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    user = relationship("User")
    book = relationship("Book")

    __table_args__ = (
        CheckConstraint("due_date > loan_date", name="check_loan_dates"),
        CheckConstraint(
            "return_date IS NULL OR return_date >= loan_date",
            name="check_return_date",
        ),
        CheckConstraint(
            "(status = 'returned' AND return_date IS NOT NULL) OR "
            "(status != 'returned' AND return_date IS NULL)",
            name="check_returned_status",
        ),
        # one active loan per (user, book)
        Index(
            "idx_unique_active_user_book_loan",
            "user_id",
            "book_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_book_loans_user_status", "user_id", "status"),
        Index("idx_book_loans_due_date", "due_date"),
    )

    def is_active(self):
        return self.status == LOAN_ACTIVE

    def is_returned(self):
        return self.status == LOAN_RETURNED

    def is_overdue(self, now=None):
        """Overdue after the sweep, or still active but already past due."""
        now = now or utcnow()
        return self.status == LOAN_OVERDUE or (self.is_active() and self.due_date < now)

    def can_renew(self, now=None):
        # The date check matters for loans the sweep has not reached yet.
        return self.is_active() and not self.is_overdue(now)

    def days_until_due(self, now=None):
        """Whole days until the due date, negative once it has passed."""
        now = now or utcnow()
        return math.ceil((self.due_date - now).total_seconds() / 86400)

    def status_info(self, now=None):
        now = now or utcnow()
        days = self.days_until_due(now)
        return {
            "status": self.status,
            "is_overdue": self.is_overdue(now),
            "days_until_due": days,
            "days_overdue": abs(days) if days < 0 else 0,
            "can_renew": self.can_renew(now),
        }

    def to_dict(self, now=None, include_user=True):
        data = {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "loan_date": _iso(self.loan_date),
            "due_date": _iso(self.due_date),
            "return_date": _iso(self.return_date),
            "status": self.status,
            "notes": self.notes,
            "status_info": self.status_info(now),
        }
        # joined display fields, present when the relationship was loaded
        book = self.__dict__.get("book")
        if book is not None:
            data["book_title"] = book.title
            data["book_author"] = book.author
            data["book_isbn"] = book.isbn
        user = self.__dict__.get("user")
        if include_user and user is not None:
            data["user_name"] = user.name
            data["user_email"] = user.email
        return data
