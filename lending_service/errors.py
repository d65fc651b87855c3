"""Typed errors raised by the lending engine.

Every error carries a ``kind`` from a closed set, a stable machine ``code``
and the structured fields that describe the violation (entity ids, limits).
The HTTP layer switches on ``kind``; nothing should inspect message text.
"""

import enum


class ErrorKind(enum.Enum):
    NOT_FOUND = "not_found"
    LIMIT_EXCEEDED = "limit_exceeded"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    INVALID_STATE = "invalid_state"
    VALIDATION = "validation"


class LendingError(Exception):
    kind = ErrorKind.INVALID_STATE
    code = "LENDING_ERROR"

    def __init__(self, message, **fields):
        super().__init__(message)
        self.message = message
        self.fields = fields

    def to_dict(self):
        payload = {"error": self.message, "code": self.code}
        payload.update(self.fields)
        return payload


# ----------------- not found -----------------

class UserNotFound(LendingError):
    kind = ErrorKind.NOT_FOUND
    code = "USER_NOT_FOUND"

    def __init__(self, user_id):
        super().__init__("User not found", user_id=user_id)


class LoanNotFound(LendingError):
    kind = ErrorKind.NOT_FOUND
    code = "LOAN_NOT_FOUND"

    def __init__(self, loan_id):
        super().__init__("Loan not found", loan_id=loan_id)


# ----------------- availability -----------------

class NotAvailable(LendingError):
    kind = ErrorKind.CONFLICT
    code = "BOOK_NOT_AVAILABLE"

    def __init__(self, book_id, message="No copies available"):
        super().__init__(message, book_id=book_id)


class BookNotFound(NotAvailable):
    """A missing book is never available, but still reported as not found."""

    kind = ErrorKind.NOT_FOUND
    code = "BOOK_NOT_FOUND"

    def __init__(self, book_id):
        super().__init__(book_id, message="Book not found")


class ReservationConflict(NotAvailable):
    code = "RESERVATION_CONFLICT"

    def __init__(self, book_id):
        super().__init__(
            book_id,
            message="Failed to reserve copy - book may have become unavailable",
        )


class AlreadyFull(LendingError):
    kind = ErrorKind.CONFLICT
    code = "ALL_COPIES_AVAILABLE"

    def __init__(self, book_id):
        super().__init__("All copies are already available", book_id=book_id)


# ----------------- loan rules -----------------

class LoanLimitExceeded(LendingError):
    kind = ErrorKind.LIMIT_EXCEEDED
    code = "LOAN_LIMIT_EXCEEDED"

    def __init__(self, user_id, limit, active_count):
        super().__init__(
            f"Maximum loan limit reached ({limit} books)",
            user_id=user_id,
            limit=limit,
            active_count=active_count,
        )


class DuplicateActiveLoan(LendingError):
    kind = ErrorKind.CONFLICT
    code = "BOOK_ALREADY_BORROWED"

    def __init__(self, user_id, book_id):
        super().__init__(
            "You already have an active loan for this book",
            user_id=user_id,
            book_id=book_id,
        )


class AlreadyReturned(LendingError):
    kind = ErrorKind.CONFLICT
    code = "BOOK_ALREADY_RETURNED"

    def __init__(self, loan_id):
        super().__init__("Book has already been returned", loan_id=loan_id)


class NotRenewable(LendingError):
    kind = ErrorKind.INVALID_STATE
    code = "CANNOT_RENEW"

    def __init__(self, loan_id, status):
        super().__init__(
            "Loan cannot be renewed (already returned or overdue)",
            loan_id=loan_id,
            status=status,
        )


class NotAuthorized(LendingError):
    kind = ErrorKind.FORBIDDEN
    code = "ACCESS_DENIED"

    def __init__(self, user_id, loan_id=None, message="Access denied"):
        super().__init__(message, user_id=user_id, loan_id=loan_id)


class LibrarianRequired(LendingError):
    kind = ErrorKind.FORBIDDEN
    code = "LIBRARIAN_REQUIRED"

    def __init__(self, user_id):
        super().__init__("Only librarians can perform this action", user_id=user_id)


class ValidationFailed(LendingError):
    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"

    def __init__(self, field, message):
        super().__init__(message, field=field)


# ----------------- catalog -----------------

class DuplicateIsbn(LendingError):
    kind = ErrorKind.CONFLICT
    code = "DUPLICATE_ISBN"

    def __init__(self, isbn):
        super().__init__("A book with this ISBN already exists", isbn=isbn)


class DuplicateEmail(LendingError):
    kind = ErrorKind.CONFLICT
    code = "DUPLICATE_EMAIL"

    def __init__(self, email):
        super().__init__("A user with this email already exists", email=email)


class CopiesInUse(LendingError):
    kind = ErrorKind.CONFLICT
    code = "COPIES_IN_USE"

    def __init__(self, book_id, borrowed, message="Cannot delete book with active loans"):
        super().__init__(message, book_id=book_id, borrowed=borrowed)


class CategoryNotFound(LendingError):
    kind = ErrorKind.NOT_FOUND
    code = "CATEGORY_NOT_FOUND"

    def __init__(self, category_id):
        super().__init__("Category not found", category_id=category_id)


class DuplicateCategory(LendingError):
    kind = ErrorKind.CONFLICT
    code = "DUPLICATE_CATEGORY"

    def __init__(self, name):
        super().__init__("Category with this name already exists", name=name)


class CategoryInUse(LendingError):
    kind = ErrorKind.CONFLICT
    code = "CATEGORY_IN_USE"

    def __init__(self, category_id, book_count):
        super().__init__(
            "Cannot delete category that has associated books",
            category_id=category_id,
            book_count=book_count,
        )
