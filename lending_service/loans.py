import logging
import math
from datetime import timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .errors import (
    AlreadyReturned,
    DuplicateActiveLoan,
    LendingError,
    LibrarianRequired,
    LoanLimitExceeded,
    LoanNotFound,
    NotAuthorized,
    NotRenewable,
    UserNotFound,
    ValidationFailed,
)
from .models import LOAN_RETURNED, utcnow
from .stores import LoanPatch

logger = logging.getLogger(__name__)


def append_note(existing, note):
    """Notes accumulate; a new note never replaces the previous ones."""
    if not note:
        return existing
    return f"{existing}; {note}" if existing else note


def page_window(page, limit, default_limit, max_limit):
    """Clamp page/limit and return (page, limit, offset)."""
    try:
        page = max(1, int(page or 1))
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(limit or default_limit)
    except (TypeError, ValueError):
        limit = default_limit
    limit = min(max(1, limit), max_limit)
    return page, limit, (page - 1) * limit


def page_result(key, items, total, page, limit):
    return {
        key: items,
        "total": total,
        "page": page,
        "pages": max(1, math.ceil(total / limit)) if limit else 1,
        "limit": limit,
    }


class LoanService:
    """
    Loan lifecycle: borrow, return, renew, force-return and the overdue sweep.

    Each public operation runs in its own session transaction. State
    transitions are active -> overdue (sweep), active/overdue -> returned;
    nothing leaves ``returned``.
    """

    def __init__(
        self,
        session_factory,
        users,
        loans,
        availability,
        clock=utcnow,
        default_loan_period_days=14,
        default_extension_days=14,
        force_return_min_note_length=10,
        default_page_size=20,
        max_page_size=100,
    ):
        self.session_factory = session_factory
        self.users = users
        self.loans = loans
        self.availability = availability
        self.clock = clock
        self.default_loan_period_days = default_loan_period_days
        self.default_extension_days = default_extension_days
        self.force_return_min_note_length = force_return_min_note_length
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    # ----------------- lifecycle -----------------

    def borrow_book(self, book_id, user_id, loan_period_days=None, notes=None):
        if loan_period_days is None:
            loan_period_days = self.default_loan_period_days
        if loan_period_days < 1:
            raise ValidationFailed("loan_period_days", "Loan period must be at least 1 day")

        with self.session_factory.begin() as session:
            user = self.users.get(session, user_id)
            if not user:
                raise UserNotFound(user_id)

            outstanding = self.loans.list_outstanding_by_user(session, user_id)
            if len(outstanding) >= user.max_books_allowed:
                raise LoanLimitExceeded(user_id, user.max_books_allowed, len(outstanding))

            if self.loans.find_outstanding_user_book_loan(session, user_id, book_id):
                raise DuplicateActiveLoan(user_id, book_id)

            self.availability.reserve_copy(session, book_id)

            loan_date = self.clock()
            due_date = loan_date + timedelta(days=loan_period_days)
            try:
                with session.begin_nested():
                    loan = self.loans.create(
                        session, book_id, user_id, loan_date, due_date, notes
                    )
            except IntegrityError as e:
                self._release_reserved_copy(session, book_id)
                # a concurrent borrow of the same book won the unique index
                raise DuplicateActiveLoan(user_id, book_id) from e
            except Exception:
                self._release_reserved_copy(session, book_id)
                raise

            logger.info(
                "Book borrowed loan=%s book=%s user=%s due=%s active_loans=%s",
                loan.id,
                book_id,
                user_id,
                due_date.isoformat(),
                len(outstanding) + 1,
            )
            return self.loans.get(session, loan.id)

    def _release_reserved_copy(self, session, book_id):
        # Best effort: a failure here leaves a reserved copy with no loan,
        # which needs reconciling by hand.
        try:
            self.availability.release_copy(session, book_id)
        except (LendingError, SQLAlchemyError) as release_error:
            logger.error(
                "Failed to release copy after loan creation failure book=%s error=%s",
                book_id,
                release_error,
            )

    def return_book(self, loan_id, user_id, return_date=None, notes=None, force=False):
        with self.session_factory.begin() as session:
            return self._return(session, loan_id, user_id, return_date, notes, force)

    def _return(self, session, loan_id, user_id, return_date, notes, force):
        loan = self.loans.get(session, loan_id)
        if not loan:
            raise LoanNotFound(loan_id)

        if not force:
            user = self.users.get(session, user_id)
            if not user:
                raise UserNotFound(user_id)
            if not user.is_librarian and loan.user_id != user_id:
                raise NotAuthorized(
                    user_id, loan_id, "You can only return your own borrowed books"
                )

        if loan.is_returned():
            raise AlreadyReturned(loan_id)

        now = self.clock()
        return_date = return_date or now
        if return_date > now:
            raise ValidationFailed("return_date", "Return date cannot be in the future")
        if return_date < loan.loan_date:
            raise ValidationFailed("return_date", "Return date cannot be before the loan date")

        was_overdue = loan.is_overdue(now)
        changes = {"status": LOAN_RETURNED, "return_date": return_date}
        if notes:
            changes["notes"] = append_note(loan.notes, notes)
        self.loans.update(session, loan, LoanPatch(**changes))

        self.availability.release_copy(session, loan.book_id)

        logger.info(
            "Book returned loan=%s book=%s user=%s returned_by=%s was_overdue=%s forced=%s",
            loan_id,
            loan.book_id,
            loan.user_id,
            user_id,
            was_overdue,
            force,
        )
        return self.loans.get(session, loan_id)

    def renew_loan(self, loan_id, user_id, extension_days=None, notes=None):
        if extension_days is None:
            extension_days = self.default_extension_days
        if extension_days < 1:
            raise ValidationFailed("extension_days", "Extension must be at least 1 day")

        with self.session_factory.begin() as session:
            loan = self.loans.get(session, loan_id)
            if not loan:
                raise LoanNotFound(loan_id)

            user = self.users.get(session, user_id)
            if not user:
                raise UserNotFound(user_id)
            if not user.is_librarian and loan.user_id != user_id:
                raise NotAuthorized(user_id, loan_id, "You can only renew your own loans")

            if not loan.can_renew(self.clock()):
                raise NotRenewable(loan_id, loan.status)

            old_due_date = loan.due_date
            changes = {"due_date": old_due_date + timedelta(days=extension_days)}
            if notes:
                changes["notes"] = append_note(loan.notes, notes)
            self.loans.update(session, loan, LoanPatch(**changes))

            logger.info(
                "Loan renewed loan=%s book=%s user=%s renewed_by=%s old_due=%s new_due=%s",
                loan_id,
                loan.book_id,
                loan.user_id,
                user_id,
                old_due_date.isoformat(),
                changes["due_date"].isoformat(),
            )
            return self.loans.get(session, loan_id)

    def force_return_book(self, loan_id, librarian_id, return_date=None, notes=None):
        """Librarian-only return for lost or damaged books; a reason is mandatory."""
        with self.session_factory.begin() as session:
            librarian = self.users.get(session, librarian_id)
            if not librarian or not librarian.is_librarian:
                raise LibrarianRequired(librarian_id)

            notes = (notes or "").strip()
            if len(notes) < self.force_return_min_note_length:
                raise ValidationFailed(
                    "notes",
                    "Notes must be at least %d characters for force returns"
                    % self.force_return_min_note_length,
                )

            return self._return(
                session, loan_id, librarian_id, return_date, notes, force=True
            )

    def update_overdue_loans(self):
        with self.session_factory.begin() as session:
            count = self.loans.mark_overdue(session, self.clock())

        if count > 0:
            logger.info("Loans marked as overdue count=%s", count)
        return count

    def check_borrowing_eligibility(self, user_id):
        with self.session_factory() as session:
            user = self.users.get(session, user_id)
            if not user:
                return {
                    "can_borrow": False,
                    "active_loan_count": 0,
                    "max_allowed": 0,
                    "reason": "User not found",
                }

            # overdue loans still occupy a slot
            count = len(self.loans.list_outstanding_by_user(session, user_id))
            result = {
                "can_borrow": count < user.max_books_allowed,
                "active_loan_count": count,
                "max_allowed": user.max_books_allowed,
            }
            if not result["can_borrow"]:
                result["reason"] = (
                    f"Maximum loan limit reached ({user.max_books_allowed} books)"
                )
            return result

    # ----------------- queries -----------------

    def get_loan(self, loan_id, user_id):
        with self.session_factory() as session:
            loan = self.loans.get(session, loan_id)
            if not loan:
                raise LoanNotFound(loan_id)
            user = self.users.get(session, user_id)
            if not user:
                raise UserNotFound(user_id)
            if not user.is_librarian and loan.user_id != user_id:
                raise NotAuthorized(user_id, loan_id)
            return loan

    def list_user_loans(self, user_id, status=None, page=1, limit=None):
        page, limit, offset = page_window(
            page, limit, self.default_page_size, self.max_page_size
        )
        with self.session_factory() as session:
            loans, total = self.loans.list_by_user(
                session, user_id, status=status, limit=limit, offset=offset
            )
        return page_result("loans", loans, total, page, limit)

    def list_loans(self, status=None, user_id=None, book_id=None, overdue_only=False,
                   page=1, limit=None, sort_by="loan_date", sort_order="DESC"):
        page, limit, offset = page_window(
            page, limit, self.default_page_size, self.max_page_size
        )
        with self.session_factory() as session:
            loans, total = self.loans.find_all(
                session,
                self.clock(),
                status=status,
                user_id=user_id,
                book_id=book_id,
                overdue_only=bool(overdue_only),
                limit=limit,
                offset=offset,
                sort_by=sort_by,
                sort_order=sort_order,
            )
        return page_result("loans", loans, total, page, limit)

    def get_overdue_loans(self, limit=50):
        with self.session_factory() as session:
            return self.loans.list_overdue(session, self.clock(), limit=limit)

    def get_statistics(self):
        with self.session_factory() as session:
            return self.loans.statistics(session, self.clock())

    def get_member_summary(self, user_id):
        with self.session_factory() as session:
            summary = self.loans.member_summary(session, user_id)
        if summary["last_loan_date"] is not None:
            summary["last_loan_date"] = summary["last_loan_date"].isoformat()
        return summary

    def get_most_borrowed_books(self, limit=10, period_days=30):
        limit = min(max(1, int(limit)), 50)
        period_days = max(1, int(period_days))
        since = self.clock() - timedelta(days=period_days)
        with self.session_factory() as session:
            return self.loans.most_borrowed_books(session, since, limit=limit)
