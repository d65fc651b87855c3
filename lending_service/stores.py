"""Record stores for users, books, categories and loans.

Stores are stateless: they are built once at start-up and every method takes
the caller's ``Session`` so that an engine operation can run several store
calls inside one transaction.
"""

from dataclasses import dataclass, fields, replace
from datetime import timedelta

from sqlalchemy import and_, case, distinct, func, or_, select, update
from sqlalchemy.orm import joinedload

from .models import (
    Book,
    Category,
    Loan,
    User,
    book_categories,
    LOAN_ACTIVE,
    LOAN_OVERDUE,
    LOAN_RETURNED,
    OUTSTANDING_STATUSES,
    utcnow,
)


class _Unset:
    def __repr__(self):
        return "UNSET"


UNSET = _Unset()


class _Patch:
    """Explicit update struct; fields left as UNSET are not touched."""

    def changes(self):
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    def __bool__(self):
        return bool(self.changes())


@dataclass(frozen=True)
class LoanPatch(_Patch):
    due_date: object = UNSET
    return_date: object = UNSET
    status: object = UNSET
    notes: object = UNSET


@dataclass(frozen=True)
class BookPatch(_Patch):
    isbn: object = UNSET
    title: object = UNSET
    author: object = UNSET
    publisher: object = UNSET
    year: object = UNSET
    total_copies: object = UNSET


@dataclass(frozen=True)
class CategoryPatch(_Patch):
    name: object = UNSET
    description: object = UNSET


def _apply(session, row, patch):
    for name, value in patch.changes().items():
        setattr(row, name, value)
    session.flush()
    return row


# ----------------- users -----------------

class UserStore:
    def get(self, session, user_id):
        return session.get(User, user_id)

    def get_by_email(self, session, email):
        q = select(User).where(func.lower(User.email) == email.lower())
        return session.execute(q).scalar_one_or_none()

    def create(self, session, name, email, role, max_books_allowed):
        user = User(
            name=name,
            email=email,
            role=role,
            max_books_allowed=max_books_allowed,
        )
        session.add(user)
        session.flush()
        return user


# ----------------- books -----------------

class BookStore:
    def get(self, session, book_id):
        return session.get(Book, book_id)

    def get_for_update(self, session, book_id):
        q = select(Book).where(Book.id == book_id).with_for_update()
        return session.execute(q).scalar_one_or_none()

    def get_by_isbn(self, session, isbn):
        q = select(Book).where(Book.isbn == isbn)
        return session.execute(q).scalar_one_or_none()

    def create(self, session, **values):
        book = Book(**values)
        session.add(book)
        session.flush()
        return book

    def update(self, session, book, patch):
        """Apply ``patch``; None when the new total is below the copies on loan."""
        if patch.total_copies is not UNSET:
            if self.resize(session, book.id, patch.total_copies) is None:
                return None
            patch = replace(patch, total_copies=UNSET)
        return _apply(session, book, patch)

    def delete(self, session, book):
        session.delete(book)
        session.flush()

    def search(self, session, search=None, author=None, category=None,
               available_only=False, limit=20, offset=0):
        q = select(Book)
        if search:
            like = f"%{search}%"
            q = q.where(
                or_(
                    Book.title.ilike(like),
                    Book.author.ilike(like),
                    Book.isbn.ilike(like),
                )
            )
        if author:
            q = q.where(Book.author.ilike(f"%{author}%"))
        if category:
            q = q.where(Book.categories.any(Category.name == category))
        if available_only:
            q = q.where(Book.available_copies > 0)
        return self._page(session, q, limit, offset)

    def find_by_category(self, session, category_id, available_only=False,
                         limit=20, offset=0):
        q = select(Book).where(Book.categories.any(Category.id == category_id))
        if available_only:
            q = q.where(Book.available_copies > 0)
        return self._page(session, q, limit, offset)

    def _page(self, session, q, limit, offset):
        total = session.execute(
            select(func.count()).select_from(q.subquery())
        ).scalar_one()
        books = session.execute(
            q.order_by(Book.title.asc(), Book.id.asc()).limit(limit).offset(offset)
        ).scalars().all()
        return books, total

    def recently_added(self, session, limit=10, available_only=False):
        q = select(Book)
        if available_only:
            q = q.where(Book.available_copies > 0)
        q = q.order_by(Book.created_at.desc(), Book.id.desc()).limit(limit)
        return session.execute(q).scalars().all()

    def statistics(self, session, now):
        month_ago = now - timedelta(days=30)
        q = select(
            func.count(Book.id).label("total_books"),
            func.coalesce(func.sum(Book.total_copies), 0).label("total_copies"),
            func.coalesce(func.sum(Book.available_copies), 0).label("available_copies"),
            func.count(case((Book.available_copies > 0, 1))).label("available_books"),
            func.count(case((Book.available_copies == 0, 1))).label("unavailable_books"),
            func.count(distinct(Book.author)).label("unique_authors"),
            func.count(distinct(Book.publisher)).label("unique_publishers"),
            func.avg(Book.year).label("avg_publication_year"),
            func.count(case((Book.created_at >= month_ago, 1))).label("new_books_this_month"),
        )
        stats = dict(session.execute(q).one()._mapping)
        if stats["avg_publication_year"] is not None:
            stats["avg_publication_year"] = round(float(stats["avg_publication_year"]), 1)
        return stats

    def resize(self, session, book_id, total_copies):
        """Set ``total_copies`` keeping the number of copies on loan unchanged.

        Refuses (returns None) when more copies are on loan than the new
        total; the available count moves by the same delta as the total.
        """
        stmt = (
            update(Book)
            .where(Book.id == book_id)
            .where(Book.total_copies - Book.available_copies <= total_copies)
            .values(
                total_copies=total_copies,
                available_copies=Book.available_copies + (total_copies - Book.total_copies),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if session.execute(stmt).rowcount == 0:
            return None
        return session.get(Book, book_id, populate_existing=True)

    def adjust_available_copies(self, session, book_id, delta):
        """Atomically add ``delta`` to the available count.

        The bounds check lives in the UPDATE itself, so two racing callers can
        never push the count outside ``[0, total_copies]``. Returns the
        refreshed book, or None when no row satisfied the bounds.
        """
        stmt = (
            update(Book)
            .where(Book.id == book_id)
            .where(Book.available_copies + delta >= 0)
            .where(Book.available_copies + delta <= Book.total_copies)
            .values(
                available_copies=Book.available_copies + delta,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount == 0:
            return None
        return session.get(Book, book_id, populate_existing=True)


# ----------------- categories -----------------

def _book_counts():
    return (
        select(
            Category.id.label("category_id"),
            func.count(book_categories.c.book_id).label("book_count"),
        )
        .outerjoin(book_categories, book_categories.c.category_id == Category.id)
        .group_by(Category.id)
        .subquery()
    )


class CategoryStore:
    def get(self, session, category_id):
        return session.get(Category, category_id)

    def get_by_name(self, session, name):
        q = select(Category).where(func.lower(Category.name) == name.lower())
        return session.execute(q).scalar_one_or_none()

    def get_many(self, session, category_ids):
        if not category_ids:
            return []
        q = select(Category).where(Category.id.in_(category_ids)).order_by(Category.name)
        return session.execute(q).scalars().all()

    def create(self, session, name, description=None):
        category = Category(name=name, description=description)
        session.add(category)
        session.flush()
        return category

    def update(self, session, category, patch):
        return _apply(session, category, patch)

    def delete(self, session, category):
        session.delete(category)
        session.flush()

    def book_count(self, session, category_id):
        q = (
            select(func.count())
            .select_from(book_categories)
            .where(book_categories.c.category_id == category_id)
        )
        return session.execute(q).scalar_one()

    def find_all(self, session, search=None, limit=20, offset=0):
        """Categories by name with their book counts, as (category, count) pairs."""
        counts = _book_counts()
        q = select(Category, counts.c.book_count).join(
            counts, counts.c.category_id == Category.id
        )
        if search:
            like = f"%{search}%"
            q = q.where(or_(Category.name.ilike(like), Category.description.ilike(like)))

        total = session.execute(
            select(func.count()).select_from(q.subquery())
        ).scalar_one()
        rows = session.execute(
            q.order_by(Category.name.asc()).limit(limit).offset(offset)
        ).all()
        return [(category, count) for category, count in rows], total

    def popular(self, session, limit=10):
        counts = _book_counts()
        q = (
            select(Category, counts.c.book_count)
            .join(counts, counts.c.category_id == Category.id)
            .where(counts.c.book_count > 0)
            .order_by(counts.c.book_count.desc(), Category.name.asc())
            .limit(limit)
        )
        return [(category, count) for category, count in session.execute(q).all()]

    def options(self, session):
        q = select(Category.id, Category.name).order_by(Category.name.asc())
        return [dict(row._mapping) for row in session.execute(q)]

    def statistics(self, session):
        counts = _book_counts()
        q = select(
            func.count(counts.c.category_id).label("total_categories"),
            func.count(case((counts.c.book_count > 0, 1))).label("categories_with_books"),
            func.avg(counts.c.book_count).label("avg_books_per_category"),
        )
        stats = dict(session.execute(q).one()._mapping)
        if stats["avg_books_per_category"] is not None:
            stats["avg_books_per_category"] = round(float(stats["avg_books_per_category"]), 2)
        return stats


# ----------------- loans -----------------

LOAN_SORT_FIELDS = {
    "loan_date": Loan.loan_date,
    "due_date": Loan.due_date,
    "return_date": Loan.return_date,
    "status": Loan.status,
    "created_at": Loan.created_at,
}


def _overdue_clause(now):
    return or_(
        Loan.status == LOAN_OVERDUE,
        and_(Loan.status == LOAN_ACTIVE, Loan.due_date < now),
    )


class LoanStore:
    def get(self, session, loan_id, with_relations=True):
        options = [joinedload(Loan.book), joinedload(Loan.user)] if with_relations else []
        return session.get(Loan, loan_id, options=options, populate_existing=True)

    def create(self, session, book_id, user_id, loan_date, due_date, notes=None):
        loan = Loan(
            book_id=book_id,
            user_id=user_id,
            loan_date=loan_date,
            due_date=due_date,
            status=LOAN_ACTIVE,
            notes=notes,
        )
        session.add(loan)
        session.flush()
        return loan

    def update(self, session, loan, patch):
        return _apply(session, loan, patch)

    def list_outstanding_by_user(self, session, user_id):
        """Active and overdue loans: everything occupying a borrowing slot."""
        q = (
            select(Loan)
            .where(Loan.user_id == user_id)
            .where(Loan.status.in_(OUTSTANDING_STATUSES))
            .order_by(Loan.due_date.asc())
        )
        return session.execute(q).scalars().all()

    def find_outstanding_user_book_loan(self, session, user_id, book_id):
        q = (
            select(Loan)
            .where(Loan.user_id == user_id)
            .where(Loan.book_id == book_id)
            .where(Loan.status.in_(OUTSTANDING_STATUSES))
        )
        return session.execute(q).scalars().first()

    def mark_overdue(self, session, now):
        stmt = (
            update(Loan)
            .where(Loan.status == LOAN_ACTIVE)
            .where(Loan.due_date < now)
            .values(status=LOAN_OVERDUE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount

    def list_overdue(self, session, now, limit=50):
        """Swept overdue loans plus active ones already past due."""
        q = (
            select(Loan)
            .options(joinedload(Loan.book), joinedload(Loan.user))
            .where(_overdue_clause(now))
            .order_by(Loan.due_date.asc())
            .limit(limit)
        )
        return session.execute(q).scalars().all()

    def list_by_user(self, session, user_id, status=None, limit=20, offset=0):
        q = select(Loan).where(Loan.user_id == user_id)
        if status:
            q = q.where(Loan.status == status)
        total = session.execute(
            select(func.count()).select_from(q.subquery())
        ).scalar_one()
        loans = session.execute(
            q.options(joinedload(Loan.book))
            .order_by(Loan.loan_date.desc(), Loan.id.desc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return loans, total

    def find_all(self, session, now, status=None, user_id=None, book_id=None,
                 overdue_only=False, limit=20, offset=0, sort_by="loan_date",
                 sort_order="DESC"):
        q = select(Loan)
        if status:
            q = q.where(Loan.status == status)
        if user_id:
            q = q.where(Loan.user_id == user_id)
        if book_id:
            q = q.where(Loan.book_id == book_id)
        if overdue_only:
            q = q.where(_overdue_clause(now))

        total = session.execute(
            select(func.count()).select_from(q.subquery())
        ).scalar_one()

        column = LOAN_SORT_FIELDS.get(sort_by, Loan.loan_date)
        ordering = column.asc() if str(sort_order).upper() == "ASC" else column.desc()
        loans = session.execute(
            q.options(joinedload(Loan.book), joinedload(Loan.user))
            .order_by(ordering, Loan.id.asc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return loans, total

    def statistics(self, session, now):
        month_ago = now - timedelta(days=30)
        q = select(
            func.count(Loan.id).label("total_loans"),
            func.count(case((Loan.status == LOAN_ACTIVE, 1))).label("active_loans"),
            func.count(case((Loan.status == LOAN_RETURNED, 1))).label("returned_loans"),
            func.count(case((Loan.status == LOAN_OVERDUE, 1))).label("overdue_loans"),
            func.count(
                case((and_(Loan.status == LOAN_ACTIVE, Loan.due_date < now), 1))
            ).label("newly_overdue"),
            func.count(case((Loan.loan_date >= month_ago, 1))).label("loans_this_month"),
            func.count(distinct(Loan.user_id)).label("active_borrowers"),
            func.count(distinct(Loan.book_id)).label("borrowed_books"),
        )
        return dict(session.execute(q).one()._mapping)

    def member_summary(self, session, user_id):
        q = select(
            func.count(Loan.id).label("total_loans"),
            func.count(case((Loan.status == LOAN_ACTIVE, 1))).label("active_loans"),
            func.count(case((Loan.status == LOAN_RETURNED, 1))).label("returned_loans"),
            func.count(case((Loan.status == LOAN_OVERDUE, 1))).label("overdue_loans"),
            func.max(Loan.loan_date).label("last_loan_date"),
            func.count(distinct(Loan.book_id)).label("unique_books_borrowed"),
        ).where(Loan.user_id == user_id)
        return dict(session.execute(q).one()._mapping)

    def most_borrowed_books(self, session, since, limit=10):
        borrow_count = func.count(Loan.id).label("borrow_count")
        q = (
            select(Book.id, Book.title, Book.author, Book.isbn, borrow_count)
            .join(Loan, Loan.book_id == Book.id)
            .where(Loan.loan_date >= since)
            .group_by(Book.id, Book.title, Book.author, Book.isbn)
            .order_by(borrow_count.desc(), Book.title.asc())
            .limit(limit)
        )
        return [dict(row._mapping) for row in session.execute(q)]
