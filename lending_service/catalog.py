import logging

from .errors import (
    BookNotFound,
    CategoryInUse,
    CategoryNotFound,
    CopiesInUse,
    DuplicateCategory,
    DuplicateEmail,
    DuplicateIsbn,
    LibrarianRequired,
    NotAuthorized,
    UserNotFound,
    ValidationFailed,
)
from .loans import page_result, page_window
from .models import ROLE_MEMBER, ROLES, utcnow
from .stores import CategoryPatch

logger = logging.getLogger(__name__)

CATEGORY_NAME_MAX = 100
CATEGORY_DESCRIPTION_MAX = 500


class CatalogService:
    """User, book and category administration around the lending engine."""

    def __init__(self, session_factory, users, books, categories, clock=utcnow,
                 max_books_per_member=10, default_page_size=20, max_page_size=100):
        self.session_factory = session_factory
        self.users = users
        self.books = books
        self.categories = categories
        self.clock = clock
        self.max_books_per_member = max_books_per_member
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    # ----------------- users -----------------

    def create_user(self, name, email, role=ROLE_MEMBER, max_books_allowed=None):
        if role not in ROLES:
            raise ValidationFailed("role", "Role must be one of: %s" % ", ".join(ROLES))
        if max_books_allowed is None:
            max_books_allowed = self.max_books_per_member
        if max_books_allowed < 0:
            raise ValidationFailed("max_books_allowed", "Borrowing limit cannot be negative")

        with self.session_factory.begin() as session:
            if self.users.get_by_email(session, email):
                raise DuplicateEmail(email)
            user = self.users.create(session, name, email, role, max_books_allowed)
            logger.info("Created user %s role=%s max_books=%s", user.id, role, max_books_allowed)
            return user

    def get_user(self, user_id):
        with self.session_factory() as session:
            user = self.users.get(session, user_id)
            if not user:
                raise UserNotFound(user_id)
            return user

    def require_librarian(self, user_id):
        with self.session_factory() as session:
            user = self.users.get(session, user_id)
        if not user or not user.is_librarian:
            raise LibrarianRequired(user_id)
        return user

    def require_self_or_librarian(self, acting_user_id, target_user_id):
        user = self.get_user(acting_user_id)
        if acting_user_id != target_user_id and not user.is_librarian:
            raise NotAuthorized(acting_user_id)
        return user

    # ----------------- books -----------------

    def _load_categories(self, session, category_ids):
        wanted = list(dict.fromkeys(category_ids))
        found = self.categories.get_many(session, wanted)
        missing = set(wanted) - {c.id for c in found}
        if missing:
            raise CategoryNotFound(min(missing))
        return found

    def create_book(self, isbn, title, author, publisher=None, year=None,
                    total_copies=1, available_copies=None, category_ids=None):
        if total_copies < 1:
            raise ValidationFailed("total_copies", "Total copies must be at least 1")
        if available_copies is None:
            available_copies = total_copies
        if available_copies < 0 or available_copies > total_copies:
            raise ValidationFailed(
                "available_copies", "Available copies must be between 0 and total copies"
            )

        with self.session_factory.begin() as session:
            if self.books.get_by_isbn(session, isbn):
                raise DuplicateIsbn(isbn)
            book = self.books.create(
                session,
                isbn=isbn,
                title=title,
                author=author,
                publisher=publisher,
                year=year,
                total_copies=total_copies,
                available_copies=available_copies,
                categories=self._load_categories(session, category_ids or []),
                created_at=self.clock(),
            )
            logger.info("Book created book=%s isbn=%s title=%s", book.id, isbn, title)
            return book

    def update_book(self, book_id, patch, category_ids=None):
        """
        Update book details. The available count is never written directly:
        a new total shifts it by the same delta so copies on loan stay on loan.
        """
        with self.session_factory.begin() as session:
            book = self.books.get_for_update(session, book_id)
            if not book:
                raise BookNotFound(book_id)

            changes = patch.changes()
            isbn = changes.get("isbn")
            if isbn and isbn != book.isbn and self.books.get_by_isbn(session, isbn):
                raise DuplicateIsbn(isbn)
            if "total_copies" in changes and changes["total_copies"] < 1:
                raise ValidationFailed("total_copies", "Total copies must be at least 1")

            borrowed = book.total_copies - book.available_copies
            if self.books.update(session, book, patch) is None:
                raise CopiesInUse(
                    book_id,
                    borrowed,
                    message="Cannot reduce total copies below currently "
                            "borrowed copies (%d)" % borrowed,
                )

            if category_ids is not None:
                book.categories = self._load_categories(session, category_ids)
                session.flush()
                changes["categories"] = category_ids

            logger.info("Book updated book=%s fields=%s", book_id, sorted(changes))
            return book

    def delete_book(self, book_id):
        with self.session_factory.begin() as session:
            book = self.books.get_for_update(session, book_id)
            if not book:
                raise BookNotFound(book_id)
            borrowed = book.total_copies - book.available_copies
            if borrowed > 0:
                raise CopiesInUse(book_id, borrowed)
            self.books.delete(session, book)
            logger.info("Book deleted book=%s title=%s", book_id, book.title)
        return True

    def get_book(self, book_id):
        with self.session_factory() as session:
            book = self.books.get(session, book_id)
            if not book:
                raise BookNotFound(book_id)
            return book

    def search_books(self, search=None, author=None, category=None,
                     available_only=False, page=1, limit=None):
        page, limit, offset = page_window(
            page, limit, self.default_page_size, self.max_page_size
        )
        with self.session_factory() as session:
            books, total = self.books.search(
                session,
                search=search,
                author=author,
                category=category,
                available_only=available_only,
                limit=limit,
                offset=offset,
            )
        return page_result("books", books, total, page, limit)

    def get_books_by_category(self, category_id, available_only=False, page=1, limit=None):
        page, limit, offset = page_window(
            page, limit, self.default_page_size, self.max_page_size
        )
        with self.session_factory() as session:
            if not self.categories.get(session, category_id):
                raise CategoryNotFound(category_id)
            books, total = self.books.find_by_category(
                session,
                category_id,
                available_only=available_only,
                limit=limit,
                offset=offset,
            )
        return page_result("books", books, total, page, limit)

    def get_recent_books(self, limit=10, available_only=False):
        limit = min(max(1, int(limit)), 50)
        with self.session_factory() as session:
            return self.books.recently_added(session, limit=limit, available_only=available_only)

    def get_book_statistics(self):
        with self.session_factory() as session:
            return self.books.statistics(session, self.clock())

    # ----------------- categories -----------------

    def _clean_name(self, name):
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("name", "Category name is required")
        if len(name) > CATEGORY_NAME_MAX:
            raise ValidationFailed(
                "name", "Category name must be less than %d characters" % CATEGORY_NAME_MAX
            )
        return name

    def _clean_description(self, description):
        description = (description or "").strip() or None
        if description and len(description) > CATEGORY_DESCRIPTION_MAX:
            raise ValidationFailed(
                "description",
                "Category description must be less than %d characters"
                % CATEGORY_DESCRIPTION_MAX,
            )
        return description

    def create_category(self, name, description=None):
        name = self._clean_name(name)
        description = self._clean_description(description)

        with self.session_factory.begin() as session:
            if self.categories.get_by_name(session, name):
                raise DuplicateCategory(name)
            category = self.categories.create(session, name, description)
            logger.info("Category created category=%s name=%s", category.id, name)
            return category

    def update_category(self, category_id, patch):
        changes = patch.changes()
        if "name" in changes:
            changes["name"] = self._clean_name(changes["name"])
        if "description" in changes:
            changes["description"] = self._clean_description(changes["description"])

        with self.session_factory.begin() as session:
            category = self.categories.get(session, category_id)
            if not category:
                raise CategoryNotFound(category_id)
            name = changes.get("name")
            if name and name.lower() != category.name.lower():
                if self.categories.get_by_name(session, name):
                    raise DuplicateCategory(name)

            self.categories.update(session, category, CategoryPatch(**changes))
            logger.info("Category updated category=%s fields=%s", category_id, sorted(changes))
            return category

    def delete_category(self, category_id):
        with self.session_factory.begin() as session:
            category = self.categories.get(session, category_id)
            if not category:
                raise CategoryNotFound(category_id)
            book_count = self.categories.book_count(session, category_id)
            if book_count > 0:
                raise CategoryInUse(category_id, book_count)
            self.categories.delete(session, category)
            logger.info("Category deleted category=%s name=%s", category_id, category.name)
        return True

    def get_category(self, category_id):
        with self.session_factory() as session:
            category = self.categories.get(session, category_id)
            if not category:
                raise CategoryNotFound(category_id)
            return category.to_dict(book_count=self.categories.book_count(session, category_id))

    def list_categories(self, search=None, include_book_count=False, page=1, limit=None):
        page, limit, offset = page_window(
            page, limit, self.default_page_size, self.max_page_size
        )
        with self.session_factory() as session:
            rows, total = self.categories.find_all(
                session, search=search, limit=limit, offset=offset
            )
        items = [
            category.to_dict(book_count=count if include_book_count else None)
            for category, count in rows
        ]
        return page_result("categories", items, total, page, limit)

    def search_categories(self, term, include_book_count=False, limit=20):
        term = (term or "").strip()
        if not term:
            raise ValidationFailed("q", "Search term is required")
        if len(term) < 2:
            raise ValidationFailed("q", "Search term must be at least 2 characters")

        limit = min(max(1, int(limit)), self.max_page_size)
        with self.session_factory() as session:
            rows, total = self.categories.find_all(session, search=term, limit=limit)
        return {
            "categories": [
                category.to_dict(book_count=count if include_book_count else None)
                for category, count in rows
            ],
            "total": total,
            "search_term": term,
        }

    def get_popular_categories(self, limit=10):
        limit = min(max(1, int(limit)), 50)
        with self.session_factory() as session:
            rows = self.categories.popular(session, limit=limit)
        return [category.to_dict(book_count=count) for category, count in rows]

    def get_category_options(self):
        with self.session_factory() as session:
            return self.categories.options(session)

    def get_category_statistics(self):
        with self.session_factory() as session:
            return self.categories.statistics(session)
