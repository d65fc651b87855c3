import logging

from .errors import AlreadyFull, BookNotFound, NotAvailable, ReservationConflict

logger = logging.getLogger(__name__)


class AvailabilityManager:
    """
    Business checks around the book store's atomic copy counter.

    A reservation takes one copy out of ``available_copies``; a release puts
    one back. The pre-checks give precise errors, the bounded UPDATE in the
    store is what actually protects the counter against concurrent callers.
    """

    def __init__(self, books):
        self.books = books

    def check_availability(self, session, book_id):
        book = self.books.get(session, book_id)
        if not book:
            return {"available": False, "book": None, "reason": "Book not found"}
        if book.available_copies <= 0:
            return {"available": False, "book": book, "reason": "No copies available"}
        return {"available": True, "book": book}

    def reserve_copy(self, session, book_id):
        book = self.books.get(session, book_id)
        if not book:
            raise BookNotFound(book_id)
        if book.available_copies <= 0:
            raise NotAvailable(book_id)

        updated = self.books.adjust_available_copies(session, book_id, -1)
        if updated is None:
            # a racing caller took the last copy between the read and the update
            raise ReservationConflict(book_id)

        logger.info(
            "Book copy reserved book=%s remaining=%s",
            book_id,
            updated.available_copies,
        )
        return updated

    def release_copy(self, session, book_id):
        book = self.books.get(session, book_id)
        if not book:
            raise BookNotFound(book_id)
        if book.available_copies >= book.total_copies:
            raise AlreadyFull(book_id)

        updated = self.books.adjust_available_copies(session, book_id, 1)
        if updated is None:
            raise AlreadyFull(book_id)

        logger.info(
            "Book copy released book=%s available=%s",
            book_id,
            updated.available_copies,
        )
        return updated
