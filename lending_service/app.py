import os
import logging
from functools import wraps

from flask import Blueprint, Flask, abort, current_app, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from werkzeug.exceptions import HTTPException

from .availability import AvailabilityManager
from .catalog import CatalogService
from .config import Config
from .errors import ErrorKind, LendingError
from .loans import LoanService
from .models import Base, utcnow
from .schemas import (
    AllLoansQuery,
    BookCreate,
    BookSearchQuery,
    BooksByCategoryQuery,
    BookUpdate,
    BorrowRequest,
    CategoryCreate,
    CategoryListQuery,
    CategorySearchQuery,
    CategoryUpdate,
    ForceReturnRequest,
    MostBorrowedQuery,
    OverdueQuery,
    PopularCategoriesQuery,
    RecentBooksQuery,
    RenewRequest,
    ReturnRequest,
    UserCreate,
    UserLoansQuery,
)
from .stores import BookStore, CategoryStore, LoanStore, UserStore

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.LIMIT_EXCEEDED: 400,
    ErrorKind.INVALID_STATE: 400,
    ErrorKind.VALIDATION: 400,
}

api = Blueprint("lending", __name__)


# ----------------- DB setup -----------------

def make_engine(uri, echo=False):
    engine = create_engine(uri, echo=echo, future=True)

    if engine.dialect.name == "sqlite":
        # pysqlite starts transactions on its own; hand that over to SQLAlchemy
        # so SAVEPOINTs work, and switch on foreign keys.
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


def create_app(config_object=Config, clock=utcnow):
    app = Flask(__name__)
    app.config.from_object(config_object)
    CORS(app)

    logging.basicConfig(level=app.config.get("LOG_LEVEL", "INFO"))

    engine = make_engine(
        app.config["SQLALCHEMY_DATABASE_URI"],
        echo=app.config.get("SQLALCHEMY_ECHO", False),
    )
    # Create tables if not present
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    users = UserStore()
    books = BookStore()
    categories = CategoryStore()
    loans = LoanStore()
    availability = AvailabilityManager(books)

    app.extensions["lending"] = {
        "engine": engine,
        "session_factory": SessionLocal,
        "availability": availability,
        "catalog": CatalogService(
            SessionLocal,
            users,
            books,
            categories,
            clock=clock,
            max_books_per_member=app.config["MAX_BOOKS_PER_MEMBER"],
            default_page_size=app.config["DEFAULT_PAGE_SIZE"],
            max_page_size=app.config["MAX_PAGE_SIZE"],
        ),
        "loans": LoanService(
            SessionLocal,
            users,
            loans,
            availability,
            clock=clock,
            default_loan_period_days=app.config["DEFAULT_LOAN_PERIOD_DAYS"],
            default_extension_days=app.config["DEFAULT_EXTENSION_DAYS"],
            force_return_min_note_length=app.config["FORCE_RETURN_MIN_NOTE_LENGTH"],
            default_page_size=app.config["DEFAULT_PAGE_SIZE"],
            max_page_size=app.config["MAX_PAGE_SIZE"],
        ),
    }

    app.register_blueprint(api)
    app.register_error_handler(LendingError, handle_lending_error)
    app.register_error_handler(ValidationError, handle_validation_error)
    app.register_error_handler(HTTPException, handle_http_error)
    app.register_error_handler(Exception, handle_unexpected_error)
    return app


# ----------------- error mapping -----------------

def handle_lending_error(error):
    status = STATUS_BY_KIND[error.kind]
    logger.warning("Client error %s on %s: %s", error.code, request.path, error.message)
    return jsonify(error.to_dict()), status


def handle_validation_error(error):
    return (
        jsonify(
            {
                "error": "Validation failed",
                "code": "VALIDATION_ERROR",
                "details": error.errors(include_url=False, include_context=False),
            }
        ),
        400,
    )


def handle_http_error(error):
    return jsonify({"error": error.description, "code": error.name.upper().replace(" ", "_")}), error.code


def handle_unexpected_error(error):
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"error": "Internal server error", "code": "INTERNAL_ERROR"}), 500


# ----------------- helpers -----------------

def _catalog():
    return current_app.extensions["lending"]["catalog"]


def _loans():
    return current_app.extensions["lending"]["loans"]


def _loan_json(loan, include_user=True):
    return loan.to_dict(now=_loans().clock(), include_user=include_user)


def _body():
    return request.get_json(silent=True) or {}


def _query(model):
    return model.model_validate(request.args.to_dict())


def require_api_key(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("SERVICE_API_KEY")
        sent = request.headers.get("X-API-Key")
        if expected and sent != expected:
            logger.warning("Invalid API key on %s", request.path)
            abort(401, description="Invalid or missing service API key")
        return func(*args, **kwargs)

    return wrapper


def acting_user_id():
    """The caller, as identified by the upstream gateway."""
    raw = request.headers.get("X-User-Id", "")
    try:
        return int(raw)
    except ValueError:
        abort(401, description="Missing or invalid X-User-Id header")


def require_librarian():
    user_id = acting_user_id()
    _catalog().require_librarian(user_id)
    return user_id


# ----------------- health -----------------

@api.get("/api/health")
def health():
    return jsonify({"status": "ok", "service": "lending_service"})


# ----------------- user endpoints -----------------

@api.post("/api/users")
@require_api_key
def create_user():
    data = UserCreate.model_validate(_body())
    user = _catalog().create_user(
        data.name,
        data.email,
        role=data.role,
        max_books_allowed=data.max_books_allowed,
    )
    return jsonify(user.to_dict()), 201


@api.get("/api/users/<int:user_id>")
@require_api_key
def get_user(user_id):
    _catalog().require_self_or_librarian(acting_user_id(), user_id)
    return jsonify(_catalog().get_user(user_id).to_dict())


# ----------------- book endpoints -----------------

@api.post("/api/books")
@require_api_key
def create_book():
    require_librarian()
    data = BookCreate.model_validate(_body())
    book = _catalog().create_book(**data.model_dump())
    return jsonify(book.to_dict()), 201


@api.get("/api/books")
def search_books():
    params = _query(BookSearchQuery)
    result = _catalog().search_books(**params.model_dump())
    result["books"] = [b.to_dict() for b in result["books"]]
    return jsonify(result)


@api.get("/api/books/<int:book_id>")
def get_book(book_id):
    return jsonify(_catalog().get_book(book_id).to_dict())


@api.patch("/api/books/<int:book_id>")
@require_api_key
def update_book(book_id):
    require_librarian()
    data = BookUpdate.model_validate(_body())
    book = _catalog().update_book(book_id, data.to_patch(), category_ids=data.category_ids)
    return jsonify(book.to_dict())


@api.delete("/api/books/<int:book_id>")
@require_api_key
def delete_book(book_id):
    require_librarian()
    _catalog().delete_book(book_id)
    return jsonify({"message": "Deleted"}), 200


@api.get("/api/books/<int:book_id>/availability")
def book_availability(book_id):
    lending = current_app.extensions["lending"]
    with lending["session_factory"]() as session:
        info = lending["availability"].check_availability(session, book_id)
    if info["book"] is not None:
        info["book"] = info["book"].to_dict()
    return jsonify(info)


@api.get("/api/books/popular")
def popular_books():
    params = _query(MostBorrowedQuery)
    return jsonify(_loans().get_most_borrowed_books(**params.model_dump()))


@api.get("/api/books/recent")
def recent_books():
    params = _query(RecentBooksQuery)
    books = _catalog().get_recent_books(**params.model_dump())
    return jsonify([b.to_dict() for b in books])


@api.get("/api/books/statistics")
@require_api_key
def book_statistics():
    require_librarian()
    return jsonify(_catalog().get_book_statistics())


@api.get("/api/books/category/<int:category_id>")
def books_by_category(category_id):
    params = _query(BooksByCategoryQuery)
    result = _catalog().get_books_by_category(category_id, **params.model_dump())
    result["books"] = [b.to_dict() for b in result["books"]]
    return jsonify(result)


# ----------------- category endpoints -----------------

@api.get("/api/categories")
def list_categories():
    params = _query(CategoryListQuery)
    return jsonify(_catalog().list_categories(**params.model_dump()))


@api.get("/api/categories/popular")
def popular_categories():
    params = _query(PopularCategoriesQuery)
    return jsonify(_catalog().get_popular_categories(limit=params.limit))


@api.get("/api/categories/options")
def category_options():
    return jsonify(_catalog().get_category_options())


@api.get("/api/categories/search")
def search_categories():
    params = _query(CategorySearchQuery)
    return jsonify(
        _catalog().search_categories(
            params.q,
            include_book_count=params.include_book_count,
            limit=params.limit,
        )
    )


@api.get("/api/categories/statistics")
@require_api_key
def category_statistics():
    require_librarian()
    return jsonify(_catalog().get_category_statistics())


@api.get("/api/categories/<int:category_id>")
def get_category(category_id):
    return jsonify(_catalog().get_category(category_id))


@api.post("/api/categories")
@require_api_key
def create_category():
    require_librarian()
    data = CategoryCreate.model_validate(_body())
    category = _catalog().create_category(data.name, description=data.description)
    return jsonify(category.to_dict()), 201


@api.patch("/api/categories/<int:category_id>")
@require_api_key
def update_category(category_id):
    require_librarian()
    data = CategoryUpdate.model_validate(_body())
    category = _catalog().update_category(category_id, data.to_patch())
    return jsonify(category.to_dict())


@api.delete("/api/categories/<int:category_id>")
@require_api_key
def delete_category(category_id):
    require_librarian()
    _catalog().delete_category(category_id)
    return jsonify({"message": "Deleted"}), 200


# ----------------- loan endpoints -----------------

@api.post("/api/loans/borrow")
@require_api_key
def borrow_book():
    data = BorrowRequest.model_validate(_body())
    loan = _loans().borrow_book(
        data.book_id,
        acting_user_id(),
        loan_period_days=data.loan_period_days,
        notes=data.notes,
    )
    return jsonify(_loan_json(loan, include_user=False)), 201


@api.post("/api/loans/<int:loan_id>/return")
@require_api_key
def return_book(loan_id):
    data = ReturnRequest.model_validate(_body())
    loan = _loans().return_book(
        loan_id,
        acting_user_id(),
        return_date=data.return_date,
        notes=data.notes,
    )
    return jsonify(_loan_json(loan, include_user=False))


@api.post("/api/loans/<int:loan_id>/renew")
@require_api_key
def renew_loan(loan_id):
    data = RenewRequest.model_validate(_body())
    loan = _loans().renew_loan(
        loan_id,
        acting_user_id(),
        extension_days=data.extension_days,
        notes=data.notes,
    )
    return jsonify(_loan_json(loan, include_user=False))


@api.post("/api/loans/<int:loan_id>/force-return")
@require_api_key
def force_return_book(loan_id):
    librarian_id = require_librarian()
    data = ForceReturnRequest.model_validate(_body())
    loan = _loans().force_return_book(
        loan_id,
        librarian_id,
        return_date=data.return_date,
        notes=data.notes,
    )
    return jsonify(_loan_json(loan))


@api.get("/api/loans/my-loans")
@require_api_key
def my_loans():
    params = _query(UserLoansQuery)
    result = _loans().list_user_loans(acting_user_id(), **params.model_dump())
    result["loans"] = [_loan_json(l, include_user=False) for l in result["loans"]]
    return jsonify(result)


@api.get("/api/loans")
@require_api_key
def list_loans():
    require_librarian()
    params = _query(AllLoansQuery)
    result = _loans().list_loans(**params.model_dump())
    result["loans"] = [_loan_json(l) for l in result["loans"]]
    return jsonify(result)


@api.get("/api/loans/overdue")
@require_api_key
def overdue_loans():
    require_librarian()
    params = _query(OverdueQuery)
    loans = _loans().get_overdue_loans(limit=params.limit)
    return jsonify([_loan_json(l) for l in loans])


@api.get("/api/loans/statistics")
@require_api_key
def loan_statistics():
    require_librarian()
    return jsonify(_loans().get_statistics())


@api.get("/api/loans/most-borrowed")
@require_api_key
def most_borrowed_books():
    require_librarian()
    params = _query(MostBorrowedQuery)
    return jsonify(_loans().get_most_borrowed_books(**params.model_dump()))


@api.post("/api/loans/update-overdue")
@require_api_key
def update_overdue_loans():
    """
    Overdue sweep; triggered from cron through the sweep client.
    """
    require_librarian()
    count = _loans().update_overdue_loans()
    return jsonify({"updated_count": count})


@api.get("/api/loans/eligibility")
@api.get("/api/loans/eligibility/<int:user_id>")
@require_api_key
def borrowing_eligibility(user_id=None):
    acting = acting_user_id()
    target = acting if user_id is None else user_id
    _catalog().require_self_or_librarian(acting, target)
    return jsonify(_loans().check_borrowing_eligibility(target))


@api.get("/api/loans/member-summary")
@api.get("/api/loans/member-summary/<int:user_id>")
@require_api_key
def member_summary(user_id=None):
    acting = acting_user_id()
    target = acting if user_id is None else user_id
    _catalog().require_self_or_librarian(acting, target)
    return jsonify(_loans().get_member_summary(target))


@api.get("/api/loans/<int:loan_id>")
@require_api_key
def get_loan(loan_id):
    acting = acting_user_id()
    loan = _loans().get_loan(loan_id, acting)
    return jsonify(_loan_json(loan))


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5001"))
    create_app().run(host="0.0.0.0", port=port, debug=os.getenv("FLASK_DEBUG") == "1")
