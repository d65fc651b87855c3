from datetime import datetime, timedelta

import pytest

from lending_service.app import create_app
from lending_service.config import Config

API_KEY = "test-service-key"


class FrozenClock:
    """Clock the tests can move forward by hand."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 1, 12, 0, 0))


@pytest.fixture
def app(tmp_path, clock):
    # Every test gets its own database file
    db_file = tmp_path / "lending_test.db"

    class TestConfig(Config):
        TESTING = True
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{db_file}"
        SERVICE_API_KEY = API_KEY
        DEFAULT_LOAN_PERIOD_DAYS = 14
        DEFAULT_EXTENSION_DAYS = 14
        MAX_BOOKS_PER_MEMBER = 10

    app = create_app(TestConfig, clock=clock)
    yield app
    app.extensions["lending"]["engine"].dispose()


@pytest.fixture
def lending(app):
    return app.extensions["lending"]


@pytest.fixture
def catalog(lending):
    return lending["catalog"]


@pytest.fixture
def loans(lending):
    return lending["loans"]


@pytest.fixture
def availability(lending):
    return lending["availability"]


@pytest.fixture
def session_factory(lending):
    return lending["session_factory"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(catalog):
    counter = {"n": 0}

    def _make(role="member", max_books_allowed=10, name=None):
        counter["n"] += 1
        n = counter["n"]
        return catalog.create_user(
            name or f"User {n}",
            f"user{n}@example.com",
            role=role,
            max_books_allowed=max_books_allowed,
        )

    return _make


@pytest.fixture
def make_book(catalog):
    counter = {"n": 0}

    def _make(total_copies=1, available_copies=None, title=None):
        counter["n"] += 1
        n = counter["n"]
        return catalog.create_book(
            isbn=f"978000000{n:04d}",
            title=title or f"Book {n}",
            author="Test Author",
            total_copies=total_copies,
            available_copies=available_copies,
        )

    return _make


@pytest.fixture
def book_copies(catalog):
    def _get(book_id):
        return catalog.get_book(book_id).available_copies

    return _get
