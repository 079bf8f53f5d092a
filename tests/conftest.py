import sqlite3
from contextlib import contextmanager
from datetime import datetime

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

import models as M
from circulation import Caller, CirculationCoordinator
from clock import FixedClock
from db import Base, make_engine
from registry import BookRegistry

START = datetime(2025, 1, 1, 9, 0, 0)

LIBRARIAN = Caller(user_id=7, role="librarian")
ADMIN = Caller(user_id=1, role="admin")


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'circulation.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def coordinator(db, clock):
    return CirculationCoordinator(db, clock)


# seed helpers hand back ids only, so no test session sits on an open transaction

@pytest.fixture
def make_book(session_factory):
    counter = iter(range(1, 1000))

    def _make(title=None, status="available"):
        with session_factory() as s:
            b = BookRegistry(s).create(title or f"Book {next(counter)}", status=status)
            book_id = b.book_id
            s.commit()
        return book_id

    return _make


@pytest.fixture
def make_reader(session_factory):
    counter = iter(range(1, 1000))

    def _make(name="Ann Reader"):
        n = next(counter)
        with session_factory() as s:
            r = M.Reader(reader_no=f"R-{n:04d}", name=name)
            s.add(r)
            s.flush()
            reader_id = r.reader_id
            s.commit()
        return reader_id

    return _make


@pytest.fixture
def book_id(make_book):
    return make_book("Dune")


@pytest.fixture
def reader_id(make_reader):
    return make_reader()


def open_loan_count(session, book_id):
    return session.scalar(
        select(func.count()).select_from(M.Loan)
        .where(M.Loan.book_id == book_id, M.Loan.status.in_(M.OPEN_LOAN_STATUSES))
    )


def assert_book_invariant(session):
    """borrowed <=> exactly one open loan, for every book."""
    for book in session.scalars(select(M.Book).execution_options(populate_existing=True)):
        n = open_loan_count(session, book.book_id)
        assert n <= 1
        if book.status in ("available", "borrowed"):
            assert (book.status == "borrowed") == (n == 1), book.book_id


@contextmanager
def failing_row(engine, statement_prefix, row_id):
    """Make the driver raise on statements starting with statement_prefix that
    bind row_id, as a locked or corrupt row would."""

    def _before(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(statement_prefix.upper()) and any(
            type(p) is int and p == row_id for p in (parameters or ())
        ):
            raise OperationalError(statement, parameters, sqlite3.OperationalError(f"row {row_id} is locked"))

    event.listen(engine, "before_cursor_execute", _before)
    try:
        yield
    finally:
        event.remove(engine, "before_cursor_execute", _before)
