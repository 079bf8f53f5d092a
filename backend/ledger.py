import logging
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models as M
from clock import Clock
from db import settings
from errors import AlreadyReturned, InvalidInput, NotFound, Unavailable
from registry import BookRegistry

logger = logging.getLogger(__name__)


class LoanLedger:
    """Creates and advances loans.

    Owns two rules:
      * at most one open (active/overdue) loan per book, enforced by the
        unique index on loan.open_book_id rather than by the status pre-check
      * book status moves borrowed/available only as a side effect of
        checkout and return

    Nothing here commits; the caller owns the transaction.
    """

    def __init__(self, db: Session, registry: BookRegistry, clock: Clock,
                 loan_days: int | None = None):
        self.db = db
        self.registry = registry
        self.clock = clock
        self.loan_days = settings.LOAN_PERIOD_DAYS if loan_days is None else loan_days

    def get(self, loan_id) -> M.Loan | None:
        return self.db.get(M.Loan, loan_id)

    def require(self, loan_id) -> M.Loan:
        loan = self.get(loan_id)
        if not loan:
            raise NotFound("loan", loan_id)
        return loan

    def checkout(self, book_id, reader_id, staff_id) -> M.Loan:
        if book_id is None or reader_id is None:
            raise InvalidInput("Loan must include book_id and reader_id")
        if staff_id is None:
            raise InvalidInput("Loan must record the staff member processing it")

        book = self.registry.require(book_id, refresh=True)
        if not self.db.get(M.Reader, reader_id):
            raise NotFound("reader", reader_id)

        # fast path only; the unique index decides races
        if book.status != "available":
            raise Unavailable(book_id, book.status)

        now = self.clock.now()
        loan = M.Loan(
            book_id=book_id,
            reader_id=reader_id,
            staff_id=staff_id,
            start_date=now,
            due_date=now + timedelta(days=self.loan_days),
            status="active",
        )
        try:
            with self.db.begin_nested():
                self.db.add(loan)
                self.db.flush()
        except IntegrityError:
            logger.warning("Checkout of book %s lost to a concurrent open loan", book_id)
            raise Unavailable(book_id)

        self.registry.update_status(book_id, "borrowed")
        logger.info("Loan %s: book %s -> reader %s, due %s", loan.loan_id, book_id, reader_id, loan.due_date)
        return loan

    def return_book(self, loan_id) -> M.Loan:
        loan = self.require(loan_id)
        if loan.status == "returned":
            raise AlreadyReturned()

        now = self.clock.now()
        res = self.db.execute(
            update(M.Loan)
            .where(M.Loan.loan_id == loan_id, M.Loan.status.in_(M.OPEN_LOAN_STATUSES))
            .values(status="returned", return_date=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            # someone else returned it between our read and write
            raise AlreadyReturned()

        loan = self.db.get(M.Loan, loan_id, populate_existing=True)
        book = self.registry.require(loan.book_id, refresh=True)
        # maintenance/lost set by an admin while out on loan stay as they are
        if book.status == "borrowed":
            self.registry.update_status(book.book_id, "available")

        logger.info("Loan %s returned (book %s)", loan_id, loan.book_id)
        return loan

    def sweep_overdue(self) -> int:
        """Mark every active loan past its due date as overdue.

        Each loan is moved with its own conditional UPDATE inside a savepoint,
        so a failing row is logged and skipped without losing the others.
        Running it again right away returns 0.
        """
        now = self.clock.now()
        candidates = self.db.scalars(
            select(M.Loan.loan_id).where(M.Loan.status == "active", M.Loan.due_date < now)
        ).all()

        swept = 0
        for loan_id in candidates:
            try:
                with self.db.begin_nested():
                    res = self.db.execute(
                        update(M.Loan)
                        .where(
                            M.Loan.loan_id == loan_id,
                            M.Loan.status == "active",
                            M.Loan.due_date < now,
                        )
                        .values(status="overdue")
                        .execution_options(synchronize_session=False)
                    )
                    swept += res.rowcount
            except SQLAlchemyError:
                logger.warning("Overdue sweep skipped loan %s", loan_id, exc_info=True)

        if swept:
            logger.info("Overdue sweep marked %d loan(s)", swept)
        return swept

    def list_overdue(self) -> list[M.Loan]:
        return list(self.db.scalars(
            select(M.Loan)
            .where(M.Loan.status == "overdue")
            .order_by(M.Loan.due_date, M.Loan.loan_id)
            .execution_options(populate_existing=True)
        ).all())

    def list_loans(self, status: str | None = None, reader_id=None) -> list[M.Loan]:
        q = select(M.Loan)
        if status:
            q = q.where(M.Loan.status == status)
        if reader_id is not None:
            q = q.where(M.Loan.reader_id == reader_id)
        return list(self.db.scalars(q.order_by(M.Loan.loan_id.desc())).all())
