import logging
import math
from datetime import timedelta
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models as M
from clock import Clock
from db import settings
from errors import AlreadyPaid, NotFound
from ledger import LoanLedger

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
SECONDS_PER_DAY = 24 * 60 * 60


def days_overdue(due_date, now) -> int:
    """Whole days past due, rounding any started day up."""
    seconds = (now - due_date).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)


def fine_amount(days: int, rate) -> Decimal:
    return (Decimal(days) * Decimal(str(rate))).quantize(CENTS, rounding=ROUND_HALF_UP)


class FineAccrual:
    def __init__(self, db: Session, ledger: LoanLedger, clock: Clock,
                 penalty_rate: float | None = None, fine_due_days: int | None = None):
        self.db = db
        self.ledger = ledger
        self.clock = clock
        self.penalty_rate = settings.PENALTY_RATE if penalty_rate is None else penalty_rate
        self.fine_due_days = settings.FINE_DUE_DAYS if fine_due_days is None else fine_due_days

    def get(self, fine_id) -> M.Fine | None:
        return self.db.get(M.Fine, fine_id)

    def require(self, fine_id) -> M.Fine:
        f = self.get(fine_id)
        if not f:
            raise NotFound("fine", fine_id)
        return f

    def list_fines(self, status: str | None = None, reader_id=None) -> list[M.Fine]:
        q = select(M.Fine)
        if reader_id is not None:
            q = q.join(M.Loan, M.Loan.loan_id == M.Fine.loan_id).where(M.Loan.reader_id == reader_id)
        if status:
            q = q.where(M.Fine.status == status)
        return list(self.db.scalars(q.order_by(M.Fine.fine_id.desc())).all())

    def accrue_for_overdue_loans(self) -> int:
        """Create one pending fine for each overdue loan that has none yet.

        The outer-join filter only narrows the work. fine.loan_id is unique,
        so a concurrent accrual that inserts first makes ours fail inside its
        savepoint, and we skip that loan.
        """
        self.ledger.sweep_overdue()

        now = self.clock.now()
        rate = self.penalty_rate
        loans = self.db.scalars(
            select(M.Loan)
            .outerjoin(M.Fine, M.Fine.loan_id == M.Loan.loan_id)
            .where(M.Loan.status == "overdue", M.Fine.fine_id.is_(None))
            .order_by(M.Loan.loan_id)
        ).all()

        created = 0
        for loan in loans:
            days = days_overdue(loan.due_date, now)
            fine = M.Fine(
                loan_id=loan.loan_id,
                due_date=now + timedelta(days=self.fine_due_days),
                accumulated_amount=fine_amount(days, rate),
                penalty_rate=Decimal(str(rate)),
                status="pending",
            )
            try:
                with self.db.begin_nested():
                    self.db.add(fine)
                    self.db.flush()
            except IntegrityError:
                logger.info("Loan %s already has a fine, skipping", loan.loan_id)
                continue
            except SQLAlchemyError:
                logger.warning("Fine accrual failed for loan %s", loan.loan_id, exc_info=True)
                continue
            created += 1
            logger.info("Fine %s: loan %s, %d day(s) overdue, amount %s",
                        fine.fine_id, loan.loan_id, days, fine.accumulated_amount)

        return created

    def pay_fine(self, fine_id) -> M.Fine:
        f = self.require(fine_id)
        if f.status != "pending":
            raise AlreadyPaid(f.status)

        res = self.db.execute(
            update(M.Fine)
            .where(M.Fine.fine_id == fine_id, M.Fine.status == "pending")
            .values(status="paid", paid_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        f = self.db.get(M.Fine, fine_id, populate_existing=True)
        if res.rowcount == 0:
            raise AlreadyPaid(f.status)

        logger.info("Fine %s paid (%s)", fine_id, f.accumulated_amount)
        return f
