"""
Circulation entry points.

CirculationCoordinator is the only surface callers reach: checkout, return,
overdue listing, fine accrual and fine payment. It checks the caller's role,
runs each operation in one transaction, and sweeps overdue loans before any
read that depends on overdue status.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from sqlalchemy.orm import Session

import models as M
from clock import Clock, SystemClock
from errors import InvalidInput, PermissionDenied
from fines import FineAccrual
from ledger import LoanLedger
from registry import BookRegistry
from search_sync import upsert_book

logger = logging.getLogger(__name__)

T = TypeVar("T")

STAFF_ROLES = ("librarian", "admin")


@dataclass(frozen=True)
class Caller:
    """Who is asking, as resolved by the identity service."""

    user_id: Optional[int]
    role: str
    reader_id: Optional[int] = None

    @classmethod
    def from_token(cls, payload: dict) -> "Caller":
        role = payload.get("role")
        if role not in ("reader", "librarian", "admin"):
            raise InvalidInput(f"Unknown role '{role}'")
        return cls(user_id=payload.get("user_id"), role=role, reader_id=payload.get("reader_id"))

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


class CirculationCoordinator:
    def __init__(self, db: Session, clock: Clock | None = None,
                 loan_days: int | None = None, penalty_rate: float | None = None):
        self.db = db
        self.clock = clock or SystemClock()
        self.books = BookRegistry(db)
        self.loans = LoanLedger(db, self.books, self.clock, loan_days=loan_days)
        self.fines = FineAccrual(db, self.loans, self.clock, penalty_rate=penalty_rate)

    def checkout(self, caller: Caller, book_id, reader_id) -> M.Loan:
        self._require_staff(caller)
        loan = self._in_transaction(lambda: self.loans.checkout(book_id, reader_id, caller.user_id))
        self._sync(loan.book_id)
        self._release()
        return loan

    def return_loan(self, caller: Caller, loan_id) -> M.Loan:
        self._require_staff(caller)
        loan = self._in_transaction(lambda: self.loans.return_book(loan_id))
        self._sync(loan.book_id)
        self._release()
        return loan

    def list_overdue_loans(self, caller: Caller) -> list[M.Loan]:
        self._require_staff(caller)
        self._in_transaction(self.loans.sweep_overdue)
        loans = self.loans.list_overdue()
        self._release()
        return loans

    def accrue_fines(self, caller: Caller) -> int:
        self._require_staff(caller)
        return self._in_transaction(self.fines.accrue_for_overdue_loans)

    def pay_fine(self, caller: Caller, fine_id) -> M.Fine:
        def _pay():
            fine = self.fines.require(fine_id)
            if not caller.is_staff and (caller.reader_id is None or caller.reader_id != fine.loan.reader_id):
                raise PermissionDenied("Cannot pay another reader's fine")
            return self.fines.pay_fine(fine_id)

        return self._in_transaction(_pay)

    def _in_transaction(self, fn: Callable[[], T]) -> T:
        try:
            result = fn()
            self.db.commit()
            return result
        except Exception:
            self.db.rollback()
            raise

    def _require_staff(self, caller: Caller):
        if not caller.is_staff:
            raise PermissionDenied()

    def _sync(self, book_id):
        book = self.books.get(book_id)
        if book:
            upsert_book(book)

    def _release(self):
        # reads after a commit autobegin a transaction; on SQLite that holds the write lock
        if self.db.in_transaction():
            self.db.commit()
