"""
Tests for CirculationCoordinator: the caller-facing operations, role checks,
and the single-holder guarantee under concurrent checkouts.
"""

import threading

import pytest
from sqlalchemy import select

import models as M
from circulation import Caller, CirculationCoordinator
from conftest import ADMIN, LIBRARIAN, assert_book_invariant, open_loan_count
from errors import AlreadyReturned, InvalidInput, NotFound, PermissionDenied, Unavailable


def reader_caller(reader_id):
    return Caller(user_id=100 + reader_id, role="reader", reader_id=reader_id)


class TestEndToEnd:
    def test_checkout_return_checkout(self, db, coordinator, book_id, make_reader):
        x, y = make_reader("Xan"), make_reader("Yu")

        loan1 = coordinator.checkout(LIBRARIAN, book_id, x)
        assert db.get(M.Book, book_id).status == "borrowed"
        assert loan1.staff_id == LIBRARIAN.user_id

        with pytest.raises(Unavailable):
            coordinator.checkout(LIBRARIAN, book_id, y)
        assert_book_invariant(db)

        coordinator.return_loan(LIBRARIAN, loan1.loan_id)
        assert db.get(M.Book, book_id).status == "available"

        loan2 = coordinator.checkout(ADMIN, book_id, y)
        assert loan2.reader_id == y
        assert loan2.staff_id == ADMIN.user_id
        assert_book_invariant(db)

    def test_return_twice(self, coordinator, book_id, reader_id):
        loan = coordinator.checkout(LIBRARIAN, book_id, reader_id)
        coordinator.return_loan(LIBRARIAN, loan.loan_id)
        with pytest.raises(AlreadyReturned):
            coordinator.return_loan(LIBRARIAN, loan.loan_id)

    def test_failed_operation_rolls_back(self, db, coordinator, book_id):
        with pytest.raises(NotFound):
            coordinator.checkout(LIBRARIAN, book_id, 999)
        assert db.scalars(select(M.Loan)).all() == []

    def test_overdue_fine_and_payment(self, db, coordinator, clock, book_id, reader_id):
        loan = coordinator.checkout(LIBRARIAN, book_id, reader_id)
        clock.advance(days=20)

        assert coordinator.accrue_fines(LIBRARIAN) == 1
        assert coordinator.accrue_fines(LIBRARIAN) == 0

        fine = db.scalar(select(M.Fine).where(M.Fine.loan_id == loan.loan_id))
        assert float(fine.accumulated_amount) == 6.0

        paid = coordinator.pay_fine(reader_caller(reader_id), fine.fine_id)
        assert paid.status == "paid"


class TestOverdueListing:
    def test_listing_sweeps_first(self, coordinator, clock, make_book, reader_id):
        a, b = make_book(), make_book()
        late = coordinator.checkout(LIBRARIAN, a, reader_id)
        clock.advance(days=10)
        coordinator.checkout(LIBRARIAN, b, reader_id)
        clock.advance(days=5)

        overdue = coordinator.list_overdue_loans(LIBRARIAN)
        assert [l.loan_id for l in overdue] == [late.loan_id]
        assert overdue[0].status == "overdue"

    def test_returned_loans_drop_out(self, coordinator, clock, book_id, reader_id):
        loan = coordinator.checkout(LIBRARIAN, book_id, reader_id)
        clock.advance(days=20)
        assert len(coordinator.list_overdue_loans(LIBRARIAN)) == 1

        coordinator.return_loan(LIBRARIAN, loan.loan_id)
        assert coordinator.list_overdue_loans(LIBRARIAN) == []


class TestPermissions:
    def test_readers_cannot_run_staff_operations(self, coordinator, book_id, reader_id):
        me = reader_caller(reader_id)
        with pytest.raises(PermissionDenied):
            coordinator.checkout(me, book_id, reader_id)
        with pytest.raises(PermissionDenied):
            coordinator.return_loan(me, 1)
        with pytest.raises(PermissionDenied):
            coordinator.list_overdue_loans(me)
        with pytest.raises(PermissionDenied):
            coordinator.accrue_fines(me)

    def test_reader_cannot_pay_someone_elses_fine(self, db, coordinator, clock, book_id, make_reader):
        owner, other = make_reader("Owner"), make_reader("Other")
        coordinator.checkout(LIBRARIAN, book_id, owner)
        clock.advance(days=16)
        coordinator.accrue_fines(LIBRARIAN)
        fine_id = db.scalar(select(M.Fine.fine_id))
        db.commit()

        with pytest.raises(PermissionDenied):
            coordinator.pay_fine(reader_caller(other), fine_id)
        assert db.get(M.Fine, fine_id).status == "pending"

        assert coordinator.pay_fine(LIBRARIAN, fine_id).status == "paid"

    def test_missing_fine_is_not_found_even_for_readers(self, coordinator, reader_id):
        with pytest.raises(NotFound):
            coordinator.pay_fine(reader_caller(reader_id), 31337)

    def test_caller_from_token(self):
        c = Caller.from_token({"sub": "lib", "role": "librarian", "user_id": 7})
        assert c.is_staff and c.user_id == 7
        with pytest.raises(InvalidInput):
            Caller.from_token({"role": "janitor"})


class TestTransactionRelease:
    """Each operation must leave the session idle so another writer is not
    blocked behind a read transaction holding the SQLite write lock."""

    def test_other_session_can_write_after_checkout(self, db, coordinator, book_id, reader_id, make_book):
        coordinator.checkout(LIBRARIAN, book_id, reader_id)
        assert not db.in_transaction()
        assert make_book()

    def test_other_session_can_write_after_return(self, db, coordinator, book_id, reader_id, make_book):
        loan = coordinator.checkout(LIBRARIAN, book_id, reader_id)
        coordinator.return_loan(LIBRARIAN, loan.loan_id)
        assert not db.in_transaction()
        assert make_book()

    def test_other_session_can_write_after_overdue_listing(self, db, coordinator, clock, book_id, reader_id,
                                                          make_book):
        coordinator.checkout(LIBRARIAN, book_id, reader_id)
        clock.advance(days=20)
        assert len(coordinator.list_overdue_loans(LIBRARIAN)) == 1
        assert not db.in_transaction()
        assert make_book()

    def test_results_stay_readable_after_release(self, coordinator, book_id, reader_id):
        loan = coordinator.checkout(LIBRARIAN, book_id, reader_id)
        assert loan.status == "active"
        assert loan.book_id == book_id


class TestConcurrency:
    @pytest.mark.parametrize("n", [2, 8])
    def test_exactly_one_concurrent_checkout_wins(self, session_factory, clock, book_id, make_reader, n):
        readers = [make_reader(f"Reader {i}") for i in range(n)]
        barrier = threading.Barrier(n)
        results = []
        lock = threading.Lock()

        def attempt(reader):
            with session_factory() as s:
                svc = CirculationCoordinator(s, clock)
                barrier.wait()
                try:
                    loan = svc.checkout(LIBRARIAN, book_id, reader)
                    outcome = ("ok", loan.loan_id)
                except Unavailable:
                    outcome = ("unavailable", None)
                except Exception as e:
                    outcome = ("error", repr(e))
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt, args=(r,)) for r in readers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        kinds = sorted(k for k, _ in results)
        assert kinds == ["ok"] + ["unavailable"] * (n - 1), results

        with session_factory() as s:
            assert open_loan_count(s, book_id) == 1
            assert s.get(M.Book, book_id).status == "borrowed"
            assert_book_invariant(s)

    def test_concurrent_accruals_never_duplicate(self, session_factory, clock, make_book, reader_id):
        book_ids = [make_book() for _ in range(3)]
        with session_factory() as s:
            svc = CirculationCoordinator(s, clock)
            for bid in book_ids:
                svc.checkout(LIBRARIAN, bid, reader_id)
        clock.advance(days=20)

        n = 4
        barrier = threading.Barrier(n)
        created = []
        lock = threading.Lock()

        def run():
            with session_factory() as s:
                barrier.wait()
                count = CirculationCoordinator(s, clock).accrue_fines(LIBRARIAN)
            with lock:
                created.append(count)

        threads = [threading.Thread(target=run) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert sum(created) == 3
        with session_factory() as s:
            loan_ids = s.scalars(select(M.Fine.loan_id)).all()
            assert len(loan_ids) == len(set(loan_ids)) == 3
