from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Enum, Text, DECIMAL, ForeignKey, Computed, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base

# sqlite only autoincrements INTEGER PRIMARY KEY
Id = BigInteger().with_variant(Integer, "sqlite")

BOOK_STATUSES = ("available", "borrowed", "maintenance", "lost")
LOAN_STATUSES = ("active", "overdue", "returned")
OPEN_LOAN_STATUSES = ("active", "overdue")
FINE_STATUSES = ("pending", "paid", "waived")

# Reader rows are reference data owned elsewhere; circulation only checks existence
class Reader(Base):
    __tablename__ = "reader"
    reader_id = Column(Id, primary_key=True, autoincrement=True)
    reader_no = Column(String(30), unique=True, nullable=False)
    name = Column(String(50), nullable=False)
    email = Column(String(120))
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    loans = relationship("Loan", back_populates="reader")

class Book(Base):
    __tablename__ = "book"
    book_id = Column(Id, primary_key=True, autoincrement=True)
    isbn = Column(String(20), unique=True)
    title = Column(String(200), nullable=False)
    description = Column(Text)
    # borrowed <=> exactly one open loan; maintenance/lost are admin overrides
    status = Column(Enum(*BOOK_STATUSES, name="book_status"), nullable=False, default="available")

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    loans = relationship("Loan", back_populates="book")

class Loan(Base):
    __tablename__ = "loan"
    loan_id = Column(Id, primary_key=True, autoincrement=True)
    book_id = Column(Id, ForeignKey("book.book_id"), nullable=False)
    reader_id = Column(Id, ForeignKey("reader.reader_id"), nullable=False)
    # user_id of the staff member who processed the checkout
    staff_id = Column(Id, nullable=False)

    start_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)

    status = Column(Enum(*LOAN_STATUSES, name="loan_status"), nullable=False, default="active")

    # book_id while the loan is open, NULL once returned; uniquely indexed so a
    # second open loan for the same book cannot commit
    open_book_id = Column(
        Id,
        Computed("CASE WHEN status IN ('active', 'overdue') THEN book_id END"),
        nullable=True,
    )

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    book = relationship("Book", back_populates="loans")
    reader = relationship("Reader", back_populates="loans")
    fine = relationship("Fine", back_populates="loan", uselist=False)

    __table_args__ = (
        Index("uq_loan_open_book", "open_book_id", unique=True),
        Index("ix_loan_status_due", "status", "due_date"),
    )

class Fine(Base):
    __tablename__ = "fine"
    fine_id = Column(Id, primary_key=True, autoincrement=True)
    # one fine per loan, enforced by the database
    loan_id = Column(Id, ForeignKey("loan.loan_id"), unique=True, nullable=False)
    due_date = Column(DateTime, nullable=False)
    accumulated_amount = Column(DECIMAL(10, 2), nullable=False, default=0)
    penalty_rate = Column(DECIMAL(10, 2), nullable=False, default=1.0)
    status = Column(Enum(*FINE_STATUSES, name="fine_status"), nullable=False, default="pending")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    paid_at = Column(DateTime, nullable=True)

    loan = relationship("Loan", back_populates="fine")
