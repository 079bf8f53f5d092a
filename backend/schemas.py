from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, Literal

BookStatus = Literal["available", "borrowed", "maintenance", "lost"]
LoanStatus = Literal["active", "overdue", "returned"]
FineStatus = Literal["pending", "paid", "waived"]

class BookIn(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    isbn: Optional[str] = Field(default=None, max_length=20)
    description: Optional[str] = None

class BookOut(BookIn):
    book_id: int
    status: BookStatus

    class Config:
        from_attributes = True

class BookStatusIn(BaseModel):
    status: BookStatus

class LoanIn(BaseModel):
    book_id: int
    reader_id: int

class LoanOut(BaseModel):
    loan_id: int
    book_id: int
    reader_id: int
    staff_id: int
    start_date: datetime
    due_date: datetime
    return_date: Optional[datetime]
    status: LoanStatus

    class Config:
        from_attributes = True

class FineOut(BaseModel):
    fine_id: int
    loan_id: int
    due_date: datetime
    accumulated_amount: float
    penalty_rate: float
    status: FineStatus
    paid_at: Optional[datetime]

    class Config:
        from_attributes = True

class AccrueOut(BaseModel):
    created: int
