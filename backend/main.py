import logging

from fastapi import FastAPI, Depends, HTTPException, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from db import Base, engine, get_db, configure_logging
import schemas as S
from circulation import Caller, CirculationCoordinator
from clock import Clock, get_clock
from errors import (
    CirculationError, InvalidInput, InvalidState, NotFound, PermissionDenied, Unavailable
)
from search_sync import upsert_book
from security import decode_token

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Library Circulation")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- init tables ---
@app.on_event("startup")
def on_startup():
    Base.metadata.create_all(bind=engine)

# --- domain errors -> http ---
ERROR_STATUS = (
    (NotFound, 404),
    (InvalidInput, 422),
    (PermissionDenied, 403),
    (Unavailable, 409),
    (InvalidState, 400),
)

@app.exception_handler(CirculationError)
def circulation_error(request: Request, exc: CirculationError):
    status = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 400)
    return JSONResponse(status_code=status, content={"detail": exc.detail})

# --- auth deps ---
def get_current_user(authorization: str = Header(default="")) -> dict:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = decode_token(token)
        return payload
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token")

def get_caller(user=Depends(get_current_user)) -> Caller:
    try:
        return Caller.from_token(user)
    except InvalidInput:
        raise HTTPException(status_code=401, detail="Invalid token")

def require_role(*roles):
    def _dep(caller: Caller = Depends(get_caller)):
        if caller.role not in roles:
            raise HTTPException(status_code=403, detail="Permission denied")
        return caller
    return _dep

def get_coordinator(db: Session = Depends(get_db), clock: Clock = Depends(get_clock)) -> CirculationCoordinator:
    return CirculationCoordinator(db, clock)

# --- books (administrative path, outside circulation) ---
@app.post("/api/books", response_model=S.BookOut, status_code=201)
def create_book(data: S.BookIn, svc: CirculationCoordinator = Depends(get_coordinator),
                caller: Caller = Depends(require_role("admin", "librarian"))):
    try:
        b = svc.books.create(**data.model_dump())
        svc.db.commit()
    except Exception:
        svc.db.rollback()
        raise
    upsert_book(b)
    return b

@app.get("/api/books/{book_id}", response_model=S.BookOut)
def get_book(book_id: int, svc: CirculationCoordinator = Depends(get_coordinator),
             caller: Caller = Depends(get_caller)):
    return svc.books.require(book_id)

@app.patch("/api/books/{book_id}/status", response_model=S.BookOut)
def set_book_status(book_id: int, data: S.BookStatusIn, svc: CirculationCoordinator = Depends(get_coordinator),
                    caller: Caller = Depends(require_role("admin"))):
    try:
        b = svc.books.update_status(book_id, data.status)
        svc.db.commit()
    except Exception:
        svc.db.rollback()
        raise
    logger.info("Admin %s set book %s status to %s", caller.user_id, book_id, data.status)
    upsert_book(b)
    return b

# --- listings (read-only, outside circulation) ---
@app.get("/api/loans", response_model=list[S.LoanOut])
def list_loans(status: S.LoanStatus | None = None, reader_id: int | None = None,
               svc: CirculationCoordinator = Depends(get_coordinator),
               caller: Caller = Depends(require_role("admin", "librarian"))):
    return svc.loans.list_loans(status=status, reader_id=reader_id)

@app.get("/api/fines", response_model=list[S.FineOut])
def list_fines(status: S.FineStatus | None = None,
               svc: CirculationCoordinator = Depends(get_coordinator),
               caller: Caller = Depends(get_caller)):
    # readers only see fines on their own loans
    if caller.is_staff:
        return svc.fines.list_fines(status=status)
    if caller.reader_id is None:
        return []
    return svc.fines.list_fines(status=status, reader_id=caller.reader_id)

# --- circulation ---
@app.post("/api/loans", response_model=S.LoanOut, status_code=201)
def checkout(data: S.LoanIn, svc: CirculationCoordinator = Depends(get_coordinator),
             caller: Caller = Depends(get_caller)):
    return svc.checkout(caller, data.book_id, data.reader_id)

@app.patch("/api/loans/{loan_id}/return", response_model=S.LoanOut)
def return_loan(loan_id: int, svc: CirculationCoordinator = Depends(get_coordinator),
                caller: Caller = Depends(get_caller)):
    return svc.return_loan(caller, loan_id)

@app.get("/api/loans/overdue", response_model=list[S.LoanOut])
def list_overdue(svc: CirculationCoordinator = Depends(get_coordinator),
                 caller: Caller = Depends(get_caller)):
    return svc.list_overdue_loans(caller)

@app.post("/api/fines/accrue", response_model=S.AccrueOut)
def accrue_fines(svc: CirculationCoordinator = Depends(get_coordinator),
                 caller: Caller = Depends(get_caller)):
    return S.AccrueOut(created=svc.accrue_fines(caller))

@app.patch("/api/fines/{fine_id}/pay", response_model=S.FineOut)
def pay_fine(fine_id: int, svc: CirculationCoordinator = Depends(get_coordinator),
             caller: Caller = Depends(get_caller)):
    return svc.pay_fine(caller, fine_id)
