import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

import models as M
from errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)


class BookRegistry:
    """Book records and their status flag.

    update_status only checks that the value is a known status. Keeping it in
    step with open loans is the ledger's job.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, title: str, isbn: str | None = None, description: str | None = None,
               status: str = "available") -> M.Book:
        if not title or not title.strip():
            raise InvalidInput("Book must have a title")
        self._check_status(status)
        if isbn and self.db.scalar(select(M.Book).where(M.Book.isbn == isbn)):
            raise InvalidInput(f"ISBN {isbn} already exists")

        b = M.Book(title=title.strip(), isbn=isbn or None, description=description, status=status)
        self.db.add(b)
        self.db.flush()
        logger.info("Registered book %s (%s)", b.book_id, b.title)
        return b

    def get(self, book_id, refresh: bool = False) -> M.Book | None:
        return self.db.get(M.Book, book_id, populate_existing=refresh)

    def require(self, book_id, refresh: bool = False) -> M.Book:
        b = self.get(book_id, refresh=refresh)
        if not b:
            raise NotFound("book", book_id)
        return b

    def update_status(self, book_id, new_status: str) -> M.Book:
        self._check_status(new_status)
        b = self.require(book_id)
        if b.status != new_status:
            logger.debug("Book %s: %s -> %s", book_id, b.status, new_status)
            b.status = new_status
        self.db.flush()
        return b

    @staticmethod
    def _check_status(status: str):
        if status not in M.BOOK_STATUSES:
            raise InvalidInput(f"Invalid book status '{status}'")
