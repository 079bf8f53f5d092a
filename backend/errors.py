"""Domain errors raised by the circulation core.

main.py maps each family to an HTTP status; nothing in the core retries them.
"""


class CirculationError(Exception):
    detail = "Circulation error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.detail
        super().__init__(self.detail)


class NotFound(CirculationError):
    def __init__(self, entity: str, entity_id=None):
        self.entity = entity
        self.entity_id = entity_id
        msg = f"{entity.capitalize()} not found" if entity_id is None else f"{entity.capitalize()} {entity_id} not found"
        super().__init__(msg)


class InvalidInput(CirculationError):
    detail = "Invalid input"


class InvalidState(CirculationError):
    detail = "Operation not allowed in the current state"


class AlreadyReturned(InvalidState):
    detail = "Book has already been returned"


class AlreadyPaid(InvalidState):
    def __init__(self, status: str):
        # paid and waived are both terminal, keep them apart for the caller
        self.status = status
        super().__init__("Fine has already been paid" if status == "paid" else f"Fine is already {status}")


class Unavailable(CirculationError):
    def __init__(self, book_id=None, status: str = "borrowed"):
        self.book_id = book_id
        self.status = status
        if status == "borrowed":
            super().__init__("This book is currently on loan and not available")
        else:
            super().__init__(f"This book is not available ({status})")


class PermissionDenied(CirculationError):
    detail = "Permission denied"
