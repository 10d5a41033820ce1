# Overview: Domain error codes shared by the inventory, reservation, draw and archive services.

"""
Raffle engine error taxonomy.

Every domain failure carries a stable ErrorCode, a user-safe message, and a
retryable flag. Retryable errors are "try again" conditions for the buyer
(inventory moved under them); the rest are permanent policy answers.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    RANGE_CONFLICT = "RANGE_CONFLICT"
    NO_SOLD_TICKETS = "NO_SOLD_TICKETS"
    STALE_CONFIG_CHANGE = "STALE_CONFIG_CHANGE"
    JOB_FAILED = "JOB_FAILED"
    ARCHIVE_PRECONDITION_FAILED = "ARCHIVE_PRECONDITION_FAILED"
    RESERVATION_EXPIRED = "RESERVATION_EXPIRED"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    INVALID_NUMBERING = "INVALID_NUMBERING"
    NOT_FOUND = "NOT_FOUND"


class RaffleError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.INVALID_TRANSITION
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code.value,
            "retryable": self.retryable,
        }


class InsufficientInventoryError(RaffleError):
    """Not enough available tickets to satisfy the request."""

    code = ErrorCode.INSUFFICIENT_INVENTORY
    retryable = True

    def __init__(self, requested: int, available: int) -> None:
        super().__init__(
            f"Only {available} tickets available, {requested} requested"
        )
        self.requested = requested
        self.available = available


class RangeConflictError(RaffleError):
    """A ticket range was not in the expected state (lost a race or already taken)."""

    code = ErrorCode.RANGE_CONFLICT
    retryable = True

    def __init__(self, message: str = "Tickets changed while reserving, please try again",
                 *, indices: list[int] | None = None) -> None:
        super().__init__(message)
        self.indices = indices or []


class NoSoldTicketsError(RaffleError):
    code = ErrorCode.NO_SOLD_TICKETS

    def __init__(self, raffle_id: int) -> None:
        super().__init__("There are no sold tickets to draw from")
        self.raffle_id = raffle_id


class StaleConfigChangeError(RaffleError):
    """Attempt to change a field that is locked once tickets exist or the raffle is published."""

    code = ErrorCode.STALE_CONFIG_CHANGE

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


class JobFailedError(RaffleError):
    code = ErrorCode.JOB_FAILED

    def __init__(self, job_id: int, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id


class ArchivePreconditionError(RaffleError):
    """Raffle is not (yet) eligible for archival. Callers skip, they do not alert."""

    code = ErrorCode.ARCHIVE_PRECONDITION_FAILED


class ReservationExpiredError(RaffleError):
    code = ErrorCode.RESERVATION_EXPIRED

    def __init__(self, order_id: int) -> None:
        super().__init__("The reservation has expired")
        self.order_id = order_id


class InvalidTransitionError(RaffleError):
    code = ErrorCode.INVALID_TRANSITION


class NotFoundError(RaffleError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, entity: str, entity_id) -> None:
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.entity_id = entity_id


class NumberingConfigError(RaffleError, ValueError):
    code = ErrorCode.INVALID_NUMBERING


HTTP_STATUS = {
    ErrorCode.INSUFFICIENT_INVENTORY: 409,
    ErrorCode.RANGE_CONFLICT: 409,
    ErrorCode.NO_SOLD_TICKETS: 409,
    ErrorCode.STALE_CONFIG_CHANGE: 422,
    ErrorCode.JOB_FAILED: 409,
    ErrorCode.ARCHIVE_PRECONDITION_FAILED: 409,
    ErrorCode.RESERVATION_EXPIRED: 409,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.INVALID_NUMBERING: 400,
    ErrorCode.NOT_FOUND: 404,
}


def http_status(exc: RaffleError) -> int:
    return HTTP_STATUS.get(exc.code, 400)
