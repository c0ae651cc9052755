"""Error taxonomy shared by the ledger, withdrawal and governance services.

Every error carries a stable ``code`` for clients and the HTTP status the API
layer maps it to. Services raise these before committing, so a raised error
never leaves partial state behind.
"""

from __future__ import annotations


class PhxError(Exception):
    """Base class for all domain errors."""

    code = "internal"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(PhxError):
    code = "unauthenticated"
    status_code = 401


class Unauthorized(PhxError):
    code = "unauthorized"
    status_code = 403


class InvalidArgument(PhxError):
    code = "invalid_argument"
    status_code = 400


class NotFound(PhxError):
    code = "not_found"
    status_code = 404


class FailedPrecondition(PhxError):
    """A business rule gate failed."""

    code = "failed_precondition"
    status_code = 412


class NotEligible(FailedPrecondition):
    code = "not_eligible"
    status_code = 403


class RateLimited(FailedPrecondition):
    code = "rate_limited"
    status_code = 429


class AlreadyPending(FailedPrecondition):
    code = "already_pending"
    status_code = 409


class BelowMinimum(FailedPrecondition):
    code = "below_minimum"
    status_code = 400


class InsufficientFunds(FailedPrecondition):
    code = "insufficient_funds"
    status_code = 400


class WrongPhase(FailedPrecondition):
    code = "wrong_phase"
    status_code = 409


class AlreadyExists(PhxError):
    code = "already_exists"
    status_code = 409


class AlreadyVoted(AlreadyExists):
    code = "already_voted"


class AlreadyProcessed(AlreadyExists):
    """Settlement was attempted on a request that is no longer pending."""

    code = "already_processed"

    def __init__(self, message: str, status: str) -> None:
        super().__init__(message)
        self.status = status


class InternalError(PhxError):
    code = "internal"
    status_code = 500
