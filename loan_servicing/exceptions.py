"""Exception hierarchy for the loan servicing engine."""


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""


class ValidationError(LoanServicingError, ValueError):
    """Raised when input terms are malformed or inconsistent. Never retried."""


class NotFoundError(LoanServicingError, LookupError):
    """Raised when a loan, benchmark, benchmark rate or version does not exist."""


class ConflictError(LoanServicingError):
    """Raised when a concurrent mutation on the same loan is detected. Retryable."""


class ComputationInvariantError(LoanServicingError):
    """Raised when a generated schedule violates a numerical invariant.

    Treated as an internal fault: it is logged and surfaced, never corrected.
    """
