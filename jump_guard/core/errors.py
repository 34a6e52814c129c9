"""
Error taxonomy and outcome kinds.

Exceptions cover infrastructure failures; expected outcomes such as an
insufficient balance are reported through enums on result objects instead.
"""

from enum import Enum
from typing import Optional


class FailureKind(Enum):
    """Typed failure reported to the caller of a generation."""
    INVALID_REQUEST = "invalid_request"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    REFERENCE_SPENT = "reference_spent"
    UPSTREAM_EXHAUSTED = "upstream_exhausted"
    UPSTREAM_CLIENT_ERROR = "upstream_client_error"
    PARSE_FAILURE = "parse_failure"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    CANCELLED = "cancelled"
    INTERNAL_ERROR = "internal_error"


class JumpGuardError(Exception):
    """Base class for all errors raised by this package."""


class UpstreamError(JumpGuardError):
    """Failure talking to the model endpoint."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamServerError(UpstreamError):
    """Transient failure (5xx, connection reset, timeout). Retryable."""


class UpstreamClientError(UpstreamError):
    """Fatal request failure (4xx). Never retried."""


class UpstreamExhausted(UpstreamError):
    """Every attempt failed with a retryable error."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        attempts: int = 0
    ):
        super().__init__(message, status_code=status_code, body=body)
        self.attempts = attempts


class LedgerError(JumpGuardError):
    """Failure inside the credit ledger."""


class LedgerConflict(LedgerError):
    """Storage-level write conflict. Retried internally."""


class LedgerUnavailable(LedgerError):
    """Conflicts persisted past the retry budget."""


class UnknownAccount(LedgerError):
    """No credit account exists for the user."""

    def __init__(self, user_id: str):
        super().__init__(f"No credit account for user {user_id}")
        self.user_id = user_id


class GenerationCancelled(JumpGuardError):
    """The caller cancelled the request while it was in flight."""
