"""Classified service errors.

Services raise these and never build HTTP responses themselves; the API layer
maps each class to a status code (see `ticketflow.api.errors`).
"""


class ServiceError(Exception):
    """Base exception for all classified service failures."""

    code = "service_error"

    def __init__(self, message: str = "An error occurred", *, retryable: bool = False):
        self.message = message
        self.retryable = retryable
        super().__init__(self.message)


class ValidationFailed(ServiceError):
    """Malformed input, password policy violation, mismatched confirmation."""

    code = "validation_failed"

    def __init__(self, message: str, *, reason: str = "invalid"):
        super().__init__(message)
        self.reason = reason


class Conflict(ServiceError):
    """Raised when a uniquely-keyed resource already exists."""

    code = "conflict"


class NotFound(ServiceError):
    """Raised when a requested resource is not found."""

    code = "not_found"


class Unauthorized(ServiceError):
    """Bad credentials, locked account, unverified email, or a rejected token.

    The message is deliberately generic for token failures so callers cannot
    tell which check failed.
    """

    code = "unauthorized"


class TooManyRequests(ServiceError):
    """Raised when a per-user rate limit is exceeded."""

    code = "too_many_requests"


class InvalidState(ServiceError):
    """Raised when an order status transition is not legal from the current state."""

    code = "invalid_state"


class AlreadyFinalized(InvalidState):
    """Raised when an operation targets an order that is already settled."""

    code = "already_finalized"


class InvalidSignature(ServiceError):
    """Raised when a webhook payload cannot be verified."""

    code = "invalid_signature"


class UpstreamFailure(ServiceError):
    """Gateway or email-sender failure not attributable to caller input."""

    code = "upstream_failure"

    def __init__(self, message: str = "Upstream service failure", *, retryable: bool = True):
        super().__init__(message, retryable=retryable)
