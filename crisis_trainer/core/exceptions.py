"""
Service-layer exception hierarchy.

Services raise these; the app-level error handlers registered in
``crisis_trainer.utils.errors`` map each class onto one machine-readable code
and one HTTP status.  Transient failures (TooEarly, RateLimited, Upstream)
carry ``retryable = True`` so callers can act on the signal alone.

Usage:
    from crisis_trainer.core.exceptions import NotFoundError, ConflictError

    raise NotFoundError(resource="Session", resource_id=session_id)
    raise ConflictError("Evaluation already exists", existing_id=evaluation.id)
"""


class ServiceError(Exception):
    """Base class for every error the service layer raises on purpose."""

    code = "INTERNAL"
    status = 500
    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(ServiceError):
    """Raised when input is malformed or violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    code = "VALIDATION_ERROR"
    status = 400


class UnauthorizedError(ServiceError):
    """Raised by the identity gate.

    The message never says which check failed: an unknown user id and a
    malformed header produce the same response.  ``status`` is 401 for
    missing/invalid credentials and 403 for a valid identity acting on a
    resource it does not own.
    """

    code = "UNAUTHORIZED"
    status = 401

    def __init__(self, message: str = "Authentication required", status: int = 401) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(ServiceError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Session").
        resource_id: The PK that was looked up. Logged, not returned.
    """

    code = "NOT_FOUND"
    status = 404

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} not found")


class ConflictError(ServiceError):
    """Permanent conflict: duplicate row, blocked delete, terminal state.

    Args:
        message: Explanation for the caller.
        existing_id: Id of the row that already holds the slot, when there is one.
        details: Extra payload (dependent counts, etc.).
    """

    code = "CONFLICT"
    status = 409

    def __init__(self, message: str, existing_id: str | None = None, details: dict | None = None) -> None:
        details = dict(details or {})
        if existing_id is not None:
            details["existing_id"] = existing_id
        self.existing_id = existing_id
        super().__init__(message, details)


class TooEarlyError(ServiceError):
    """Transient: the resource is not ready yet (e.g. transcript still being persisted)."""

    code = "TOO_EARLY"
    status = 425
    retryable = True

    def __init__(self, message: str, retry_after: int = 5, details: dict | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(message, details)


class RateLimitedError(ServiceError):
    """Transient: the caller exceeded a rolling window for this resource."""

    code = "RATE_LIMITED"
    status = 429
    retryable = True

    def __init__(self, message: str = "Too many requests, please wait before trying again",
                 retry_after: int = 60) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class UpstreamError(ServiceError):
    """An LLM or other provider call failed after bounded retries."""

    code = "UPSTREAM_FAILURE"
    status = 502
    retryable = True

    def __init__(self, message: str, retry_after: int = 10) -> None:
        self.retry_after = retry_after
        super().__init__(message)
