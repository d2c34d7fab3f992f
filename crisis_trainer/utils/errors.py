"""Standardised API error responses.

Usage
-----
    from crisis_trainer.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Session not found")
    return api_error(E.CONFLICT, "Scenario has assignments", details={"assignment_count": 3})
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from crisis_trainer.core.exceptions import ServiceError

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error codes.

    Transient codes (TOO_EARLY, RATE_LIMITED, UPSTREAM_FAILURE) each have
    their own HTTP status so retry logic never has to read the message.
    """

    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    TOO_EARLY = "TOO_EARLY"
    RATE_LIMITED = "RATE_LIMITED"
    UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
    INTERNAL = "INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_ERROR: 400,
    E.UNAUTHORIZED: 401,
    E.NOT_FOUND: 404,
    E.CONFLICT: 409,
    E.TOO_EARLY: 425,
    E.RATE_LIMITED: 429,
    E.UPSTREAM_FAILURE: 502,
    E.INTERNAL: 500,
}

_HTTP_CODES: dict[int, str] = {
    400: E.VALIDATION_ERROR,
    401: E.UNAUTHORIZED,
    403: E.UNAUTHORIZED,
    404: E.NOT_FOUND,
    405: E.VALIDATION_ERROR,
    409: E.CONFLICT,
    413: E.VALIDATION_ERROR,
    415: E.VALIDATION_ERROR,
    429: E.RATE_LIMITED,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
    retry_after: int | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``.
    details : dict, optional
        Extra structured payload (existing ids, dependent counts, etc.).
    retry_after : int, optional
        Seconds; sets the ``Retry-After`` header and marks the body retryable.

    Returns
    -------
    tuple[Response, int]
        ``(response, http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details
    if retry_after is not None:
        body.setdefault("details", {})["retryable"] = True
        body["details"]["retry_after"] = retry_after

    response = jsonify(body)
    if retry_after is not None:
        response.headers["Retry-After"] = str(retry_after)
    return response, http_status


def register_error_handlers(app):
    """Map service exceptions and HTTP errors onto ``api_error`` once, app-wide."""

    @app.errorhandler(ServiceError)
    def handle_service_error(e: ServiceError):
        if e.status >= 500 and not e.retryable:
            logger.error("Service error on %s: %s", request.path, e)
        else:
            logger.info("%s on %s: %s", e.code, request.path, e)
        return api_error(
            e.code,
            e.message,
            status=e.status,
            details=e.details,
            retry_after=getattr(e, "retry_after", None),
        )

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        code = _HTTP_CODES.get(e.code or 500, E.INTERNAL)
        retry_after = 60 if e.code == 429 else None
        return api_error(code, e.description or e.name, status=e.code, retry_after=retry_after)

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return api_error(E.INTERNAL, "Internal server error", status=500)
