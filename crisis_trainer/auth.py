"""
Crisis Trainer — Identity & Authorization Gate.

Three caller identities:
    - End user:          X-User-Id header, validated against the users table.
    - Internal service:  X-Internal-Service-Key header (voice agent callbacks),
                         compared with INTERNAL_SERVICE_KEY in constant time.
    - External partner:  X-API-Key header, compared in constant time against
                         every key in EXTERNAL_API_KEYS ("partner:key,...").

Every failure raises UnauthorizedError with the same message, so a caller
cannot tell "no such user" from "malformed header" or "wrong key".

Usage:
    @sessions_bp.route("/sessions/<session_id>/evaluate", methods=["POST"])
    @require_user
    def evaluate(session_id): ...
"""

import functools
import hashlib
import hmac
import logging

from flask import current_app, g, request

from crisis_trainer.core.exceptions import UnauthorizedError
from crisis_trainer.models import db
from crisis_trainer.models.account import User
from crisis_trainer.utils.helpers import is_uuid

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"
INTERNAL_KEY_HEADER = "X-Internal-Service-Key"
PARTNER_KEY_HEADER = "X-API-Key"


# ── Key comparison ───────────────────────────────────────────────────────────

def keys_match(provided: str, expected: str) -> bool:
    """Constant-time comparison of two secrets.

    Both sides are hashed first so the comparison length never depends on
    the secret's length.
    """
    if not provided or not expected:
        return False
    provided_digest = hashlib.sha256(provided.encode("utf-8")).digest()
    expected_digest = hashlib.sha256(expected.encode("utf-8")).digest()
    return hmac.compare_digest(provided_digest, expected_digest)


def _parse_partner_keys() -> dict[str, str]:
    """
    Parse EXTERNAL_API_KEYS from config.
    Format: "partner1:key1,partner2:key2"
    Returns: {key: partner_name}
    """
    raw = current_app.config.get("EXTERNAL_API_KEYS", "") or ""
    keys = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if ":" in entry:
            partner, key = entry.split(":", 1)
            if partner.strip() and key.strip():
                keys[key.strip()] = partner.strip()
    return keys


# ── Resolvers ────────────────────────────────────────────────────────────────

def resolve_user() -> User:
    """Resolve the end-user identity for the current request."""
    user_id = (request.headers.get(USER_HEADER) or "").strip()
    user = db.session.get(User, user_id) if is_uuid(user_id) else None
    if user is None:
        raise UnauthorizedError()
    return user


def resolve_internal_service() -> str:
    expected = current_app.config.get("INTERNAL_SERVICE_KEY") or ""
    if not expected:
        logger.error("INTERNAL_SERVICE_KEY is not configured; rejecting internal call to %s", request.path)
        raise UnauthorizedError()
    if not keys_match(request.headers.get(INTERNAL_KEY_HEADER, ""), expected):
        logger.warning("Invalid internal service key on %s", request.path)
        raise UnauthorizedError()
    return "internal"


def resolve_partner() -> str:
    provided = request.headers.get(PARTNER_KEY_HEADER, "")
    partner = None
    # Compare against every key; no early exit on a match
    for key, name in _parse_partner_keys().items():
        if keys_match(provided, key):
            partner = name
    if partner is None:
        logger.warning("Invalid partner API key attempt on %s", request.path)
        raise UnauthorizedError()
    return partner


def ensure_can_access(user: User, owner_id: str | None, action: str = "access this resource"):
    """Owners and supervisors pass; everyone else gets a 403-flavoured UNAUTHORIZED."""
    if user.is_supervisor:
        return
    if owner_id is None or owner_id != user.id:
        logger.warning("Access denied: user %s tried to %s owned by %s", user.id, action, owner_id)
        raise UnauthorizedError(f"Not allowed to {action}", status=403)


# ── Decorators ───────────────────────────────────────────────────────────────

def require_user(f):
    """Sets g.current_user to the authenticated User."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        g.current_user = resolve_user()
        return f(*args, **kwargs)
    return decorated


def require_supervisor(f):
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        user = resolve_user()
        if not user.is_supervisor:
            logger.warning("Access denied: role '%s' tried supervisor endpoint %s", user.role, request.path)
            raise UnauthorizedError("Supervisor role required", status=403)
        g.current_user = user
        return f(*args, **kwargs)
    return decorated


def require_internal_service(f):
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        g.caller = resolve_internal_service()
        return f(*args, **kwargs)
    return decorated


def require_partner(f):
    """Sets g.partner to the partner name bound to the presented key."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        g.partner = resolve_partner()
        return f(*args, **kwargs)
    return decorated
