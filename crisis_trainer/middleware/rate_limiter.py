"""
Rate limiting.

Two layers:
    - Per-IP route throttling with Flask-Limiter, applied per blueprint by
      ``init_rate_limits`` (disabled when TESTING).
    - Per-session rolling windows for billed or spam-prone actions
      (evaluation triggers, user feedback, manual analysis).  These are a
      business rule, not transport throttling, so they stay on in tests.
      They use the ``limits`` moving-window strategy on the same storage URI
      as Flask-Limiter: ``memory://`` for a single instance, Redis when
      several instances must share counters.

Usage:
    from crisis_trainer.middleware.rate_limiter import init_rate_limits, session_limits
    init_rate_limits(app, limiter)
    session_limits.check("evaluate", session_id, app.config["EVALUATION_RATE_LIMIT"])
"""

import logging
import time

from limits import parse
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

from crisis_trainer.core.exceptions import RateLimitedError

logger = logging.getLogger(__name__)


class SessionRateLimiter:
    """Rolling-window counters keyed by (action, session id)."""

    def __init__(self, storage_uri: str = "memory://"):
        self.configure(storage_uri)

    def configure(self, storage_uri: str):
        self._storage_uri = storage_uri
        self._storage = storage_from_string(storage_uri)
        self._strategy = MovingWindowRateLimiter(self._storage)

    def check(self, action: str, key: str, limit: str):
        """Record one hit; raise RateLimitedError if the window is already full."""
        item = parse(limit)
        if self._strategy.hit(item, action, key):
            return
        stats = self._strategy.get_window_stats(item, action, key)
        retry_after = max(1, int(stats.reset_time - time.time()))
        logger.info(
            "Rate limit hit: %s for %s (%s)", action, key, limit,
            extra={"event_type": "rate_limited", "session_id": key},
        )
        raise RateLimitedError(retry_after=retry_after)

    def reset(self):
        self._storage.reset()


session_limits = SessionRateLimiter()


def init_rate_limits(app, limiter):
    """
    Apply per-IP rate limits to API blueprints and configure session windows.

    Limits (per remote IP):
        - Session / evaluation endpoints:  30/minute (LLM calls are expensive)
        - Partner and internal callbacks: 120/minute
        - CRUD endpoints:                 60/minute
        - Health check:                   exempt

    Flask-Limiter is disabled in testing mode; the session windows are not.
    """
    session_limits.configure(app.config.get("RATELIMIT_STORAGE_URI", "memory://"))

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("sessions")
    if bp:
        limiter.limit("30/minute")(bp)

    for bp_name in ("internal", "external"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("120/minute")(bp)

    for bp_name in ("users", "accounts", "scenarios", "assignments", "evaluations",
                    "flags", "recordings", "voice"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute")(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — sessions: 30/min, callbacks: 120/min, crud: 60/min; "
        "per-session evaluate=%s feedback=%s analysis=%s",
        app.config.get("EVALUATION_RATE_LIMIT"),
        app.config.get("FEEDBACK_RATE_LIMIT"),
        app.config.get("ANALYSIS_RATE_LIMIT"),
    )
