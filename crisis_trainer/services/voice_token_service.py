"""
Voice token service — short-lived LiveKit room tokens.

Token payload (HS256, signed with LIVEKIT_API_SECRET):
{
    "iss": <LIVEKIT_API_KEY>,
    "sub": <user_id>,
    "name": <display_name>,
    "nbf": <issued_at>,
    "exp": <issued_at + VOICE_TOKEN_TTL>,
    "jti": <unique_id>,
    "video": {"roomJoin": true, "room": "training-...", "canPublish": true,
              "canSubscribe": true, "canPublishData": false},
    "metadata": "{\"user_id\": ..., \"assignment_id\": ..., \"scenario_id\": ...}"
}

The voice agent reads ``metadata`` when it joins the room to know which
scenario to play and whom to report the session for.
"""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from crisis_trainer.auth import ensure_can_access
from crisis_trainer.core.exceptions import ConflictError, UpstreamError
from crisis_trainer.models.account import User
from crisis_trainer.models.scenario import ASSIGNMENT_COMPLETED, Assignment, Scenario
from crisis_trainer.utils.helpers import get_or_404

logger = logging.getLogger(__name__)

# ─── Defaults ────────────────────────────────────────────────
DEFAULT_TOKEN_TTL = 900   # 15 minutes
ALGORITHM = "HS256"


def _credentials() -> tuple[str, str, str]:
    cfg = current_app.config
    url, key, secret = cfg.get("LIVEKIT_URL"), cfg.get("LIVEKIT_API_KEY"), cfg.get("LIVEKIT_API_SECRET")
    if not (url and key and secret):
        logger.error("LiveKit credentials are not configured")
        raise UpstreamError("Voice service is not configured", retry_after=60)
    return url, key, secret


def generate_room_token(user: User, room: str, metadata: dict) -> str:
    _, api_key, secret = _credentials()
    now = datetime.now(timezone.utc)
    payload = {
        "iss": api_key,
        "sub": user.id,
        "name": user.display_name,
        "nbf": now,
        "exp": now + timedelta(seconds=current_app.config.get("VOICE_TOKEN_TTL", DEFAULT_TOKEN_TTL)),
        "jti": str(uuid.uuid4()),
        "video": {
            "roomJoin": True,
            "room": room,
            "canPublish": True,
            "canSubscribe": True,
            "canPublishData": False,
        },
        "metadata": json.dumps(metadata),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def issue_voice_token(user: User, assignment_id: str | None = None, scenario_id: str | None = None) -> dict:
    """Mint a room token for a voice practice call.

    Raises:
        NotFoundError: unknown assignment or scenario.
        UnauthorizedError: assignment owned by someone else (403).
        ConflictError: assignment already completed.
        UpstreamError: LiveKit is not configured.
    """
    url, _, _ = _credentials()
    if assignment_id:
        assignment = get_or_404(Assignment, assignment_id)
        ensure_can_access(user, assignment.counselor_id, "practice this assignment")
        if assignment.status == ASSIGNMENT_COMPLETED:
            raise ConflictError("Assignment is already completed")
        scenario_id = assignment.scenario_id
    elif scenario_id:
        get_or_404(Scenario, scenario_id)

    room = f"training-{uuid.uuid4().hex[:16]}"
    metadata = {"user_id": user.id, "assignment_id": assignment_id, "scenario_id": scenario_id}
    token = generate_room_token(user, room, metadata)
    logger.info("Voice token issued for room %s", room,
                extra={"assignment_id": assignment_id, "event_type": "voice_token_issued"})
    return {
        "token": token,
        "room": room,
        "url": url,
        "expires_in": current_app.config.get("VOICE_TOKEN_TTL", DEFAULT_TOKEN_TTL),
    }


def decode_room_token(token: str) -> dict:
    """Verify a room token with the configured secret.  Raises jwt exceptions on failure."""
    _, api_key, secret = _credentials()
    return jwt.decode(token, secret, algorithms=[ALGORITHM], issuer=api_key)
