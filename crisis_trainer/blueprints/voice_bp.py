"""
Voice Blueprint.

Endpoints:
    POST   /api/v1/voice/token
           Body: { "assignment_id"? , "scenario_id"? }
           Returns: { token, room, url, expires_in }

The voice agent creates the session itself through the internal API once it
has joined the room.
"""

from flask import Blueprint, g, jsonify

from crisis_trainer.auth import require_user
from crisis_trainer.services import voice_token_service
from crisis_trainer.utils.helpers import json_body

voice_bp = Blueprint("voice", __name__, url_prefix="/api/v1")


@voice_bp.route("/voice/token", methods=["POST"])
@require_user
def voice_token():
    data = json_body()
    result = voice_token_service.issue_voice_token(
        g.current_user,
        assignment_id=data.get("assignment_id") or None,
        scenario_id=data.get("scenario_id") or None,
    )
    return jsonify(result), 201
