"""
Internal API Blueprint — callbacks from the voice agent.

All routes require the X-Internal-Service-Key header.

Endpoints:
    POST   /api/v1/internal/sessions
           Body: { "type": "assignment", "assignment_id", "user_id" }
              or { "type": "free_practice", "user_id", "scenario_id"? }
           Returns: 201 new session, 200 when an assignment retry bumped the attempt
    PUT    /api/v1/internal/sessions/<id>/transcript
           Body: { "turns": [...], "attempt_number"? } — idempotent batch replace
    POST   /api/v1/internal/sessions/<id>/end
    GET    /api/v1/internal/scenarios/<id>   — prompt and mode for the agent
"""

from flask import Blueprint, jsonify

from crisis_trainer.auth import require_internal_service
from crisis_trainer.models.session import Session
from crisis_trainer.services import scenario_service, session_service
from crisis_trainer.utils.helpers import get_or_404, json_body

internal_bp = Blueprint("internal", __name__, url_prefix="/api/v1/internal")


@internal_bp.route("/sessions", methods=["POST"])
@require_internal_service
def create_session():
    session, is_retry = session_service.start_voice_session(json_body())
    body = session.to_dict()
    body["is_retry"] = is_retry
    return jsonify(body), 200 if is_retry else 201


@internal_bp.route("/sessions/<session_id>/transcript", methods=["PUT"])
@require_internal_service
def persist_transcript(session_id):
    data = json_body()
    result = session_service.replace_transcript(session_id, data.get("turns"), data.get("attempt_number"))
    return jsonify(result)


@internal_bp.route("/sessions/<session_id>/end", methods=["POST"])
@require_internal_service
def end_session(session_id):
    session = get_or_404(Session, session_id)
    return jsonify(session_service.end_session(session).to_dict())


@internal_bp.route("/scenarios/<scenario_id>", methods=["GET"])
@require_internal_service
def get_scenario(scenario_id):
    scenario = scenario_service.get_scenario(scenario_id)
    return jsonify({
        "id": scenario.id,
        "title": scenario.title,
        "prompt": scenario.prompt,
        "mode": scenario.mode,
    })
